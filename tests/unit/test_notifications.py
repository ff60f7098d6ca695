"""Tests for notification recording and delivery."""

import logging

import pytest
import sqlalchemy as sa
from aioresponses import aioresponses

from a11yops.compliance_runner.models.session import SessionProgress
from a11yops.compliance_runner.models.workflow import NotificationMessage
from a11yops.compliance_runner.notifications import (
    LoggingNotificationSink,
    NotificationSink,
    Notifier,
    WebhookNotificationSink,
)
from a11yops.compliance_runner.progress import ProgressTracker
from a11yops.compliance_runner.store.database import Database
from a11yops.compliance_runner.store.tables import NotificationRecord
from tests.fakes import RecordingSink

WEBHOOK_URL = "https://hooks.example.com/a11y"


class FailingSink(NotificationSink):
    """Sink whose delivery always fails."""

    async def publish(self, message: NotificationMessage) -> None:
        """Fail delivery."""
        raise RuntimeError("webhook down")


@pytest.fixture
def message() -> NotificationMessage:
    """Create notification message."""
    return NotificationMessage(
        notification_type="manual_task_created",
        session_id="session-1",
        task_id="task-1",
        priority=5,
        title="Manual Review Required: 1.1.1",
        data={"criterion_id": "1.1.1"},
    )


async def test_publish_delivers(
    notifier: Notifier, sink: RecordingSink, message: NotificationMessage
) -> None:
    """publish hands the message to the sink."""
    notifier.publish(message)
    await notifier.drain()

    assert sink.messages == [message]


async def test_publish_failure_is_logged(
    message: NotificationMessage, caplog: pytest.LogCaptureFixture
) -> None:
    """Delivery failures are logged and not raised."""
    notifier = Notifier(FailingSink())

    with caplog.at_level(logging.ERROR):
        notifier.publish(message)
        await notifier.drain()

    assert "Failed to deliver manual_task_created notification" in caplog.text


def test_record_adds_to_transaction(
    database: Database, notifier: Notifier, message: NotificationMessage
) -> None:
    """record persists the notification with the caller's transaction."""
    database.run_in_transaction(lambda s: notifier.record(s, message))

    record = database.read(lambda s: s.scalars(sa.select(NotificationRecord)).one())

    assert record.notification_type == "manual_task_created"
    assert record.task_id == "task-1"
    assert record.priority == 5
    assert record.data == {"criterion_id": "1.1.1"}
    assert record.created_at is not None


async def test_logging_sink(
    message: NotificationMessage, caplog: pytest.LogCaptureFixture
) -> None:
    """LoggingNotificationSink logs the title."""
    with caplog.at_level(logging.INFO):
        await LoggingNotificationSink().publish(message)

    assert "Manual Review Required: 1.1.1" in caplog.text


async def test_webhook_sink(message: NotificationMessage) -> None:
    """WebhookNotificationSink posts the message as JSON."""
    with aioresponses() as m:
        m.post(WEBHOOK_URL, status=204)

        await WebhookNotificationSink(WEBHOOK_URL).publish(message)

        call = next(iter(m.requests.values()))[0]

    assert call.kwargs["json"]["title"] == "Manual Review Required: 1.1.1"
    assert call.kwargs["json"]["task_id"] == "task-1"


async def test_webhook_sink_error(message: NotificationMessage) -> None:
    """WebhookNotificationSink raises on an error response."""
    with aioresponses() as m:
        m.post(WEBHOOK_URL, status=500, body="boom")

        with pytest.raises(RuntimeError, match="Failed to deliver notification: 500"):
            await WebhookNotificationSink(WEBHOOK_URL).publish(message)


async def test_progress_milestones_published_once(
    notifier: Notifier, sink: RecordingSink
) -> None:
    """Each milestone is published exactly once."""
    tracker = ProgressTracker(notifier)
    progress = SessionProgress()
    progress.set_total(4)

    reached = []
    for _ in range(4):
        progress.record_unit(violations=1)
        reached.append(tracker.unit_finished("session-1", progress))
    reached.append(tracker.unit_finished("session-1", progress))
    await notifier.drain()

    assert reached == [[25], [50], [75], [100], []]
    assert [m.data["milestone"] for m in sink.messages] == [25, 50, 75, 100]
    assert sink.messages[-1].title == "Session 100% complete"
    assert progress.milestones_reached == [25, 50, 75, 100]


async def test_progress_skips_to_crossed_milestones(
    notifier: Notifier, sink: RecordingSink
) -> None:
    """A unit crossing several thresholds publishes all of them."""
    tracker = ProgressTracker(notifier)
    progress = SessionProgress()
    progress.set_total(3)

    progress.record_unit()
    progress.record_unit()
    reached = tracker.unit_finished("session-1", progress)
    await notifier.drain()

    assert reached == [25, 50]
    assert len(sink.messages) == 2
