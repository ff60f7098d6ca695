"""Notification records and fire-and-forget delivery."""

import asyncio
import logging
from abc import ABC, abstractmethod

import aiohttp
from sqlalchemy.orm import Session

from a11yops.compliance_runner.models.workflow import NotificationMessage
from a11yops.compliance_runner.store.tables import NotificationRecord, utcnow

logger = logging.getLogger(__name__)


class NotificationSink(ABC):
    """Abstract base for notification delivery channels."""

    @abstractmethod
    async def publish(self, message: NotificationMessage) -> None:
        """Deliver one notification.

        Args:
            message: Notification to deliver

        """


class LoggingNotificationSink(NotificationSink):
    """Writes notifications to the log."""

    async def publish(self, message: NotificationMessage) -> None:
        """Log the notification."""
        logger.info(
            f"[{message.notification_type}] {message.recipient}: {message.title}",
            extra={"session_id": message.session_id, "task_id": message.task_id},
        )


class WebhookNotificationSink(NotificationSink):
    """POSTs notifications as JSON to a webhook."""

    def __init__(self, url: str) -> None:
        """Initialize sink with the webhook URL."""
        self.url = url

    async def publish(self, message: NotificationMessage) -> None:
        """POST the notification."""
        async with aiohttp.ClientSession() as session:
            async with session.post(
                self.url, json=message.model_dump(mode="json")
            ) as response:
                if response.status >= 300:
                    text = await response.text()
                    raise RuntimeError(
                        f"Failed to deliver notification: {response.status} {text}"
                    )


class Notifier:
    """Persists notifications and hands them to a sink without waiting."""

    def __init__(self, sink: NotificationSink) -> None:
        """Initialize notifier with a delivery sink."""
        self.sink = sink
        self._pending: set[asyncio.Task[None]] = set()

    def record(self, session: Session, message: NotificationMessage) -> None:
        """Add the notification to the caller's transaction."""
        created_at = message.created_at or utcnow()
        session.add(
            NotificationRecord(
                session_id=message.session_id,
                task_id=message.task_id,
                notification_type=message.notification_type,
                recipient=message.recipient,
                priority=message.priority,
                title=message.title,
                message=message.message,
                data=message.data,
                created_at=created_at,
            )
        )

    def publish(self, message: NotificationMessage) -> None:
        """Schedule delivery; failures are logged and never raised."""
        task = asyncio.get_running_loop().create_task(self._deliver(message))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, message: NotificationMessage) -> None:
        try:
            await self.sink.publish(message)
        except Exception:
            logger.exception(
                f"Failed to deliver {message.notification_type} notification"
            )

    async def drain(self) -> None:
        """Wait for scheduled deliveries to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending))
