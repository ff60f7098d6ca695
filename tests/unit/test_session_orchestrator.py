"""Tests for session orchestration."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from a11yops.compliance_runner.adjudication import AdjudicationEngine
from a11yops.compliance_runner.discovery import (
    DiscoveryClient,
    DiscoveryListing,
    StaticDiscoveryClient,
)
from a11yops.compliance_runner.errors import SessionNotFoundError, StoreUnavailableError
from a11yops.compliance_runner.knowledge_base import CriteriaKnowledgeBase
from a11yops.compliance_runner.models.scan import Page
from a11yops.compliance_runner.models.session import SessionOptions, SessionProgress
from a11yops.compliance_runner.models.workflow import ReviewSubmission
from a11yops.compliance_runner.notifications import Notifier
from a11yops.compliance_runner.orchestrator import ComplianceOrchestrator
from a11yops.compliance_runner.scan_executor import ScanExecutor
from a11yops.compliance_runner.store.database import Database
from tests.fakes import STATUS_RULE, FakeToolAdapter, RecordingSink

AXE_OUTPUT = {
    "violations": [{"id": "image-alt", "impact": "critical", "nodes": []}],
    "passes": [{"id": "document-title"}],
}
PA11Y_OUTPUT = {"issues": [{"code": STATUS_RULE, "type": "notice"}]}


class PendingDiscoveryClient(DiscoveryClient):
    """Discovery that never finishes."""

    async def list_pages(self, project_id: str) -> DiscoveryListing:
        """Report discovery as running."""
        return DiscoveryListing(status="running")


class FailedDiscoveryClient(DiscoveryClient):
    """Discovery that reports failure."""

    async def list_pages(self, project_id: str) -> DiscoveryListing:
        """Report discovery as failed."""
        return DiscoveryListing(status="failed", message="crawler blocked")


def _pages(count: int) -> list[Page]:
    return [Page(id=f"page-{i}", url=f"https://example.com/{i}") for i in range(count)]


def _orchestrator(
    database: Database,
    knowledge_base: CriteriaKnowledgeBase,
    notifier: Notifier,
    adapter: FakeToolAdapter,
    discovery: DiscoveryClient | None = None,
    max_concurrency: int = 4,
) -> ComplianceOrchestrator:
    return ComplianceOrchestrator(
        database,
        ScanExecutor(database, knowledge_base, adapter),
        AdjudicationEngine(database, knowledge_base, notifier),
        discovery or StaticDiscoveryClient(_pages(1)),
        notifier,
        max_concurrency=max_concurrency,
        discovery_poll_interval=0.01,
    )


@pytest.fixture
def orchestrator(
    database: Database,
    knowledge_base: CriteriaKnowledgeBase,
    notifier: Notifier,
    adapter: FakeToolAdapter,
) -> ComplianceOrchestrator:
    """Create orchestrator with static discovery and the fake adapter."""
    return _orchestrator(database, knowledge_base, notifier, adapter)


async def test_run_session_completes(
    orchestrator: ComplianceOrchestrator,
    adapter: FakeToolAdapter,
    sink: RecordingSink,
) -> None:
    """A session runs every unit, adjudicates and completes."""
    adapter.outputs.update({"axe-core": AXE_OUTPUT, "pa11y": PA11Y_OUTPUT})
    session_id = await orchestrator.start_session(
        ["axe-core", "pa11y"], pages=_pages(1), options=SessionOptions(name="Home")
    )

    report = await orchestrator.wait(session_id)

    assert report.status == "completed"
    assert report.name == "Home"
    assert report.tests_total == 2
    assert report.tests_completed == 2
    assert report.progress_percent == 100.0
    assert report.violations_found == 2
    assert report.open_tasks == 2
    assert report.completed_at is not None
    assert report.summary is not None
    assert report.summary.automated_violations == 0
    assert report.summary.passed_tests == 2
    assert report.summary.failed_tests == 2
    assert sorted(adapter.calls) == [
        ("axe-core", "https://example.com/0"),
        ("pa11y", "https://example.com/0"),
    ]

    types = [m.notification_type for m in sink.messages]
    assert types.count("manual_task_created") == 2
    assert types[-1] == "session_finished"
    recorded = await orchestrator.list_notifications(session_id)
    assert [n.notification_type for n in recorded][-1] == "session_finished"


async def test_confirmed_violations_count_in_summary(
    orchestrator: ComplianceOrchestrator, adapter: FakeToolAdapter
) -> None:
    """Reviewer-confirmed violations are added to the automated ones."""
    adapter.outputs.update({"axe-core": AXE_OUTPUT})
    session_id = orchestrator.create_session(["axe-core"], pages=_pages(1))
    await orchestrator.run_session(session_id)
    (task,) = await orchestrator.list_open_tasks(session_id)
    await orchestrator.assign_task(task.id, "alice")
    await orchestrator.complete_task(
        task.id, ReviewSubmission(is_violation=True), "alice"
    )

    progress = SessionProgress.model_validate(orchestrator._load(session_id).progress)
    summary = orchestrator.summarize(session_id, progress)

    assert summary.automated_violations == 0
    assert summary.manual_confirmed_violations == 1
    assert summary.total_violations == 1


async def test_run_session_without_adjudication(
    orchestrator: ComplianceOrchestrator, adapter: FakeToolAdapter
) -> None:
    """Without adjudication every violation counts as automated."""
    adapter.outputs.update({"axe-core": AXE_OUTPUT, "pa11y": PA11Y_OUTPUT})
    session_id = orchestrator.create_session(
        ["axe-core", "pa11y"],
        pages=_pages(1),
        options=SessionOptions(adjudicate=False),
    )

    report = await orchestrator.run_session(session_id)

    assert report.status == "completed"
    assert report.open_tasks == 0
    assert report.summary is not None
    assert report.summary.automated_violations == 2
    assert report.summary.total_violations == 2


async def test_run_session_discovers_pages(
    orchestrator: ComplianceOrchestrator, adapter: FakeToolAdapter
) -> None:
    """Sessions without pages scan what discovery returns."""
    session_id = orchestrator.create_session(
        ["axe-core"], options=SessionOptions(project_id="project-1")
    )

    report = await orchestrator.run_session(session_id)

    assert report.status == "completed"
    assert adapter.calls == [("axe-core", "https://example.com/0")]


async def test_discovery_timeout_fails_session(
    database: Database,
    knowledge_base: CriteriaKnowledgeBase,
    notifier: Notifier,
    adapter: FakeToolAdapter,
) -> None:
    """A discovery that never completes fails the session without scanning."""
    orchestrator = _orchestrator(
        database, knowledge_base, notifier, adapter, PendingDiscoveryClient()
    )
    session_id = orchestrator.create_session(
        ["axe-core"],
        options=SessionOptions(project_id="project-1", discovery_timeout=0.05),
    )

    report = await orchestrator.run_session(session_id)

    assert report.status == "failed"
    assert "did not complete within 0.05 seconds" in (report.failure_reason or "")
    assert report.tests_completed == 0
    assert adapter.calls == []


async def test_discovery_failure_fails_session(
    database: Database,
    knowledge_base: CriteriaKnowledgeBase,
    notifier: Notifier,
    adapter: FakeToolAdapter,
) -> None:
    """A failed discovery fails the session with its reason."""
    orchestrator = _orchestrator(
        database, knowledge_base, notifier, adapter, FailedDiscoveryClient()
    )
    session_id = orchestrator.create_session(
        ["axe-core"], options=SessionOptions(project_id="project-1")
    )

    report = await orchestrator.run_session(session_id)

    assert report.status == "failed"
    assert "crawler blocked" in (report.failure_reason or "")


async def test_milestones_published_once(
    orchestrator: ComplianceOrchestrator, sink: RecordingSink
) -> None:
    """Each progress milestone is published once per session."""
    session_id = await orchestrator.start_session(["axe-core"], pages=_pages(4))

    await orchestrator.wait(session_id)

    milestones = [
        m.data["milestone"]
        for m in sink.messages
        if m.notification_type == "progress_milestone"
    ]
    assert milestones == [25, 50, 75, 100]


async def test_rejected_tool_counts_as_failed_unit(
    orchestrator: ComplianceOrchestrator, adapter: FakeToolAdapter
) -> None:
    """Unknown tools fail their units while the session completes."""
    session_id = orchestrator.create_session(["axe-core", "wave"], pages=_pages(2))

    report = await orchestrator.run_session(session_id)

    assert report.status == "completed"
    assert report.tests_completed == 4
    assert report.failed_units == 2
    assert {tool for tool, _ in adapter.calls} == {"axe-core"}


async def test_tool_errors_do_not_fail_session(
    orchestrator: ComplianceOrchestrator, adapter: FakeToolAdapter
) -> None:
    """A failing tool is recorded as a failed unit."""
    adapter.outputs["pa11y"] = None
    session_id = orchestrator.create_session(["axe-core", "pa11y"], pages=_pages(1))

    report = await orchestrator.run_session(session_id)

    assert report.status == "completed"
    assert report.failed_units == 1
    assert report.summary is not None
    assert report.summary.failed_units == 1


async def test_cancel_before_start(
    orchestrator: ComplianceOrchestrator, adapter: FakeToolAdapter
) -> None:
    """A session cancelled while planning never scans."""
    session_id = orchestrator.create_session(["axe-core"], pages=_pages(2))

    assert await orchestrator.cancel_session(session_id) is True
    report = await orchestrator.run_session(session_id)

    assert report.status == "cancelled"
    assert adapter.calls == []


async def test_cancel_during_scanning(
    database: Database,
    knowledge_base: CriteriaKnowledgeBase,
    notifier: Notifier,
) -> None:
    """Cancelling stops new units while running ones finish."""
    adapter = FakeToolAdapter(delay=0.2)
    orchestrator = _orchestrator(
        database, knowledge_base, notifier, adapter, max_concurrency=1
    )
    session_id = await orchestrator.start_session(["axe-core"], pages=_pages(4))
    await asyncio.sleep(0.05)

    assert await orchestrator.cancel_session(session_id) is True
    report = await orchestrator.wait(session_id)

    assert report.status == "cancelled"
    assert len(adapter.calls) == 1
    assert report.tests_completed == 1
    assert report.summary is None


async def test_cancel_finished_session(orchestrator: ComplianceOrchestrator) -> None:
    """Finished sessions cannot be cancelled."""
    session_id = orchestrator.create_session(["axe-core"], pages=_pages(1))
    await orchestrator.run_session(session_id)

    assert await orchestrator.cancel_session(session_id) is False
    assert (await orchestrator.get_session_status(session_id)).status == "completed"


async def test_unknown_session(orchestrator: ComplianceOrchestrator) -> None:
    """Operations on unknown sessions raise SessionNotFoundError."""
    with pytest.raises(SessionNotFoundError, match="Session not found: nope"):
        await orchestrator.cancel_session("nope")

    with pytest.raises(SessionNotFoundError):
        await orchestrator.get_session_status("nope")


async def test_store_unavailable_fails_session(
    orchestrator: ComplianceOrchestrator, adapter: FakeToolAdapter
) -> None:
    """Losing the store during scanning fails the session."""
    orchestrator.executor.execute = AsyncMock(  # type: ignore[method-assign]
        side_effect=StoreUnavailableError("Store unavailable: connection refused")
    )
    session_id = orchestrator.create_session(["axe-core"], pages=_pages(3))

    report = await orchestrator.run_session(session_id)

    assert report.status == "failed"
    assert report.failure_reason == "Store unavailable: connection refused"
    assert report.summary is None


async def test_unexpected_error_fails_session(
    orchestrator: ComplianceOrchestrator,
) -> None:
    """Unexpected errors fail the session with a reason."""
    orchestrator.engine.adjudicate = AsyncMock(  # type: ignore[method-assign]
        side_effect=RuntimeError("boom")
    )
    session_id = orchestrator.create_session(["axe-core"], pages=_pages(1))

    report = await orchestrator.run_session(session_id)

    assert report.status == "failed"
    assert report.failure_reason == "RuntimeError: boom"


async def test_workflow_metrics_for_session(
    orchestrator: ComplianceOrchestrator, adapter: FakeToolAdapter
) -> None:
    """workflow_metrics reports the session's review queue."""
    adapter.outputs.update({"axe-core": AXE_OUTPUT})
    session_id = orchestrator.create_session(["axe-core"], pages=_pages(1))
    await orchestrator.run_session(session_id)

    metrics = await orchestrator.workflow_metrics(session_id)

    assert metrics.total_tasks == 1
    assert metrics.pending_tasks == 1
    assert metrics.critical_tasks == 1


async def test_verdict_history_follows_review(
    orchestrator: ComplianceOrchestrator, adapter: FakeToolAdapter
) -> None:
    """A reviewed criterion shows the automated and the manual verdict."""
    adapter.outputs.update({"axe-core": AXE_OUTPUT})
    session_id = orchestrator.create_session(["axe-core"], pages=_pages(1))
    await orchestrator.run_session(session_id)
    (task,) = await orchestrator.list_open_tasks(session_id)
    await orchestrator.assign_task(task.id, "alice")
    await orchestrator.complete_task(
        task.id, ReviewSubmission(is_violation=True), "alice"
    )

    history = await orchestrator.verdict_history(session_id, criterion_id="1.1.1")

    assert [(c.old_status, c.new_status, c.method) for c in history] == [
        (None, "failed", "automated"),
        ("failed", "failed", "manual"),
    ]
    everything = await orchestrator.verdict_history(session_id)
    assert {c.criterion_id for c in everything} == {"1.1.1", "1.4.3", "3.1.2"}
    with pytest.raises(SessionNotFoundError):
        await orchestrator.verdict_history("nope")
