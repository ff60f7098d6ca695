"""Session orchestration: discovery, scan matrix, adjudication, finalization."""

import asyncio
import logging
import uuid
from collections.abc import Iterable, Sequence
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from a11yops.compliance_runner.adjudication import AdjudicationEngine
from a11yops.compliance_runner.discovery import DiscoveryClient, wait_for_pages
from a11yops.compliance_runner.errors import (
    DiscoveryError,
    SessionNotFoundError,
    StoreUnavailableError,
)
from a11yops.compliance_runner.models.scan import (
    AggregatedViolation,
    NormalizedViolation,
    Page,
    ScanOutcome,
)
from a11yops.compliance_runner.models.session import (
    SESSION_TRANSITIONS,
    SessionOptions,
    SessionProgress,
    SessionStatus,
    SessionStatusReport,
    SessionSummary,
)
from a11yops.compliance_runner.models.workflow import (
    AdjudicationSummary,
    NotificationMessage,
    ReviewSubmission,
    TaskAssignment,
    TaskFilters,
    TaskOutcome,
    VerdictChange,
    WorkflowMetrics,
    WorkflowTaskView,
)
from a11yops.compliance_runner.notifications import Notifier
from a11yops.compliance_runner.progress import ProgressTracker
from a11yops.compliance_runner.scan_executor import ScanExecutor
from a11yops.compliance_runner.store.database import Database
from a11yops.compliance_runner.store.tables import (
    ScanResultRecord,
    SessionRecord,
    TestInstanceRecord,
    ViolationRecord,
    WorkflowTaskRecord,
    utcnow,
)

logger = logging.getLogger(__name__)


class _RunState:
    """Mutable state shared by the units of one session run."""

    def __init__(self, progress: SessionProgress) -> None:
        """Initialize run state around the session progress."""
        self.progress = progress
        self.fatal: str | None = None
        self.executed = 0
        self.save_lock = asyncio.Lock()


class ComplianceOrchestrator:
    """Drives compliance sessions from page discovery to a final summary."""

    def __init__(
        self,
        database: Database,
        executor: ScanExecutor,
        engine: AdjudicationEngine,
        discovery: DiscoveryClient,
        notifier: Notifier,
        max_concurrency: int = 4,
        tool_timeout: float | None = None,
        discovery_timeout: float = 60,
        discovery_poll_interval: float = 2,
    ) -> None:
        """Initialize orchestrator.

        Args:
            database: Store shared with the executor and engine
            executor: Runs scan units
            engine: Adjudicates violations and owns the task queue
            discovery: Source of pages when a session has none
            notifier: Notification recorder and publisher
            max_concurrency: Scan units run in parallel per session
            tool_timeout: Seconds per tool invocation; executor default if None
            discovery_timeout: Seconds to wait for discovery to complete
            discovery_poll_interval: Seconds between discovery polls

        """
        self.database = database
        self.executor = executor
        self.engine = engine
        self.discovery = discovery
        self.notifier = notifier
        self.tracker = ProgressTracker(notifier)
        self.max_concurrency = max_concurrency
        self.tool_timeout = tool_timeout
        self.discovery_timeout = discovery_timeout
        self.discovery_poll_interval = discovery_poll_interval
        self._runs: dict[str, asyncio.Task[SessionStatusReport]] = {}

    async def start_session(
        self,
        tools: Sequence[str],
        pages: Sequence[Page] | None = None,
        options: SessionOptions | None = None,
    ) -> str:
        """Create a session and run it in the background.

        Args:
            tools: Tools to run against every page
            pages: Pages to scan; discovered for options.project_id if None
            options: Session options

        Returns:
            The new session id

        """
        session_id = self.create_session(tools, pages, options)
        task = asyncio.get_running_loop().create_task(self.run_session(session_id))
        self._runs[session_id] = task
        logger.info(f"Started session {session_id}")
        return session_id

    def create_session(
        self,
        tools: Sequence[str],
        pages: Sequence[Page] | None = None,
        options: SessionOptions | None = None,
    ) -> str:
        """Persist a new session in the planning state."""
        options = options or SessionOptions()
        session_id = str(uuid.uuid4())
        record = SessionRecord(
            id=session_id,
            project_id=options.project_id,
            name=options.name or f"Session {session_id[:8]}",
            status="planning",
            pages=[p.model_dump() for p in pages] if pages is not None else None,
            tools=list(dict.fromkeys(tools)),
            progress=SessionProgress().model_dump(mode="json"),
            options=options.model_dump(mode="json"),
            created_at=utcnow(),
        )
        self.database.run_in_transaction(lambda s: s.add(record))
        return session_id

    async def wait(self, session_id: str) -> SessionStatusReport:
        """Wait for a background run to finish and return its status."""
        task = self._runs.get(session_id)
        if task is not None:
            try:
                await task
            finally:
                self._runs.pop(session_id, None)
        await self.notifier.drain()
        return await self.get_session_status(session_id)

    async def run_session(self, session_id: str) -> SessionStatusReport:
        """Run a session through every phase.

        Fatal errors fail the session with a reason instead of propagating.

        Args:
            session_id: Session created by create_session or start_session

        Returns:
            Status of the session after the run

        Raises:
            SessionNotFoundError: If the session doesn't exist

        """
        record = self._load(session_id)
        try:
            await self._run_phases(record)
        except StoreUnavailableError as e:
            logger.error(f"Session {session_id} lost the store: {e}")
            self._try_fail(session_id, str(e))
        except Exception as e:
            logger.exception(f"Session {session_id} aborted")
            self._try_fail(session_id, f"{type(e).__name__}: {e}")
        return await self.get_session_status(session_id)

    async def _run_phases(self, record: SessionRecord) -> None:
        session_id = record.id
        options = SessionOptions.model_validate(record.options or {})
        tools: list[str] = list(record.tools or [])

        if record.pages is not None:
            pages = [Page.model_validate(p) for p in record.pages]
        else:
            try:
                discovered = await wait_for_pages(
                    self.discovery,
                    record.project_id,
                    timeout=options.discovery_timeout or self.discovery_timeout,
                    poll_interval=(
                        options.discovery_poll_interval
                        or self.discovery_poll_interval
                    ),
                    is_cancelled=lambda: self._is_cancelled(session_id),
                )
            except DiscoveryError as e:
                logger.error(f"Session {session_id}: {e}")
                self._transition(session_id, "failed", failure_reason=str(e))
                return
            if discovered is None:
                return
            pages = discovered

        progress = SessionProgress()
        progress.set_total(len(pages) * len(tools))
        started = self._transition(
            session_id,
            "in_progress",
            started_at=utcnow(),
            pages=[p.model_dump() for p in pages],
            progress=progress.model_dump(mode="json"),
        )
        if not started:
            logger.info(f"Session {session_id} was not started: no longer planning")
            return

        logger.info(
            f"Session {session_id}: scanning {len(pages)} pages with "
            f"{len(tools)} tools"
        )
        state = _RunState(progress)
        semaphore = asyncio.Semaphore(options.max_concurrency or self.max_concurrency)
        units = [
            self._run_unit(session_id, page, tool, tools, options, state, semaphore)
            for page in pages
            for tool in tools
        ]
        await asyncio.gather(*units)
        logger.info(
            f"Session {session_id}: {state.executed}/{len(units)} scan units executed"
        )

        if state.fatal is not None:
            self._transition(session_id, "failed", failure_reason=state.fatal)
            return
        if self._is_cancelled(session_id):
            logger.info(f"Session {session_id} cancelled during scanning")
            return

        if options.adjudicate:
            violations = self.aggregate(session_id)
            summary = await self.engine.adjudicate(session_id, violations)
            self._record_adjudication(session_id, progress, summary)

        await self._finalize(session_id, progress)

    async def _run_unit(
        self,
        session_id: str,
        page: Page,
        tool: str,
        tools: Sequence[str],
        options: SessionOptions,
        state: _RunState,
        semaphore: asyncio.Semaphore,
    ) -> ScanOutcome | None:
        """Run one scan unit unless the session was aborted or cancelled."""
        async with semaphore:
            if state.fatal is not None or await self._unit_cancelled(session_id):
                return None

            state.executed += 1
            outcome: ScanOutcome | None = None
            try:
                outcome = await self.executor.execute(
                    session_id,
                    page,
                    tool,
                    allowed_tools=tools,
                    timeout=options.tool_timeout or self.tool_timeout,
                )
            except StoreUnavailableError as e:
                logger.error(f"Session {session_id}: store unavailable: {e}")
                state.fatal = str(e)
                return None
            except Exception:
                logger.exception(f"Scan unit {tool} on {page.url} failed")

            progress = state.progress
            progress.record_unit(
                violations=outcome.violation_count if outcome else 0,
                passes=outcome.pass_count if outcome else 0,
                failed=outcome is None or outcome.status != "completed",
                skipped_criteria=outcome.skipped_criteria if outcome else 0,
            )
            self.tracker.unit_finished(session_id, progress)
            try:
                async with state.save_lock:
                    snapshot = progress.model_dump(mode="json")
                    await self.database.run_in_transaction_async(
                        lambda s: _write_progress(s, session_id, snapshot)
                    )
            except StoreUnavailableError as e:
                state.fatal = str(e)
            return outcome

    def aggregate(self, session_id: str) -> list[AggregatedViolation]:
        """Collect the stored violations of successful scan units."""

        def work(session: Session) -> list[AggregatedViolation]:
            rows = session.execute(
                select(ViolationRecord, ScanResultRecord)
                .join(
                    ScanResultRecord,
                    ViolationRecord.scan_result_id == ScanResultRecord.id,
                )
                .where(
                    ScanResultRecord.session_id == session_id,
                    ScanResultRecord.error.is_(None),
                )
                .order_by(ScanResultRecord.id, ViolationRecord.id)
            ).all()
            return [
                AggregatedViolation(
                    tool=scan.tool,
                    page=Page(id=scan.page_id, url=scan.page_url or ""),
                    violation=NormalizedViolation(
                        rule_id=violation.rule_id,
                        impact=violation.impact,
                        description=violation.description or "",
                        selector=violation.selector,
                        help_url=violation.help_url,
                        html=violation.html,
                        tags=tuple(violation.tags or ()),
                    ),
                )
                for violation, scan in rows
            ]

        return self.database.read(work)

    def _record_adjudication(
        self, session_id: str, progress: SessionProgress, summary: AdjudicationSummary
    ) -> None:
        progress.record_adjudication(
            automated_sufficient=summary.automated_sufficient,
            manual_review_required=summary.manual_review_required,
            false_positive_candidates=summary.false_positive_candidates,
            unmapped=summary.unmapped,
            tasks_created=summary.tasks_created,
            adjudicated_at=utcnow(),
        )
        self._save_progress(session_id, progress)

    async def _finalize(self, session_id: str, progress: SessionProgress) -> None:
        summary = self.summarize(session_id, progress)
        progress.set_summary(summary)

        def work(session: Session) -> bool:
            changed = self._transition_in(
                session,
                session_id,
                "completed",
                completed_at=utcnow(),
                progress=progress.model_dump(mode="json"),
            )
            if changed:
                self.notifier.record(session, _finished_message(session_id, summary))
            return changed

        if self.database.run_in_transaction(work):
            self.notifier.publish(_finished_message(session_id, summary))
            logger.info(
                f"Session {session_id} completed: {summary.total_violations} "
                f"violations, {summary.failed_units} failed units"
            )

    def summarize(self, session_id: str, progress: SessionProgress) -> SessionSummary:
        """Compute final metrics from the store and the run's progress."""

        def work(session: Session) -> tuple[dict[str, int], int]:
            by_status = dict(
                session.execute(
                    select(TestInstanceRecord.status, func.count())
                    .where(TestInstanceRecord.session_id == session_id)
                    .group_by(TestInstanceRecord.status)
                ).all()
            )
            confirmed = session.execute(
                select(func.count())
                .select_from(WorkflowTaskRecord)
                .where(
                    WorkflowTaskRecord.session_id == session_id,
                    WorkflowTaskRecord.resolution == "violation_confirmed",
                )
            ).scalar_one()
            return by_status, confirmed

        by_status, confirmed = self.database.read(work)
        if progress.last_adjudicated_at is not None:
            automated = progress.automated_sufficient
        else:
            automated = progress.violations_found
        return SessionSummary(
            total_violations=automated + confirmed,
            automated_violations=automated,
            manual_confirmed_violations=confirmed,
            passed_tests=by_status.get("passed", 0),
            failed_tests=by_status.get("failed", 0),
            completion_percent=progress.percent_complete,
            failed_units=progress.failed_units,
            skipped_criteria=progress.skipped_criteria,
        )

    async def get_session_status(self, session_id: str) -> SessionStatusReport:
        """Current status and progress of a session.

        Raises:
            SessionNotFoundError: If the session doesn't exist

        """
        record = self._load(session_id)
        progress = SessionProgress.model_validate(record.progress or {})
        return SessionStatusReport(
            session_id=record.id,
            name=record.name,
            status=record.status,
            progress_percent=progress.percent_complete,
            tests_completed=progress.tests_completed,
            tests_total=progress.tests_total,
            violations_found=progress.violations_found,
            failed_units=progress.failed_units,
            open_tasks=await self.engine.count_open_tasks(session_id),
            failure_reason=record.failure_reason,
            summary=progress.summary,
            created_at=record.created_at,
            completed_at=record.completed_at,
        )

    async def cancel_session(self, session_id: str) -> bool:
        """Cancel a session that hasn't finished.

        Units already running finish; no new units start.

        Returns:
            True if the session was cancelled, False if it had already ended

        Raises:
            SessionNotFoundError: If the session doesn't exist

        """
        self._load(session_id)
        cancelled = self._transition(session_id, "cancelled", completed_at=utcnow())
        if cancelled:
            logger.info(f"Session {session_id} cancelled")
        return cancelled

    async def list_open_tasks(
        self, session_id: str, filters: TaskFilters | None = None
    ) -> list[WorkflowTaskView]:
        """Open review tasks of a session, most urgent first."""
        self._load(session_id)
        return await self.engine.list_open_tasks(session_id, filters)

    async def assign_task(
        self, task_id: str, reviewer_id: str, assigned_by: str | None = None
    ) -> TaskOutcome:
        """Assign a pending review task."""
        return await self.engine.assign_task(task_id, reviewer_id, assigned_by)

    async def bulk_assign(
        self, assignments: Iterable[TaskAssignment], assigned_by: str | None = None
    ) -> list[TaskOutcome]:
        """Assign several review tasks."""
        return await self.engine.bulk_assign(list(assignments), assigned_by)

    async def complete_task(
        self,
        task_id: str,
        submission: ReviewSubmission,
        completed_by: str | None = None,
    ) -> TaskOutcome:
        """Complete an in-progress review task."""
        return await self.engine.complete_task(task_id, submission, completed_by)

    async def workflow_metrics(self, session_id: str) -> WorkflowMetrics:
        """Review queue metrics of a session."""
        self._load(session_id)
        return await self.engine.workflow_metrics(session_id)

    async def list_notifications(self, session_id: str) -> list[NotificationMessage]:
        """Recorded notifications of a session."""
        self._load(session_id)
        return await self.engine.list_notifications(session_id)

    async def verdict_history(
        self,
        session_id: str,
        criterion_id: str | None = None,
        page_id: str | None = None,
    ) -> list[VerdictChange]:
        """Verdict changes of a session's test instances, oldest first."""
        self._load(session_id)
        return await self.engine.verdict_history(session_id, criterion_id, page_id)

    def _load(self, session_id: str) -> SessionRecord:
        record = self.database.read(lambda s: s.get(SessionRecord, session_id))
        if record is None:
            raise SessionNotFoundError(session_id)
        return record

    def _is_cancelled(self, session_id: str) -> bool:
        return self.database.read(lambda s: _status_of(s, session_id)) == "cancelled"

    async def _unit_cancelled(self, session_id: str) -> bool:
        status = await self.database.read_async(lambda s: _status_of(s, session_id))
        return status == "cancelled"

    def _save_progress(self, session_id: str, progress: SessionProgress) -> None:
        snapshot = progress.model_dump(mode="json")
        self.database.run_in_transaction(
            lambda s: _write_progress(s, session_id, snapshot)
        )

    def _transition(
        self, session_id: str, target: SessionStatus, **values: Any
    ) -> bool:
        return self.database.run_in_transaction(
            lambda s: self._transition_in(s, session_id, target, **values)
        )

    def _transition_in(
        self, session: Session, session_id: str, target: SessionStatus, **values: Any
    ) -> bool:
        """Move a session to target if its current status allows it."""
        sources = [s for s, targets in SESSION_TRANSITIONS.items() if target in targets]
        result = session.execute(
            update(SessionRecord)
            .where(SessionRecord.id == session_id, SessionRecord.status.in_(sources))
            .values(status=target, **values)
        )
        return bool(result.rowcount)

    def _try_fail(self, session_id: str, reason: str) -> None:
        try:
            self._transition(session_id, "failed", failure_reason=reason)
        except StoreUnavailableError:
            logger.error(f"Could not mark session {session_id} as failed: {reason}")


def _status_of(session: Session, session_id: str) -> str | None:
    return session.execute(
        select(SessionRecord.status).where(SessionRecord.id == session_id)
    ).scalar_one_or_none()


def _write_progress(session: Session, session_id: str, snapshot: dict) -> None:
    session.execute(
        update(SessionRecord)
        .where(SessionRecord.id == session_id)
        .values(progress=snapshot)
    )


def _finished_message(session_id: str, summary: SessionSummary) -> NotificationMessage:
    return NotificationMessage(
        notification_type="session_finished",
        session_id=session_id,
        title="Compliance session completed",
        message=(
            f"{summary.total_violations} violations, {summary.passed_tests} passed "
            f"and {summary.failed_tests} failed tests"
        ),
        data=summary.model_dump(),
    )
