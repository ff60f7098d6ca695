"""Runs one tool against one page and derives per-criterion verdicts."""

import asyncio
import logging
import time
from collections.abc import Collection, Sequence

from sqlalchemy import delete, insert, select
from sqlalchemy.orm import Session

from a11yops.compliance_runner.errors import (
    ToolExecutionError,
    TransactionAbortedError,
)
from a11yops.compliance_runner.knowledge_base import UNMAPPED, CriteriaKnowledgeBase
from a11yops.compliance_runner.models.scan import (
    NormalizedResult,
    NormalizedViolation,
    Page,
    ScanOutcome,
)
from a11yops.compliance_runner.store.audit import record_verdict_change
from a11yops.compliance_runner.store.database import Database, insert_ignore, upsert
from a11yops.compliance_runner.store.tables import (
    ScanResultRecord,
    TestInstanceRecord,
    ViolationRecord,
    utcnow,
)
from a11yops.compliance_runner.tools.base import ToolAdapter
from a11yops.compliance_runner.tools.normalizers import get_normalizer

logger = logging.getLogger(__name__)

_SEVERITY_ORDER = ("critical", "serious", "moderate", "minor", "unknown")

_INSTANCE_KEY = ("session_id", "criterion_id", "page_id")


class ScanExecutor:
    """Executes scan units and records their results."""

    def __init__(
        self,
        database: Database,
        knowledge_base: CriteriaKnowledgeBase,
        adapter: ToolAdapter | None,
        timeout: float = 120.0,
    ) -> None:
        """Initialize executor.

        Args:
            database: Store for scan results and test instances
            knowledge_base: Rule to criterion mapping
            adapter: Adapter used to invoke tools; without one every unit
                is rejected
            timeout: Default seconds allowed per tool invocation

        """
        self.database = database
        self.knowledge_base = knowledge_base
        self.adapter = adapter
        self.timeout = timeout

    async def execute(
        self,
        session_id: str,
        page: Page,
        tool: str,
        allowed_tools: Collection[str] | None = None,
        timeout: float | None = None,
    ) -> ScanOutcome:
        """Run one tool against one page.

        Tool failures and timeouts are recorded on the scan result and
        reported in the outcome rather than raised.

        Args:
            session_id: Owning session
            page: Page to scan
            tool: Tool name
            allowed_tools: Tools requested for the session
            timeout: Override for the per-invocation timeout

        Returns:
            Outcome of the unit; status "rejected" for unknown tools

        Raises:
            StoreUnavailableError: If the store can't be reached

        """
        normalizer = get_normalizer(tool)
        if (
            normalizer is None
            or self.adapter is None
            or not self._accepts(tool, allowed_tools)
        ):
            logger.warning(f"Rejected unknown tool {tool} for session {session_id}")
            return ScanOutcome(
                session_id=session_id,
                page_id=page.id,
                tool=tool,
                status="rejected",
                error=f"Unknown tool: {tool}",
            )

        timeout = timeout or self.timeout

        started = time.monotonic()
        raw: dict | None = None
        result = NormalizedResult()
        error: str | None = None
        try:
            output = await asyncio.wait_for(
                self.adapter.run(tool, page.url, timeout), timeout
            )
            raw = output.raw
            result = normalizer.normalize(tool, output.raw)
        except asyncio.TimeoutError:
            error = f"{tool}: did not complete within {timeout} seconds"
        except ToolExecutionError as e:
            error = str(e)
        except Exception as e:
            logger.exception(f"Unexpected failure running {tool} on {page.url}")
            error = f"{tool}: {e}"
        duration_ms = int((time.monotonic() - started) * 1000)

        if error is not None:
            logger.warning(f"Scan unit {tool} on {page.url} failed: {error}")
            result = NormalizedResult()

        scan_result_id = await self.database.run_in_transaction_async(
            lambda s: self._store_result(
                s, session_id, page, tool, raw, result, duration_ms, error
            )
        )

        outcome = ScanOutcome(
            session_id=session_id,
            page_id=page.id,
            tool=tool,
            status="error" if error else "completed",
            scan_result_id=scan_result_id,
            violation_count=len(result.violations),
            pass_count=result.pass_count,
            duration_ms=duration_ms,
            error=error,
        )
        if error is None:
            await self._derive_instances(outcome, page, result.violations)
        return outcome

    def _accepts(self, tool: str, allowed_tools: Collection[str] | None) -> bool:
        if allowed_tools is not None and tool not in allowed_tools:
            return False
        return self.adapter is not None and self.adapter.supports(tool)

    def _store_result(
        self,
        session: Session,
        session_id: str,
        page: Page,
        tool: str,
        raw: dict | None,
        result: NormalizedResult,
        duration_ms: int,
        error: str | None,
    ) -> int:
        """Upsert the scan result and replace its violations."""
        upsert(
            session,
            ScanResultRecord.__table__,
            {
                "session_id": session_id,
                "page_id": page.id,
                "page_url": page.url,
                "tool": tool,
                "raw_output": raw,
                "violation_count": len(result.violations),
                "pass_count": result.pass_count,
                "duration_ms": duration_ms,
                "error": error,
                "scanned_at": utcnow(),
            },
            index_elements=("session_id", "page_id", "tool"),
        )
        scan_result_id: int = session.execute(
            select(ScanResultRecord.id).where(
                ScanResultRecord.session_id == session_id,
                ScanResultRecord.page_id == page.id,
                ScanResultRecord.tool == tool,
            )
        ).scalar_one()

        session.execute(
            delete(ViolationRecord).where(
                ViolationRecord.scan_result_id == scan_result_id
            )
        )
        if result.violations:
            session.execute(
                insert(ViolationRecord),
                [
                    {
                        "scan_result_id": scan_result_id,
                        "rule_id": v.rule_id,
                        "impact": v.impact,
                        "description": v.description,
                        "selector": v.selector,
                        "help_url": v.help_url,
                        "html": v.html,
                        "tags": list(v.tags),
                    }
                    for v in result.violations
                ],
            )
        return scan_result_id

    async def _derive_instances(
        self,
        outcome: ScanOutcome,
        page: Page,
        violations: Sequence[NormalizedViolation],
    ) -> None:
        """Record failed and passed test instances, one transaction each."""
        tool = outcome.tool
        by_criterion: dict[str, list[NormalizedViolation]] = {}
        for violation in violations:
            criteria = self.knowledge_base.map_rule_to_criteria(
                tool, violation.rule_id, violation.tags
            )
            for criterion_id in criteria:
                if criterion_id == UNMAPPED:
                    continue
                by_criterion.setdefault(criterion_id, []).append(violation)

        for criterion_id, found in sorted(by_criterion.items()):
            try:
                await self.database.run_in_transaction_async(
                    lambda s, c=criterion_id, f=found: self._record_failure(
                        s, outcome.session_id, c, page.id, tool, f
                    )
                )
                outcome.failed_criteria += 1
            except TransactionAbortedError:
                logger.warning(
                    f"Skipped criterion {criterion_id} on page {page.id} "
                    "after repeated aborted transactions"
                )
                outcome.skipped_criteria += 1

        covered = self.knowledge_base.tool_criteria(tool) - by_criterion.keys()
        for criterion_id in sorted(covered):
            try:
                await self.database.run_in_transaction_async(
                    lambda s, c=criterion_id: self._record_pass(
                        s, outcome.session_id, c, page.id, tool
                    )
                )
                outcome.passed_criteria += 1
            except TransactionAbortedError:
                logger.warning(
                    f"Skipped criterion {criterion_id} on page {page.id} "
                    "after repeated aborted transactions"
                )
                outcome.skipped_criteria += 1

    def _record_failure(
        self,
        session: Session,
        session_id: str,
        criterion_id: str,
        page_id: str,
        tool: str,
        violations: Sequence[NormalizedViolation],
    ) -> None:
        evidence = [v.evidence(tool) for v in violations]
        worst = min(
            (v.impact for v in violations), key=_SEVERITY_ORDER.index, default=None
        )
        values = {
            "session_id": session_id,
            "criterion_id": criterion_id,
            "page_id": page_id,
            "status": "failed",
            "method": "automated",
            "confidence": self.knowledge_base.tool_confidence(tool, worst),
            "evidence": evidence,
            "tool_used": tool,
            "updated_at": utcnow(),
        }
        if insert_ignore(session, TestInstanceRecord.__table__, values, _INSTANCE_KEY):
            record_verdict_change(
                session,
                session_id=session_id,
                criterion_id=criterion_id,
                page_id=page_id,
                old_status=None,
                new_status="failed",
                method="automated",
                changed_by=tool,
                reason=_failure_reason(violations),
            )
            return

        instance = session.execute(
            select(TestInstanceRecord)
            .where(
                TestInstanceRecord.session_id == session_id,
                TestInstanceRecord.criterion_id == criterion_id,
                TestInstanceRecord.page_id == page_id,
            )
            .with_for_update()
        ).scalar_one()

        if instance.method == "manual":
            return

        existing = list(instance.evidence or [])
        instance.evidence = existing + [e for e in evidence if e not in existing]
        if instance.status != "failed":
            record_verdict_change(
                session,
                session_id=session_id,
                criterion_id=criterion_id,
                page_id=page_id,
                old_status=instance.status,
                new_status="failed",
                method="automated",
                changed_by=tool,
                reason=_failure_reason(violations),
            )
            instance.status = "failed"
            instance.tool_used = tool
        instance.updated_at = utcnow()

    def _record_pass(
        self,
        session: Session,
        session_id: str,
        criterion_id: str,
        page_id: str,
        tool: str,
    ) -> None:
        inserted = insert_ignore(
            session,
            TestInstanceRecord.__table__,
            {
                "session_id": session_id,
                "criterion_id": criterion_id,
                "page_id": page_id,
                "status": "passed",
                "method": "automated",
                "confidence": self.knowledge_base.tool_confidence(tool, None),
                "evidence": [],
                "tool_used": tool,
                "updated_at": utcnow(),
            },
            _INSTANCE_KEY,
        )
        if inserted:
            record_verdict_change(
                session,
                session_id=session_id,
                criterion_id=criterion_id,
                page_id=page_id,
                old_status=None,
                new_status="passed",
                method="automated",
                changed_by=tool,
                reason=f"No {tool} violations for a covered criterion",
            )


def _failure_reason(violations: Sequence[NormalizedViolation]) -> str:
    rules = sorted({v.rule_id for v in violations})
    return f"{len(violations)} violation(s): {', '.join(rules)}"
