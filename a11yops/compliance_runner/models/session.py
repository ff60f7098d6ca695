"""Models for compliance sessions and their progress."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

SessionStatus = Literal["planning", "in_progress", "completed", "failed", "cancelled"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed", "cancelled"})

SESSION_TRANSITIONS: dict[str, frozenset[str]] = {
    "planning": frozenset({"in_progress", "failed", "cancelled"}),
    "in_progress": frozenset({"completed", "failed", "cancelled"}),
    "completed": frozenset(),
    "failed": frozenset(),
    "cancelled": frozenset(),
}

MILESTONES: tuple[int, ...] = (25, 50, 75, 100)


class SessionOptions(BaseModel):
    """Options accepted when starting a session."""

    name: str = Field(default="", description="Display name for the session")
    project_id: str = Field(default="", description="Project whose pages are scanned")
    adjudicate: bool = Field(
        default=True, description="Run the adjudication phase after scanning"
    )
    max_concurrency: int | None = Field(
        default=None, ge=1, description="Override for parallel scan units"
    )
    tool_timeout: float | None = Field(
        default=None, gt=0, description="Override for per-invocation timeout (s)"
    )
    discovery_timeout: float | None = Field(
        default=None, gt=0, description="Override for discovery wait bound (s)"
    )
    discovery_poll_interval: float | None = Field(
        default=None, gt=0, description="Override for discovery poll interval (s)"
    )


class SessionSummary(BaseModel):
    """Final metrics computed when a session finishes."""

    total_violations: int = 0
    automated_violations: int = 0
    manual_confirmed_violations: int = 0
    passed_tests: int = 0
    failed_tests: int = 0
    completion_percent: float = 0.0
    failed_units: int = 0
    skipped_criteria: int = 0


class SessionProgress(BaseModel):
    """Typed progress record persisted wholesale on the session row."""

    tests_total: int = 0
    tests_completed: int = 0
    failed_units: int = 0
    violations_found: int = 0
    passes_found: int = 0
    skipped_criteria: int = 0
    milestones_reached: list[int] = Field(default_factory=list)
    automated_sufficient: int = 0
    manual_review_required: int = 0
    false_positive_candidates: int = 0
    unmapped_violations: int = 0
    workflow_tasks_created: int = 0
    last_adjudicated_at: datetime | None = None
    summary: SessionSummary | None = None

    @property
    def percent_complete(self) -> float:
        """Share of scan units finished, 0-100."""
        if self.tests_total <= 0:
            return 0.0
        return round(self.tests_completed / self.tests_total * 100, 2)

    def set_total(self, total: int) -> None:
        """Set the size of the scan matrix."""
        self.tests_total = max(total, 0)

    def record_unit(
        self,
        *,
        violations: int = 0,
        passes: int = 0,
        failed: bool = False,
        skipped_criteria: int = 0,
    ) -> None:
        """Account for one finished scan unit."""
        self.tests_completed += 1
        self.violations_found += violations
        self.passes_found += passes
        self.skipped_criteria += skipped_criteria
        if failed:
            self.failed_units += 1

    def reach_milestones(self) -> list[int]:
        """Mark and return milestones crossed since the last call."""
        percent = self.percent_complete
        newly: list[int] = []
        for milestone in MILESTONES:
            if percent >= milestone and milestone not in self.milestones_reached:
                self.milestones_reached.append(milestone)
                newly.append(milestone)
        return newly

    def record_adjudication(
        self,
        *,
        automated_sufficient: int,
        manual_review_required: int,
        false_positive_candidates: int,
        unmapped: int,
        tasks_created: int,
        adjudicated_at: datetime,
    ) -> None:
        """Store the outcome counts of the adjudication phase."""
        self.automated_sufficient = automated_sufficient
        self.manual_review_required = manual_review_required
        self.false_positive_candidates = false_positive_candidates
        self.unmapped_violations = unmapped
        self.workflow_tasks_created = tasks_created
        self.last_adjudicated_at = adjudicated_at

    def set_summary(self, summary: SessionSummary) -> None:
        """Attach the final summary."""
        self.summary = summary


class SessionStatusReport(BaseModel):
    """Status view returned to API callers."""

    session_id: str
    name: str
    status: SessionStatus
    progress_percent: float
    tests_completed: int
    tests_total: int
    violations_found: int
    failed_units: int
    open_tasks: int
    failure_reason: str | None = None
    summary: SessionSummary | None = None
    created_at: datetime | None = None
    completed_at: datetime | None = None
