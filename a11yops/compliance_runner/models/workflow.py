"""Models for adjudication decisions, workflow tasks and notifications."""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

ReviewAction = Literal[
    "AUTOMATED_SUFFICIENT", "MANUAL_REVIEW_REQUIRED", "FALSE_POSITIVE_CHECK"
]
WorkflowType = Literal[
    "violation_verification",
    "false_positive_check",
    "manual_confirmation",
    "remediation_validation",
]
Urgency = Literal["low", "medium", "high"]
TaskStatus = Literal["pending", "in_progress", "completed"]
Resolution = Literal["violation_confirmed", "false_positive", "resolved"]

OPEN_TASK_STATUSES: tuple[str, ...] = ("pending", "in_progress")


class ReviewDecision(BaseModel):
    """Outcome of the decision table for one violation/criterion pair."""

    model_config = ConfigDict(frozen=True)

    action: ReviewAction
    reason: str
    workflow_type: WorkflowType | None = None
    urgency: Urgency | None = None


class ContextualProcedure(BaseModel):
    """Manual procedure tailored to the violation a task was raised for."""

    title: str
    overview: str = ""
    steps: list[str] = Field(default_factory=list)
    tools_needed: list[str] = Field(default_factory=list)
    violation_context: dict[str, Any] = Field(default_factory=dict)


class ReviewSubmission(BaseModel):
    """Reviewer verdict submitted when completing a task."""

    is_violation: bool = Field(..., description="Reviewer confirms the violation")
    is_false_positive: bool = Field(
        default=False, description="Reviewer marks the finding as a false positive"
    )
    confidence_level: Literal["low", "medium", "high"] = Field(default="medium")
    notes: str = Field(default="", description="Free-form reviewer notes")
    evidence: dict[str, Any] = Field(default_factory=dict)

    @property
    def resolution(self) -> Resolution:
        """Resolution recorded on the task."""
        if self.is_violation:
            return "violation_confirmed"
        if self.is_false_positive:
            return "false_positive"
        return "resolved"

    @property
    def test_status(self) -> Literal["failed", "not_applicable", "passed"]:
        """TestInstance status implied by the verdict."""
        mapping: dict[Resolution, Literal["failed", "not_applicable", "passed"]] = {
            "violation_confirmed": "failed",
            "false_positive": "not_applicable",
            "resolved": "passed",
        }
        return mapping[self.resolution]


class WorkflowTaskView(BaseModel):
    """Read model of a workflow task."""

    id: str
    session_id: str
    criterion_id: str
    page_id: str
    page_url: str | None = None
    workflow_type: WorkflowType
    priority: int = Field(..., ge=1, le=5)
    urgency: Urgency
    status: TaskStatus
    assigned_reviewer: str | None = None
    procedure: ContextualProcedure | None = None
    violation_data: dict[str, Any] = Field(default_factory=dict)
    estimated_minutes: int = 0
    resolution: Resolution | None = None
    created_at: datetime | None = None
    assigned_at: datetime | None = None
    completed_at: datetime | None = None


class TaskOutcome(BaseModel):
    """Typed result of a reviewer action on a task."""

    task: WorkflowTaskView | None = None
    error: Literal["not_found", "invalid_state"] | None = None

    @property
    def ok(self) -> bool:
        """Whether the action was applied."""
        return self.task is not None


class TaskFilters(BaseModel):
    """Filters for listing open tasks."""

    priority: int | None = Field(default=None, ge=1, le=5)
    urgency: Urgency | None = None
    assigned_reviewer: str | None = None
    workflow_type: WorkflowType | None = None


class TaskAssignment(BaseModel):
    """One entry of a bulk assignment request."""

    task_id: str
    reviewer_id: str


class AdjudicationSummary(BaseModel):
    """Counts produced by one adjudication pass."""

    processed_violations: int = 0
    automated_sufficient: int = 0
    manual_review_required: int = 0
    false_positive_candidates: int = 0
    unmapped: int = 0
    tasks_created: int = 0
    tasks_skipped: int = 0
    task_ids: list[str] = Field(default_factory=list)


class WorkflowTypeMetrics(BaseModel):
    """Per workflow type task counts."""

    workflow_type: WorkflowType
    total: int
    completed: int
    completion_rate: int


class WorkflowMetrics(BaseModel):
    """Task queue metrics for one session."""

    total_tasks: int = 0
    pending_tasks: int = 0
    in_progress_tasks: int = 0
    completed_tasks: int = 0
    critical_tasks: int = 0
    urgent_tasks: int = 0
    overdue_tasks: int = 0
    completion_rate: int = 0
    by_workflow_type: list[WorkflowTypeMetrics] = Field(default_factory=list)


class NotificationMessage(BaseModel):
    """Notification handed to the delivery sink."""

    notification_type: str
    session_id: str
    task_id: str | None = None
    recipient: str = "reviewers"
    priority: int | None = None
    title: str
    message: str = ""
    data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None


class VerdictChange(BaseModel):
    """One entry of a test instance's verdict history."""

    criterion_id: str
    page_id: str
    old_status: str | None = Field(
        default=None, description="Verdict before the change; None on creation"
    )
    new_status: str
    method: Literal["automated", "manual"]
    changed_by: str | None = Field(default=None, description="Tool or reviewer")
    reason: str = ""
    changed_at: datetime | None = None
