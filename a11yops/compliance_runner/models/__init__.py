"""Data models for sessions, scans, the criteria catalogue and workflow tasks."""

from a11yops.compliance_runner.models.catalogue import (
    AutomatedCheck,
    Catalogue,
    CriterionInfo,
    EffortEstimate,
    ManualProcedure,
    RuleMapping,
    TestStrategy,
    ToolProfile,
)
from a11yops.compliance_runner.models.scan import (
    AggregatedViolation,
    NormalizedResult,
    NormalizedViolation,
    Page,
    ScanOutcome,
    ToolRunOutput,
)
from a11yops.compliance_runner.models.session import (
    SessionOptions,
    SessionProgress,
    SessionStatusReport,
    SessionSummary,
)
from a11yops.compliance_runner.models.workflow import (
    AdjudicationSummary,
    ContextualProcedure,
    NotificationMessage,
    ReviewDecision,
    ReviewSubmission,
    TaskAssignment,
    TaskFilters,
    TaskOutcome,
    VerdictChange,
    WorkflowMetrics,
    WorkflowTaskView,
)

__all__ = [
    "AdjudicationSummary",
    "AggregatedViolation",
    "AutomatedCheck",
    "Catalogue",
    "ContextualProcedure",
    "CriterionInfo",
    "EffortEstimate",
    "ManualProcedure",
    "NormalizedResult",
    "NormalizedViolation",
    "NotificationMessage",
    "Page",
    "ReviewDecision",
    "ReviewSubmission",
    "RuleMapping",
    "ScanOutcome",
    "SessionOptions",
    "SessionProgress",
    "SessionStatusReport",
    "SessionSummary",
    "TaskAssignment",
    "TaskFilters",
    "TaskOutcome",
    "TestStrategy",
    "ToolProfile",
    "ToolRunOutput",
    "VerdictChange",
    "WorkflowMetrics",
    "WorkflowTaskView",
]
