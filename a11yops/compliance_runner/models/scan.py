"""Models for pages, tool output and scan outcomes."""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

Severity = Literal["critical", "serious", "moderate", "minor", "unknown"]


class Page(BaseModel):
    """A discovered page to scan."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Page identifier from discovery")
    url: str = Field(..., description="Absolute page URL")


class ToolRunOutput(BaseModel):
    """Raw output of a single tool invocation."""

    tool: str = Field(..., description="Tool that produced the output")
    raw: dict[str, Any] = Field(default_factory=dict, description="Opaque tool output")
    duration_ms: int = Field(default=0, description="Wall-clock run time")


class NormalizedViolation(BaseModel):
    """A tool finding normalized to the common shape."""

    model_config = ConfigDict(frozen=True)

    rule_id: str = Field(..., description="Tool-specific rule identifier")
    impact: Severity = Field(default="unknown", description="Normalized severity")
    description: str = Field(default="", description="Human readable description")
    selector: str | None = Field(default=None, description="Location selector")
    help_url: str | None = Field(default=None, description="Help reference")
    html: str | None = Field(default=None, description="Offending markup snippet")
    tags: tuple[str, ...] = Field(default=(), description="Tool-supplied tags")

    def evidence(self, tool: str) -> dict[str, Any]:
        """Return the evidence entry recorded on a TestInstance."""
        return {
            "tool": tool,
            "rule_id": self.rule_id,
            "impact": self.impact,
            "description": self.description,
            "selector": self.selector,
        }


class NormalizedResult(BaseModel):
    """Normalized view of one tool run."""

    violations: list[NormalizedViolation] = Field(default_factory=list)
    pass_count: int = Field(default=0, description="Number of passing checks")


class AggregatedViolation(BaseModel):
    """A stored violation with the context the adjudication engine needs."""

    tool: str
    page: Page
    violation: NormalizedViolation


class ScanOutcome(BaseModel):
    """Result of executing one tool against one page."""

    session_id: str
    page_id: str
    tool: str
    status: Literal["completed", "error", "rejected"]
    scan_result_id: int | None = None
    violation_count: int = 0
    pass_count: int = 0
    duration_ms: int = 0
    error: str | None = None
    failed_criteria: int = 0
    passed_criteria: int = 0
    skipped_criteria: int = 0
