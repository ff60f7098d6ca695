"""Models for the compliance criteria catalogue and derived test strategy."""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

Confidence = Literal["low", "medium", "high"]
CoverageLevel = Literal["none", "low", "medium", "high"]
Level = Literal["A", "AA", "AAA"]
Principle = Literal["Perceivable", "Operable", "Understandable", "Robust"]


class RuleMapping(BaseModel):
    """Mapping of one tool rule to the criteria it tests."""

    model_config = ConfigDict(frozen=True)

    criteria: tuple[str, ...] = Field(..., description="Criterion ids, e.g. 1.1.1")
    confidence: Confidence = Field(
        default="medium", description="How precisely the rule detects failures"
    )


class ToolProfile(BaseModel):
    """Catalogue entry for a scanning tool."""

    model_config = ConfigDict(frozen=True)

    confidence: Confidence = Field(
        default="medium", description="Baseline confidence in the tool's findings"
    )
    coverage: str = Field(default="medium", description="Declared rule coverage")
    rules: dict[str, RuleMapping] = Field(
        default_factory=dict, description="Rule id to criteria mapping"
    )


class ManualProcedure(BaseModel):
    """Manual test procedure registered for a criterion."""

    model_config = ConfigDict(frozen=True)

    title: str = Field(..., description="Procedure title")
    overview: str = Field(default="", description="Short procedure overview")
    automated_coverage: CoverageLevel = Field(
        default="medium", description="How much of the criterion tools can cover"
    )
    steps: tuple[str, ...] = Field(default=(), description="Manual test steps")
    tools_needed: tuple[str, ...] = Field(
        default=(), description="Assistive tools required by the procedure"
    )
    estimated_minutes: int | None = Field(
        default=None, description="Expected manual effort in minutes"
    )


class CriterionInfo(BaseModel):
    """Metadata about one compliance criterion."""

    model_config = ConfigDict(frozen=True)

    title: str = Field(default="", description="Criterion title")
    level: Level = Field(..., description="Conformance level")
    principle: Principle = Field(..., description="Principle the criterion sits in")
    guideline: str = Field(default="", description="Parent guideline number")


class Catalogue(BaseModel):
    """Complete criteria catalogue loaded from YAML."""

    model_config = ConfigDict(frozen=True)

    version: str = Field(..., description="Catalogue schema version")
    criteria: dict[str, CriterionInfo] = Field(default_factory=dict)
    tools: dict[str, ToolProfile] = Field(default_factory=dict)
    procedures: dict[str, ManualProcedure] = Field(default_factory=dict)


class AutomatedCheck(BaseModel):
    """A tool rule that tests a criterion."""

    model_config = ConfigDict(frozen=True)

    tool: str
    rule_id: str
    confidence: Confidence
    coverage: str = Field(..., description="The tool's declared rule coverage")


class TestStrategy(BaseModel):
    """How a criterion is best tested."""

    __test__ = False

    model_config = ConfigDict(frozen=True)

    primary: Literal["automated", "manual", "hybrid"]
    automated_coverage: CoverageLevel
    approach: str = ""


class EffortEstimate(BaseModel):
    """Estimated testing effort for a criterion."""

    model_config = ConfigDict(frozen=True)

    automated_minutes: int
    manual_minutes: int
    automated_rules: int = 0
    manual_steps: int = 0

    @property
    def total_minutes(self) -> int:
        """Combined automated and manual effort."""
        return self.automated_minutes + self.manual_minutes
