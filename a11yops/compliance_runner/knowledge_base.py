"""Read-only lookups over the criteria catalogue."""

import logging
import re
from collections.abc import Iterable
from typing import Literal

from a11yops.compliance_runner.models.catalogue import (
    AutomatedCheck,
    Catalogue,
    Confidence,
    CriterionInfo,
    EffortEstimate,
    ManualProcedure,
    TestStrategy,
)

logger = logging.getLogger(__name__)

UNMAPPED = "unmapped"

UnmappedPolicy = Literal["unmapped", "fallback"]

_TAG_PATTERN = re.compile(r"^wcag(\d)(\d)(\d{1,2})$", re.IGNORECASE)
_CODE_PATTERN = re.compile(r"(?:^|\.)(\d)_(\d)_(\d{1,2})(?:\.|$)")


class CriteriaKnowledgeBase:
    """Immutable mapping between tool rules, criteria and manual procedures.

    Built once from a catalogue and shared by every component of a run.
    """

    def __init__(
        self,
        catalogue: Catalogue,
        unmapped_policy: UnmappedPolicy = "unmapped",
        fallback_criterion: str = "2.1.1",
    ) -> None:
        """Index the catalogue.

        Args:
            catalogue: Validated criteria catalogue
            unmapped_policy: What to return for rules that map to nothing:
                the UNMAPPED sentinel or the fallback criterion
            fallback_criterion: Criterion used by the "fallback" policy

        Raises:
            ValueError: If the fallback criterion is not in the catalogue

        """
        if (
            unmapped_policy == "fallback"
            and fallback_criterion not in catalogue.criteria
        ):
            raise ValueError(f"Unknown fallback criterion: {fallback_criterion}")

        self._catalogue = catalogue
        self._unmapped_policy = unmapped_policy
        self._fallback_criterion = fallback_criterion

        rules_by_criterion: dict[str, list[Confidence]] = {}
        coverage_by_tool: dict[str, frozenset[str]] = {}
        for tool, profile in catalogue.tools.items():
            covered: set[str] = set()
            for mapping in profile.rules.values():
                covered.update(mapping.criteria)
                for criterion_id in mapping.criteria:
                    rules_by_criterion.setdefault(criterion_id, []).append(
                        mapping.confidence
                    )
            coverage_by_tool[tool] = frozenset(covered)

        self._rule_confidences = {k: tuple(v) for k, v in rules_by_criterion.items()}
        self._coverage = coverage_by_tool

    @property
    def catalogue(self) -> Catalogue:
        """Underlying catalogue."""
        return self._catalogue

    @property
    def unmapped_policy(self) -> UnmappedPolicy:
        """Policy applied to rules with no known criterion."""
        return self._unmapped_policy

    def known_tools(self) -> frozenset[str]:
        """Tools the catalogue has rule tables for."""
        return frozenset(self._catalogue.tools)

    def map_rule_to_criteria(
        self, tool: str, rule_id: str, tags: Iterable[str] = ()
    ) -> frozenset[str]:
        """Map a tool rule to the criteria it tests.

        Direct catalogue mappings win. Otherwise criteria are inferred from
        tags such as ``wcag143`` or rule codes such as ``...1_4_3...``, keeping
        only criteria the catalogue knows. When nothing matches, the configured
        unmapped policy decides the result.

        Args:
            tool: Tool name
            rule_id: Tool-specific rule identifier
            tags: Tags reported with the finding

        Returns:
            Non-empty set of criterion ids, or ``{UNMAPPED}``

        """
        profile = self._catalogue.tools.get(tool)
        if profile is not None and rule_id in profile.rules:
            return frozenset(profile.rules[rule_id].criteria)

        inferred = self._infer_criteria(rule_id, tags)
        if inferred:
            return inferred

        logger.debug(f"No criterion found for {tool}/{rule_id}")
        if self._unmapped_policy == "fallback":
            return frozenset({self._fallback_criterion})
        return frozenset({UNMAPPED})

    def _infer_criteria(self, rule_id: str, tags: Iterable[str]) -> frozenset[str]:
        found: set[str] = set()
        for tag in tags:
            match = _TAG_PATTERN.match(tag)
            if match:
                found.add(".".join(match.groups()))
        match = _CODE_PATTERN.search(rule_id)
        if match:
            found.add(".".join(match.groups()))
        return frozenset(c for c in found if c in self._catalogue.criteria)

    def tool_criteria(self, tool: str) -> frozenset[str]:
        """Criteria a tool is known to cover."""
        return self._coverage.get(tool, frozenset())

    def automated_checks(self, criterion_id: str) -> tuple[AutomatedCheck, ...]:
        """Tool rules that test a criterion, with each tool's coverage."""
        return tuple(
            AutomatedCheck(
                tool=tool,
                rule_id=rule_id,
                confidence=mapping.confidence,
                coverage=profile.coverage,
            )
            for tool, profile in sorted(self._catalogue.tools.items())
            for rule_id, mapping in sorted(profile.rules.items())
            if criterion_id in mapping.criteria
        )

    def rule_confidence(self, tool: str, rule_id: str) -> Confidence | None:
        """Confidence of a directly mapped rule, if any."""
        profile = self._catalogue.tools.get(tool)
        if profile is None or rule_id not in profile.rules:
            return None
        return profile.rules[rule_id].confidence

    def get_criterion(self, criterion_id: str) -> CriterionInfo | None:
        """Metadata for a criterion, if catalogued."""
        return self._catalogue.criteria.get(criterion_id)

    def get_manual_procedure(self, criterion_id: str) -> ManualProcedure | None:
        """Manual test procedure for a criterion, if registered."""
        return self._catalogue.procedures.get(criterion_id)

    def get_strategy(self, criterion_id: str) -> TestStrategy:
        """Decide how a criterion is best tested."""
        confidences = self._rule_confidences.get(criterion_id, ())
        procedure = self.get_manual_procedure(criterion_id)
        has_high = "high" in confidences

        if has_high and procedure is not None:
            return TestStrategy(
                primary="hybrid",
                automated_coverage=procedure.automated_coverage,
                approach="automated_first",
            )
        if has_high:
            return TestStrategy(
                primary="automated",
                automated_coverage="high",
                approach="automated_sufficient",
            )
        if confidences and procedure is not None:
            return TestStrategy(
                primary="hybrid", automated_coverage="low", approach="manual_primary"
            )
        if procedure is not None:
            return TestStrategy(
                primary="manual", automated_coverage="none", approach="manual_only"
            )
        return TestStrategy(
            primary="manual", automated_coverage="none", approach="needs_research"
        )

    def estimate_effort(self, criterion_id: str) -> EffortEstimate:
        """Estimate automated and manual test effort in minutes."""
        rules = len(self._rule_confidences.get(criterion_id, ()))
        procedure = self.get_manual_procedure(criterion_id)

        automated = min(rules * 2, 5)
        manual = 0
        steps = 0
        if procedure is not None:
            steps = len(procedure.steps)
            if procedure.estimated_minutes is not None:
                manual = procedure.estimated_minutes
            else:
                manual = 5 * steps

        return EffortEstimate(
            automated_minutes=automated,
            manual_minutes=manual,
            automated_rules=rules,
            manual_steps=steps,
        )

    def tool_confidence(self, tool: str, severity: str | None) -> Confidence:
        """Confidence in a tool's finding of the given severity.

        Critical findings are always treated as high confidence. Minor
        findings are downgraded one step.
        """
        profile = self._catalogue.tools.get(tool)
        base: Confidence = profile.confidence if profile is not None else "medium"

        if severity == "critical":
            return "high"
        if severity == "minor":
            return "medium" if base == "high" else "low"
        return base
