"""Per-tool normalization of raw scanner output."""

from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any

from a11yops.compliance_runner.errors import ToolExecutionError
from a11yops.compliance_runner.models.scan import (
    NormalizedResult,
    NormalizedViolation,
    Severity,
)

_SEVERITIES: frozenset[str] = frozenset(
    {"critical", "serious", "moderate", "minor", "unknown"}
)


def _severity(value: object) -> Severity:
    text = str(value).lower() if value is not None else "unknown"
    return text if text in _SEVERITIES else "unknown"  # type: ignore[return-value]


class ResultNormalizer(ABC):
    """Converts one tool's output shape into a NormalizedResult."""

    def normalize(self, tool: str, raw: Mapping[str, Any]) -> NormalizedResult:
        """Normalize raw output, reporting malformed output as a tool error.

        Args:
            tool: Tool that produced the output
            raw: Raw tool output

        Returns:
            Normalized violations and pass count

        Raises:
            ToolExecutionError: If the output doesn't have the expected shape

        """
        try:
            return self._normalize(raw)
        except (KeyError, TypeError, AttributeError, ValueError) as e:
            raise ToolExecutionError(tool, f"Unrecognized output: {e}") from e

    @abstractmethod
    def _normalize(self, raw: Mapping[str, Any]) -> NormalizedResult:
        """Shape-specific conversion."""


class RuleListNormalizer(ResultNormalizer):
    """Output listing failed rules with affected nodes (axe-core style)."""

    def _normalize(self, raw: Mapping[str, Any]) -> NormalizedResult:
        violations = []
        for item in raw.get("violations", []):
            nodes = item.get("nodes") or [{}]
            first = nodes[0]
            target = first.get("target")
            if isinstance(target, list):
                selector = " ".join(str(t) for t in target)
            else:
                selector = target
            violations.append(
                NormalizedViolation(
                    rule_id=item["id"],
                    impact=_severity(item.get("impact")),
                    description=item.get("description") or item.get("help") or "",
                    selector=selector,
                    help_url=item.get("helpUrl"),
                    html=first.get("html"),
                    tags=tuple(item.get("tags", [])),
                )
            )

        passes = raw.get("passes", 0)
        pass_count = len(passes) if isinstance(passes, list) else int(passes)
        return NormalizedResult(violations=violations, pass_count=pass_count)


class IssueListNormalizer(ResultNormalizer):
    """Output listing coded issues by type (pa11y style)."""

    TYPE_SEVERITY: Mapping[str, Severity] = {
        "error": "serious",
        "warning": "moderate",
        "notice": "minor",
    }

    def _normalize(self, raw: Mapping[str, Any]) -> NormalizedResult:
        violations = [
            NormalizedViolation(
                rule_id=issue["code"],
                impact=self.TYPE_SEVERITY.get(str(issue.get("type")), "unknown"),
                description=issue.get("message", ""),
                selector=issue.get("selector"),
                html=issue.get("context"),
            )
            for issue in raw.get("issues", [])
        ]
        passes = raw.get("passes", 0)
        pass_count = len(passes) if isinstance(passes, list) else int(passes)
        return NormalizedResult(violations=violations, pass_count=pass_count)


class AuditMapNormalizer(ResultNormalizer):
    """Output keyed by audit id with a 0-1 score (lighthouse style).

    Audits with a null score are not applicable and ignored. When the
    accessibility category lists its audit refs, only those audits count.
    """

    def _normalize(self, raw: Mapping[str, Any]) -> NormalizedResult:
        report = raw.get("lhr", raw)
        audits: Mapping[str, Any] = report["audits"]
        refs = (
            report.get("categories", {}).get("accessibility", {}).get("auditRefs")
        )
        allowed = {ref["id"] for ref in refs} if refs else None

        violations = []
        pass_count = 0
        for audit_id, audit in audits.items():
            if allowed is not None and audit_id not in allowed:
                continue
            score = audit.get("score")
            if score is None:
                continue
            if score >= 1:
                pass_count += 1
                continue
            violations.append(
                NormalizedViolation(
                    rule_id=audit_id,
                    impact="serious" if score == 0 else "moderate",
                    description=audit.get("title") or audit.get("description", ""),
                    help_url=audit.get("helpUrl"),
                )
            )
        return NormalizedResult(violations=violations, pass_count=pass_count)


NORMALIZERS: Mapping[str, ResultNormalizer] = {
    "axe-core": RuleListNormalizer(),
    "playwright": RuleListNormalizer(),
    "contrast-analyzer": RuleListNormalizer(),
    "pa11y": IssueListNormalizer(),
    "lighthouse": AuditMapNormalizer(),
}


def get_normalizer(tool: str) -> ResultNormalizer | None:
    """Normalizer registered for a tool, if any."""
    return NORMALIZERS.get(tool)
