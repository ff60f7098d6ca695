"""Abstract base class for scanning tool adapters."""

from abc import ABC, abstractmethod

from a11yops.compliance_runner.models.scan import ToolRunOutput


class ToolAdapter(ABC):
    """Abstract base for invoking an external scanning tool."""

    @abstractmethod
    async def run(self, tool: str, page_url: str, timeout: float) -> ToolRunOutput:
        """Run a tool against a page and return its raw output.

        Args:
            tool: Tool name (e.g., "axe-core")
            page_url: Absolute URL of the page to scan
            timeout: Seconds the tool may take

        Returns:
            Raw tool output

        Raises:
            ToolExecutionError: If the tool fails or returns unusable output

        """

    def supports(self, tool: str) -> bool:
        """Whether this adapter knows how to invoke the tool."""
        return True
