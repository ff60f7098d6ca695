"""Test doubles for tool adapters and notification sinks."""

import asyncio
from typing import Any

from a11yops.compliance_runner.errors import ToolExecutionError
from a11yops.compliance_runner.models.scan import ToolRunOutput
from a11yops.compliance_runner.models.workflow import NotificationMessage
from a11yops.compliance_runner.notifications import NotificationSink
from a11yops.compliance_runner.tools.base import ToolAdapter

STATUS_RULE = "WCAG2AA.Principle4.Guideline4_1.4_1_3.Status"


class FakeToolAdapter(ToolAdapter):
    """Adapter returning canned output per tool."""

    def __init__(
        self, outputs: dict[str, Any] | None = None, delay: float = 0
    ) -> None:
        """Initialize with raw output, or an exception, per tool."""
        self.outputs = outputs or {}
        self.delay = delay
        self.calls: list[tuple[str, str]] = []

    async def run(self, tool: str, page_url: str, timeout: float) -> ToolRunOutput:
        """Return the canned output for the tool."""
        self.calls.append((tool, page_url))
        if self.delay:
            await asyncio.sleep(self.delay)
        output = self.outputs.get(tool, {"violations": [], "passes": []})
        if isinstance(output, Exception):
            raise output
        if output is None:
            raise ToolExecutionError(tool, "no canned output")
        return ToolRunOutput(tool=tool, raw=output, duration_ms=5)


class RecordingSink(NotificationSink):
    """Sink keeping every published message."""

    def __init__(self) -> None:
        """Initialize with no messages."""
        self.messages: list[NotificationMessage] = []

    async def publish(self, message: NotificationMessage) -> None:
        """Keep the message."""
        self.messages.append(message)
