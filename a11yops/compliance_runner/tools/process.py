"""Scanning tools run as local command-line programs."""

import asyncio
import json
import logging
import time

from a11yops.compliance_runner.errors import ToolExecutionError
from a11yops.compliance_runner.models.scan import ToolRunOutput
from a11yops.compliance_runner.tools.base import ToolAdapter

logger = logging.getLogger(__name__)

URL_PLACEHOLDER = "{url}"


class SubprocessToolAdapter(ToolAdapter):
    """Runs tools from argv templates and parses JSON from stdout.

    Each template may contain ``{url}``, which is replaced by the page URL,
    e.g. ``["pa11y", "--reporter", "json", "{url}"]``.
    """

    def __init__(self, commands: dict[str, list[str]]) -> None:
        """Initialize adapter with one argv template per tool."""
        self.commands = commands

    def supports(self, tool: str) -> bool:
        """Whether a command is configured for the tool."""
        return tool in self.commands

    async def run(self, tool: str, page_url: str, timeout: float) -> ToolRunOutput:
        """Run the tool's command and parse its stdout."""
        template = self.commands.get(tool)
        if not template:
            raise ToolExecutionError(tool, "No command configured")

        argv = [part.replace(URL_PLACEHOLDER, page_url) for part in template]
        started = time.monotonic()

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ToolExecutionError(tool, f"Failed to start {argv[0]}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise ToolExecutionError(
                tool, f"Command did not complete within {timeout} seconds"
            )

        raw = _parse_output(tool, stdout)
        if raw is None:
            message = stderr.decode(errors="replace").strip()
            raise ToolExecutionError(
                tool, f"Exited with {process.returncode}: {message or 'no output'}"
            )
        if process.returncode:
            # pa11y exits non-zero when it finds issues
            logger.debug(f"{tool} exited with {process.returncode} for {page_url}")

        return ToolRunOutput(
            tool=tool,
            raw=raw,
            duration_ms=int((time.monotonic() - started) * 1000),
        )


def _parse_output(tool: str, stdout: bytes) -> dict | None:
    """Parse tool stdout, wrapping bare JSON lists as an issue list."""
    text = stdout.decode(errors="replace").strip()
    if not text:
        return None
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ToolExecutionError(tool, f"Invalid JSON output: {e}") from e
    if isinstance(data, list):
        return {"issues": data}
    if isinstance(data, dict):
        return data
    raise ToolExecutionError(tool, "Output is not a JSON object or list")
