"""Scanning tools reached through an HTTP scanning service."""

import time
from collections.abc import Mapping

import aiohttp

from a11yops.compliance_runner.errors import ToolExecutionError
from a11yops.compliance_runner.models.scan import ToolRunOutput
from a11yops.compliance_runner.tools.base import ToolAdapter


class HttpToolAdapter(ToolAdapter):
    """Runs tools by POSTing scan requests to a scanning service."""

    def __init__(self, base_url: str, token: str | None = None) -> None:
        """Initialize adapter with the scanning service location."""
        self.base_url = base_url.rstrip("/")
        self.token = token

    async def run(self, tool: str, page_url: str, timeout: float) -> ToolRunOutput:
        """POST a scan request and return the service's JSON output."""
        started = time.monotonic()
        url = f"{self.base_url}/scans"
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        payload = {"tool": tool, "url": page_url, "timeout": timeout}

        try:
            async with aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=timeout)
            ) as session:
                async with session.post(url, headers=headers, json=payload) as response:
                    if response.status != 200:
                        text = await response.text()
                        raise ToolExecutionError(
                            tool, f"Failed to run scan: {response.status} {text}"
                        )
                    data: Mapping[str, object] = await response.json()
        except aiohttp.ClientError as e:
            raise ToolExecutionError(tool, f"Scanning service error: {e}") from e

        if not isinstance(data, dict):
            raise ToolExecutionError(tool, "Scanning service returned non-object JSON")

        raw = data.get("result", data)
        if not isinstance(raw, dict):
            raise ToolExecutionError(tool, "Scan result is not a JSON object")

        return ToolRunOutput(
            tool=tool,
            raw=raw,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
