"""Tests for the command-line tool adapter."""

import sys

import pytest

from a11yops.compliance_runner.errors import ToolExecutionError
from a11yops.compliance_runner.tools.process import SubprocessToolAdapter


def _python(code: str) -> list[str]:
    return [sys.executable, "-c", code]


def test_supports_configured_tools() -> None:
    """supports only accepts tools with a command."""
    adapter = SubprocessToolAdapter({"pa11y": ["pa11y", "{url}"]})

    assert adapter.supports("pa11y")
    assert not adapter.supports("axe-core")


async def test_run_substitutes_url() -> None:
    """run passes the page URL and parses a JSON object."""
    code = "import json, sys; print(json.dumps({'url': sys.argv[1]}))"
    adapter = SubprocessToolAdapter({"axe-core": [*_python(code), "{url}"]})

    output = await adapter.run("axe-core", "https://example.com/", 10.0)

    assert output.tool == "axe-core"
    assert output.raw == {"url": "https://example.com/"}


async def test_run_wraps_issue_list() -> None:
    """A bare JSON list is wrapped as an issue list."""
    code = "import sys; print('[{\"code\": \"X\"}]'); sys.exit(2)"
    adapter = SubprocessToolAdapter({"pa11y": _python(code)})

    output = await adapter.run("pa11y", "https://example.com/", 10.0)

    assert output.raw == {"issues": [{"code": "X"}]}


async def test_run_without_output() -> None:
    """run reports the exit code and stderr when stdout is empty."""
    code = "import sys; sys.stderr.write('browser crashed'); sys.exit(3)"
    adapter = SubprocessToolAdapter({"pa11y": _python(code)})

    with pytest.raises(ToolExecutionError, match="Exited with 3: browser crashed"):
        await adapter.run("pa11y", "https://example.com/", 10.0)


async def test_run_invalid_json() -> None:
    """run rejects output that is not JSON."""
    adapter = SubprocessToolAdapter({"pa11y": _python("print('not json')")})

    with pytest.raises(ToolExecutionError, match="Invalid JSON output"):
        await adapter.run("pa11y", "https://example.com/", 10.0)


async def test_run_timeout() -> None:
    """run kills a command that exceeds the timeout."""
    adapter = SubprocessToolAdapter({"pa11y": _python("import time; time.sleep(5)")})

    with pytest.raises(ToolExecutionError, match="did not complete within 0.2"):
        await adapter.run("pa11y", "https://example.com/", 0.2)


async def test_run_missing_executable() -> None:
    """run reports commands that cannot be started."""
    adapter = SubprocessToolAdapter({"pa11y": ["/nonexistent/pa11y", "{url}"]})

    with pytest.raises(ToolExecutionError, match="Failed to start"):
        await adapter.run("pa11y", "https://example.com/", 10.0)


async def test_run_unconfigured_tool() -> None:
    """run rejects tools without a command."""
    adapter = SubprocessToolAdapter({})

    with pytest.raises(ToolExecutionError, match="No command configured"):
        await adapter.run("pa11y", "https://example.com/", 10.0)
