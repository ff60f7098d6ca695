"""CLI entry point for the compliance runner."""

import asyncio
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, TypeVar

import typer
import yaml
from pydantic import ValidationError

from a11yops.compliance_runner.adjudication import AdjudicationEngine
from a11yops.compliance_runner.catalogue_loader import load_catalogue
from a11yops.compliance_runner.config import ComplianceSettings, load_settings
from a11yops.compliance_runner.discovery import (
    DiscoveryClient,
    HttpDiscoveryClient,
    StaticDiscoveryClient,
)
from a11yops.compliance_runner.errors import (
    ComplianceError,
    ConfigurationError,
    SessionNotFoundError,
)
from a11yops.compliance_runner.knowledge_base import CriteriaKnowledgeBase
from a11yops.compliance_runner.models.scan import Page
from a11yops.compliance_runner.models.session import SessionOptions
from a11yops.compliance_runner.models.workflow import (
    ReviewSubmission,
    TaskFilters,
    TaskOutcome,
)
from a11yops.compliance_runner.notifications import (
    LoggingNotificationSink,
    NotificationSink,
    Notifier,
    WebhookNotificationSink,
)
from a11yops.compliance_runner.orchestrator import ComplianceOrchestrator
from a11yops.compliance_runner.scan_executor import ScanExecutor
from a11yops.compliance_runner.store.database import Database
from a11yops.compliance_runner.tools.base import ToolAdapter
from a11yops.compliance_runner.tools.http import HttpToolAdapter
from a11yops.compliance_runner.tools.process import SubprocessToolAdapter

# Configure logging - force reconfiguration
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    stream=sys.stderr,
    force=True,
)
logger = logging.getLogger(__name__)

app = typer.Typer(help="Accessibility compliance scan orchestrator.")

T = TypeVar("T")

ConfigOption = typer.Option(None, "--config", help="Path to settings YAML")


@app.command()
def run(
    tools: list[str] = typer.Option(  # noqa: B008
        ..., "--tool", help="Tool to run (repeatable)"
    ),
    pages_file: Path | None = typer.Option(  # noqa: B008
        None, help="YAML/JSON list of pages ({id, url}); discovery is used if unset"
    ),
    project_id: str = typer.Option("", help="Project whose pages are discovered"),
    name: str = typer.Option("", help="Session name"),
    adjudicate: bool = typer.Option(True, help="Run adjudication after scanning"),
    config: Path | None = ConfigOption,  # noqa: B008
) -> None:
    """Run a compliance session to completion and print its summary."""
    settings = _load(config)

    pages: list[Page] | None = None
    if pages_file is not None:
        try:
            pages = load_pages(pages_file)
        except (FileNotFoundError, ValueError) as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(code=1)
    elif not settings.discovery.base_url:
        typer.echo(
            "Error: --pages-file is required when no discovery service is configured",
            err=True,
        )
        raise typer.Exit(code=1)

    options = SessionOptions(name=name, project_id=project_id, adjudicate=adjudicate)

    async def session(orchestrator: ComplianceOrchestrator) -> dict[str, Any]:
        session_id = orchestrator.create_session(tools, pages, options)
        logger.info(f"Running session {session_id}")
        report = await orchestrator.run_session(session_id)
        return report.model_dump(mode="json")

    output = _run(settings, session, scanning=True)
    typer.echo(json.dumps(output, indent=2))

    if output["status"] != "completed":
        logger.error(f"Session ended as {output['status']}: {output['failure_reason']}")
        raise typer.Exit(code=1)


@app.command()
def status(
    session_id: str = typer.Argument(..., help="Session id"),
    config: Path | None = ConfigOption,  # noqa: B008
) -> None:
    """Print the status of a session."""
    settings = _load(config)

    async def read(orchestrator: ComplianceOrchestrator) -> dict[str, Any]:
        report = await orchestrator.get_session_status(session_id)
        return report.model_dump(mode="json")

    typer.echo(json.dumps(_run(settings, read), indent=2))


@app.command()
def tasks(
    session_id: str = typer.Argument(..., help="Session id"),
    priority: int | None = typer.Option(None, min=1, max=5, help="Exact priority"),
    urgency: str | None = typer.Option(None, help="low, medium or high"),
    reviewer: str | None = typer.Option(None, help="Assigned reviewer"),
    workflow_type: str | None = typer.Option(None, help="Workflow type"),
    config: Path | None = ConfigOption,  # noqa: B008
) -> None:
    """List open review tasks of a session."""
    settings = _load(config)
    try:
        filters = TaskFilters(
            priority=priority,
            urgency=urgency,
            assigned_reviewer=reviewer,
            workflow_type=workflow_type,
        )
    except ValidationError as e:
        typer.echo(f"Error: invalid filters: {e}", err=True)
        raise typer.Exit(code=1)

    async def read(orchestrator: ComplianceOrchestrator) -> list[dict[str, Any]]:
        found = await orchestrator.list_open_tasks(session_id, filters)
        return [t.model_dump(mode="json") for t in found]

    typer.echo(json.dumps(_run(settings, read), indent=2))


@app.command()
def assign(
    task_id: str = typer.Argument(..., help="Task id"),
    reviewer_id: str = typer.Argument(..., help="Reviewer taking the task"),
    assigned_by: str | None = typer.Option(None, help="Who makes the assignment"),
    config: Path | None = ConfigOption,  # noqa: B008
) -> None:
    """Assign a pending review task to a reviewer."""
    settings = _load(config)

    async def act(orchestrator: ComplianceOrchestrator) -> TaskOutcome:
        return await orchestrator.assign_task(task_id, reviewer_id, assigned_by)

    _echo_outcome(_run(settings, act))


@app.command()
def complete(
    task_id: str = typer.Argument(..., help="Task id"),
    violation: bool = typer.Option(
        ..., "--violation/--no-violation", help="Reviewer confirms the violation"
    ),
    false_positive: bool = typer.Option(False, help="Finding is a false positive"),
    confidence: str = typer.Option("medium", help="low, medium or high"),
    notes: str = typer.Option("", help="Reviewer notes"),
    reviewer: str | None = typer.Option(None, help="Reviewer completing the task"),
    config: Path | None = ConfigOption,  # noqa: B008
) -> None:
    """Complete an in-progress review task."""
    settings = _load(config)
    try:
        submission = ReviewSubmission(
            is_violation=violation,
            is_false_positive=false_positive,
            confidence_level=confidence,
            notes=notes,
        )
    except ValidationError as e:
        typer.echo(f"Error: invalid submission: {e}", err=True)
        raise typer.Exit(code=1)

    async def act(orchestrator: ComplianceOrchestrator) -> TaskOutcome:
        return await orchestrator.complete_task(task_id, submission, reviewer)

    _echo_outcome(_run(settings, act))


@app.command()
def cancel(
    session_id: str = typer.Argument(..., help="Session id"),
    config: Path | None = ConfigOption,  # noqa: B008
) -> None:
    """Cancel a session that hasn't finished."""
    settings = _load(config)

    async def act(orchestrator: ComplianceOrchestrator) -> bool:
        return await orchestrator.cancel_session(session_id)

    cancelled = _run(settings, act)
    typer.echo(json.dumps({"session_id": session_id, "cancelled": cancelled}))
    if not cancelled:
        raise typer.Exit(code=1)


@app.command()
def metrics(
    session_id: str = typer.Argument(..., help="Session id"),
    config: Path | None = ConfigOption,  # noqa: B008
) -> None:
    """Print review queue metrics of a session."""
    settings = _load(config)

    async def read(orchestrator: ComplianceOrchestrator) -> dict[str, Any]:
        result = await orchestrator.workflow_metrics(session_id)
        return result.model_dump(mode="json")

    typer.echo(json.dumps(_run(settings, read), indent=2))


def load_pages(path: Path) -> list[Page]:
    """Load pages from a YAML or JSON list.

    Entries are either {id, url} objects or bare URLs, which are used as
    their own id.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If the file isn't a list of pages

    """
    if not path.exists():
        raise FileNotFoundError(f"Pages file not found: {path}")
    try:
        with path.open() as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(data, list):
        raise ValueError(f"Pages file must contain a list: {path}")
    try:
        return [
            Page(id=entry, url=entry) if isinstance(entry, str) else Page(**entry)
            for entry in data
        ]
    except (TypeError, ValidationError) as e:
        raise ValueError(f"Invalid page entry in {path}: {e}") from e


def build_orchestrator(
    settings: ComplianceSettings, scanning: bool = True
) -> ComplianceOrchestrator:
    """Wire the runner's components from settings.

    Args:
        settings: Runner settings
        scanning: Whether sessions will be run; the tool adapter is only
            created when they are

    Raises:
        ConfigurationError: If settings are inconsistent
        FileNotFoundError: If the configured catalogue doesn't exist
        ValueError: If the catalogue is invalid

    """
    kb_settings = settings.knowledge_base
    knowledge_base = CriteriaKnowledgeBase(
        load_catalogue(kb_settings.catalogue_path),
        unmapped_policy=kb_settings.unmapped_policy,
        fallback_criterion=kb_settings.fallback_criterion,
    )

    database = Database(
        settings.database.url,
        transaction_retries=settings.database.transaction_retries,
        echo=settings.database.echo,
    )
    database.create_schema()

    notifier = Notifier(_create_sink(settings))
    executor = ScanExecutor(
        database,
        knowledge_base,
        _create_adapter(settings) if scanning else None,
        timeout=settings.tools.timeout,
    )
    engine = AdjudicationEngine(
        database,
        knowledge_base,
        notifier,
        reviewer_pool=settings.notifications.reviewer_pool,
    )
    return ComplianceOrchestrator(
        database,
        executor,
        engine,
        _create_discovery(settings),
        notifier,
        max_concurrency=settings.tools.max_concurrency,
        tool_timeout=settings.tools.timeout,
        discovery_timeout=settings.discovery.timeout,
        discovery_poll_interval=settings.discovery.poll_interval,
    )


def _create_adapter(settings: ComplianceSettings) -> ToolAdapter:
    """Create tool adapter based on settings."""
    tools = settings.tools
    if tools.adapter == "http":
        if not tools.base_url:
            raise ConfigurationError("tools.base_url is required for the http adapter")
        return HttpToolAdapter(tools.base_url)
    if not tools.commands:
        raise ConfigurationError(
            "tools.commands is required for the subprocess adapter"
        )
    return SubprocessToolAdapter(tools.commands)


def _create_discovery(settings: ComplianceSettings) -> DiscoveryClient:
    """Create discovery client based on settings."""
    if settings.discovery.base_url:
        return HttpDiscoveryClient(settings.discovery.base_url)
    return StaticDiscoveryClient([])


def _create_sink(settings: ComplianceSettings) -> NotificationSink:
    """Create notification sink based on settings."""
    if settings.notifications.webhook_url:
        return WebhookNotificationSink(settings.notifications.webhook_url)
    return LoggingNotificationSink()


def _load(config: Path | None) -> ComplianceSettings:
    try:
        return load_settings(config)
    except (FileNotFoundError, ValueError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)


def _run(
    settings: ComplianceSettings,
    action: Callable[[ComplianceOrchestrator], Awaitable[T]],
    scanning: bool = False,
) -> T:
    """Build the orchestrator and run one action on a fresh event loop."""
    try:
        orchestrator = build_orchestrator(settings, scanning=scanning)
    except (ComplianceError, FileNotFoundError, ValueError) as e:
        logger.error(f"Failed to start: {e}")
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)

    async def main() -> T:
        try:
            return await action(orchestrator)
        finally:
            await orchestrator.notifier.drain()

    try:
        return asyncio.run(main())
    except SessionNotFoundError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)
    except ComplianceError as e:
        logger.exception("Command failed")
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)
    finally:
        orchestrator.database.dispose()


def _echo_outcome(outcome: TaskOutcome) -> None:
    if outcome.task is None:
        typer.echo(json.dumps({"ok": False, "error": outcome.error}))
        raise typer.Exit(code=1)
    typer.echo(json.dumps({"ok": True, "task": outcome.task.model_dump(mode="json")}))


if __name__ == "__main__":  # pragma: no cover
    app()
