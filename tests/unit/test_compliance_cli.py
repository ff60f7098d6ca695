"""Tests for CLI entry point."""

import json
from pathlib import Path
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from a11yops.compliance_runner.cli import app, load_pages
from a11yops.compliance_runner.config import DATABASE_URL_ENV
from a11yops.compliance_runner.models.scan import Page
from tests.fakes import FakeToolAdapter

runner = CliRunner()

AXE_OUTPUT = {
    "violations": [
        {
            "id": "image-alt",
            "impact": "critical",
            "description": "Images must have alternate text",
            "nodes": [{"target": ["img.hero"]}],
        }
    ],
    "passes": [],
}


@pytest.fixture(autouse=True)
def clear_database_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the environment from overriding the test database."""
    monkeypatch.delenv(DATABASE_URL_ENV, raising=False)


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    """Create settings file pointing at a temporary SQLite store."""
    path = tmp_path / "settings.yaml"
    path.write_text(
        f"""
database:
  url: sqlite:///{tmp_path / "cli.db"}
tools:
  adapter: http
  base_url: https://scanner.example.com
"""
    )
    return path


@pytest.fixture
def pages_file(tmp_path: Path) -> Path:
    """Create pages file with one page."""
    path = tmp_path / "pages.yaml"
    path.write_text('- {id: home, url: "https://example.com/"}\n')
    return path


def _run_session(config_file: Path, pages_file: Path, *extra: str) -> dict:
    adapter = FakeToolAdapter({"axe-core": AXE_OUTPUT})
    with patch(
        "a11yops.compliance_runner.cli._create_adapter", return_value=adapter
    ):
        result = runner.invoke(
            app,
            [
                "run",
                "--tool",
                "axe-core",
                "--pages-file",
                str(pages_file),
                "--name",
                "Nightly",
                "--config",
                str(config_file),
                *extra,
            ],
        )
    assert result.exit_code == 0, result.output
    return json.loads(result.stdout)


def test_run_success(config_file: Path, pages_file: Path) -> None:
    """run executes a session and prints its report."""
    report = _run_session(config_file, pages_file)

    assert report["status"] == "completed"
    assert report["name"] == "Nightly"
    assert report["tests_total"] == 1
    assert report["violations_found"] == 1
    assert report["open_tasks"] == 1
    assert report["summary"]["failed_tests"] == 1


def test_run_without_adjudication(config_file: Path, pages_file: Path) -> None:
    """run --no-adjudicate creates no review tasks."""
    report = _run_session(config_file, pages_file, "--no-adjudicate")

    assert report["open_tasks"] == 0
    assert report["summary"]["automated_violations"] == 1


def test_run_requires_pages_without_discovery(config_file: Path) -> None:
    """run fails when neither pages nor discovery are available."""
    result = runner.invoke(
        app, ["run", "--tool", "axe-core", "--config", str(config_file)]
    )

    assert result.exit_code == 1
    assert "--pages-file is required" in result.output


def test_run_missing_pages_file(config_file: Path, tmp_path: Path) -> None:
    """run fails for a missing pages file."""
    result = runner.invoke(
        app,
        [
            "run",
            "--tool",
            "axe-core",
            "--pages-file",
            str(tmp_path / "missing.yaml"),
            "--config",
            str(config_file),
        ],
    )

    assert result.exit_code == 1
    assert "Pages file not found" in result.output


def test_run_missing_adapter_settings(tmp_path: Path, pages_file: Path) -> None:
    """run fails when the tool adapter isn't configured."""
    config_file = tmp_path / "settings.yaml"
    config_file.write_text(f"database:\n  url: sqlite:///{tmp_path / 'cli.db'}\n")

    result = runner.invoke(
        app,
        [
            "run",
            "--tool",
            "axe-core",
            "--pages-file",
            str(pages_file),
            "--config",
            str(config_file),
        ],
    )

    assert result.exit_code == 1
    assert "tools.base_url is required" in result.output


def test_run_missing_config(tmp_path: Path, pages_file: Path) -> None:
    """run fails for a missing settings file."""
    result = runner.invoke(
        app,
        [
            "run",
            "--tool",
            "axe-core",
            "--pages-file",
            str(pages_file),
            "--config",
            str(tmp_path / "missing.yaml"),
        ],
    )

    assert result.exit_code == 1
    assert "Settings file not found" in result.output


def test_review_workflow(config_file: Path, pages_file: Path) -> None:
    """tasks, assign, complete and metrics drive the review queue."""
    session_id = _run_session(config_file, pages_file)["session_id"]
    config = ["--config", str(config_file)]

    listed = runner.invoke(app, ["tasks", session_id, "--urgency", "high", *config])
    assert listed.exit_code == 0, listed.output
    (task,) = json.loads(listed.stdout)
    assert task["criterion_id"] == "1.1.1"
    assert task["workflow_type"] == "violation_verification"

    assigned = runner.invoke(app, ["assign", task["id"], "alice", *config])
    assert assigned.exit_code == 0, assigned.output
    assert json.loads(assigned.stdout)["task"]["status"] == "in_progress"

    completed = runner.invoke(
        app,
        ["complete", task["id"], "--violation", "--reviewer", "alice", *config],
    )
    assert completed.exit_code == 0, completed.output
    assert json.loads(completed.stdout)["task"]["resolution"] == "violation_confirmed"

    metrics = runner.invoke(app, ["metrics", session_id, *config])
    assert metrics.exit_code == 0, metrics.output
    assert json.loads(metrics.stdout)["completed_tasks"] == 1

    status = runner.invoke(app, ["status", session_id, *config])
    assert status.exit_code == 0, status.output
    assert json.loads(status.stdout)["open_tasks"] == 0


def test_review_commands_need_only_database(
    config_file: Path, pages_file: Path, tmp_path: Path
) -> None:
    """status and tasks work with settings that configure no scanner."""
    session_id = _run_session(config_file, pages_file)["session_id"]
    review_config = tmp_path / "review.yaml"
    review_config.write_text(
        f"""
database:
  url: sqlite:///{tmp_path / "cli.db"}
"""
    )
    config = ["--config", str(review_config)]

    status = runner.invoke(app, ["status", session_id, *config])
    assert status.exit_code == 0, status.output
    assert json.loads(status.stdout)["status"] == "completed"

    listed = runner.invoke(app, ["tasks", session_id, *config])
    assert listed.exit_code == 0, listed.output
    assert len(json.loads(listed.stdout)) == 1

    missing = runner.invoke(app, ["status", "nope", *config])
    assert missing.exit_code == 1
    assert "Session not found: nope" in missing.output


def test_assign_unknown_task(config_file: Path) -> None:
    """assign exits non-zero for an unknown task."""
    result = runner.invoke(
        app, ["assign", "missing", "alice", "--config", str(config_file)]
    )

    assert result.exit_code == 1
    assert json.loads(result.stdout) == {"ok": False, "error": "not_found"}


def test_tasks_invalid_filter(config_file: Path) -> None:
    """tasks rejects unknown urgency values."""
    result = runner.invoke(
        app, ["tasks", "s-1", "--urgency", "someday", "--config", str(config_file)]
    )

    assert result.exit_code == 1
    assert "invalid filters" in result.output


def test_status_unknown_session(config_file: Path) -> None:
    """status exits non-zero for an unknown session."""
    result = runner.invoke(app, ["status", "missing", "--config", str(config_file)])

    assert result.exit_code == 1
    assert "Session not found: missing" in result.output


def test_cancel_finished_session(config_file: Path, pages_file: Path) -> None:
    """cancel exits non-zero for a finished session."""
    session_id = _run_session(config_file, pages_file)["session_id"]

    result = runner.invoke(app, ["cancel", session_id, "--config", str(config_file)])

    assert result.exit_code == 1
    assert json.loads(result.stdout) == {"session_id": session_id, "cancelled": False}


def test_load_pages(tmp_path: Path) -> None:
    """load_pages accepts page objects and bare URLs."""
    path = tmp_path / "pages.yaml"
    path.write_text(
        "- {id: home, url: 'https://example.com/'}\n- https://example.com/about\n"
    )

    assert load_pages(path) == [
        Page(id="home", url="https://example.com/"),
        Page(id="https://example.com/about", url="https://example.com/about"),
    ]


def test_load_pages_invalid(tmp_path: Path) -> None:
    """load_pages rejects files that aren't a page list."""
    path = tmp_path / "pages.yaml"
    path.write_text("home: https://example.com/\n")

    with pytest.raises(ValueError, match="must contain a list"):
        load_pages(path)

    path.write_text("- {id: home}\n")

    with pytest.raises(ValueError, match="Invalid page entry"):
        load_pages(path)
