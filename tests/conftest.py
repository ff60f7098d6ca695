"""Shared fixtures for compliance runner tests."""

from collections.abc import Generator
from pathlib import Path

import pytest

from a11yops.compliance_runner.knowledge_base import CriteriaKnowledgeBase
from a11yops.compliance_runner.models.catalogue import (
    Catalogue,
    CriterionInfo,
    ManualProcedure,
    RuleMapping,
    ToolProfile,
)
from a11yops.compliance_runner.models.scan import Page
from a11yops.compliance_runner.notifications import Notifier
from a11yops.compliance_runner.store.database import Database
from a11yops.compliance_runner.store.tables import SessionRecord
from tests.fakes import STATUS_RULE, FakeToolAdapter, RecordingSink


@pytest.fixture
def catalogue() -> Catalogue:
    """Create a small catalogue covering every adjudication branch."""
    return Catalogue(
        version="test",
        criteria={
            "1.1.1": CriterionInfo(
                title="Non-text Content",
                level="A",
                principle="Perceivable",
                guideline="1.1",
            ),
            "1.4.3": CriterionInfo(
                title="Contrast (Minimum)",
                level="AA",
                principle="Perceivable",
                guideline="1.4",
            ),
            "2.1.1": CriterionInfo(
                title="Keyboard", level="A", principle="Operable", guideline="2.1"
            ),
            "3.1.2": CriterionInfo(
                title="Language of Parts",
                level="AA",
                principle="Understandable",
                guideline="3.1",
            ),
            "4.1.3": CriterionInfo(
                title="Status Messages",
                level="AA",
                principle="Robust",
                guideline="4.1",
            ),
        },
        tools={
            "axe-core": ToolProfile(
                confidence="high",
                coverage="high",
                rules={
                    "image-alt": RuleMapping(criteria=("1.1.1",), confidence="high"),
                    "color-contrast": RuleMapping(
                        criteria=("1.4.3",), confidence="high"
                    ),
                    "valid-lang": RuleMapping(criteria=("3.1.2",), confidence="high"),
                },
            ),
            "pa11y": ToolProfile(
                confidence="medium",
                coverage="medium",
                rules={
                    STATUS_RULE: RuleMapping(criteria=("4.1.3",), confidence="low"),
                },
            ),
        },
        procedures={
            "1.1.1": ManualProcedure(
                title="Non-text Content",
                automated_coverage="high",
                steps=("Check alt text", "Check decorative images"),
                tools_needed=("screen_reader",),
                estimated_minutes=15,
            ),
            "2.1.1": ManualProcedure(
                title="Keyboard",
                automated_coverage="low",
                steps=("Tab through the page", "Operate every control", "Check traps"),
            ),
        },
    )


@pytest.fixture
def knowledge_base(catalogue: Catalogue) -> CriteriaKnowledgeBase:
    """Create knowledge base over the test catalogue."""
    return CriteriaKnowledgeBase(catalogue)


@pytest.fixture
def database(tmp_path: Path) -> Generator[Database, None, None]:
    """Create a SQLite store with the schema in place."""
    db = Database(f"sqlite:///{tmp_path / 'store.db'}", transaction_retries=2)
    db.create_schema()
    yield db
    db.dispose()


@pytest.fixture
def sink() -> RecordingSink:
    """Create recording notification sink."""
    return RecordingSink()


@pytest.fixture
def notifier(sink: RecordingSink) -> Notifier:
    """Create notifier publishing to the recording sink."""
    return Notifier(sink)


@pytest.fixture
def page() -> Page:
    """Create a page."""
    return Page(id="page-1", url="https://example.com/")


@pytest.fixture
def session_id(database: Database) -> str:
    """Create an in-progress session row."""
    database.run_in_transaction(
        lambda s: s.add(
            SessionRecord(
                id="session-1",
                project_id="project-1",
                name="test",
                status="in_progress",
                tools=["axe-core", "pa11y"],
                progress={},
                options={},
            )
        )
    )
    return "session-1"


@pytest.fixture
def adapter() -> FakeToolAdapter:
    """Create tool adapter with no canned failures."""
    return FakeToolAdapter()
