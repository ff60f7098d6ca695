"""Relational schema for sessions, scan results, verdicts and review tasks."""

from datetime import datetime, timezone

import sqlalchemy as sa
from sqlalchemy.orm import DeclarativeBase


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Declarative base for all store tables."""


class SessionRecord(Base):
    """One orchestrated compliance run."""

    __tablename__ = "compliance_sessions"

    id = sa.Column(sa.String(36), primary_key=True)
    project_id = sa.Column(sa.String(100), default="", nullable=False, index=True)
    name = sa.Column(sa.String(200), default="", nullable=False)
    status = sa.Column(sa.String(20), default="planning", nullable=False, index=True)
    pages = sa.Column(sa.JSON, nullable=True, comment="Pages; null until discovered")
    tools = sa.Column(sa.JSON, default=list)
    progress = sa.Column(sa.JSON, default=dict, comment="Serialized SessionProgress")
    options = sa.Column(sa.JSON, default=dict)
    failure_reason = sa.Column(sa.Text, nullable=True)
    created_at = sa.Column(sa.DateTime(timezone=True), default=utcnow)
    started_at = sa.Column(sa.DateTime(timezone=True), nullable=True)
    completed_at = sa.Column(sa.DateTime(timezone=True), nullable=True)


class ScanResultRecord(Base):
    """Output of one tool run against one page."""

    __tablename__ = "scan_results"
    __table_args__ = (
        sa.UniqueConstraint(
            "session_id", "page_id", "tool", name="uq_scan_result_unit"
        ),
    )

    id = sa.Column(sa.Integer, primary_key=True, autoincrement=True)
    session_id = sa.Column(
        sa.String(36),
        sa.ForeignKey("compliance_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    page_id = sa.Column(sa.String(100), nullable=False)
    page_url = sa.Column(sa.Text, default="")
    tool = sa.Column(sa.String(50), nullable=False)
    raw_output = sa.Column(sa.JSON, nullable=True)
    violation_count = sa.Column(sa.Integer, default=0, nullable=False)
    pass_count = sa.Column(sa.Integer, default=0, nullable=False)
    duration_ms = sa.Column(sa.Integer, default=0, nullable=False)
    error = sa.Column(sa.Text, nullable=True)
    scanned_at = sa.Column(sa.DateTime(timezone=True), default=utcnow)


class ViolationRecord(Base):
    """Normalized finding belonging to a scan result."""

    __tablename__ = "violations"

    id = sa.Column(sa.Integer, primary_key=True, autoincrement=True)
    scan_result_id = sa.Column(
        sa.Integer,
        sa.ForeignKey("scan_results.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    rule_id = sa.Column(sa.String(200), nullable=False)
    impact = sa.Column(sa.String(20), default="unknown", nullable=False)
    description = sa.Column(sa.Text, default="")
    selector = sa.Column(sa.Text, nullable=True)
    help_url = sa.Column(sa.Text, nullable=True)
    html = sa.Column(sa.Text, nullable=True)
    tags = sa.Column(sa.JSON, default=list)


class TestInstanceRecord(Base):
    """Reconciled verdict for one criterion on one page."""

    __test__ = False

    __tablename__ = "test_instances"
    __table_args__ = (
        sa.UniqueConstraint(
            "session_id", "criterion_id", "page_id", name="uq_test_instance_unit"
        ),
    )

    id = sa.Column(sa.Integer, primary_key=True, autoincrement=True)
    session_id = sa.Column(
        sa.String(36),
        sa.ForeignKey("compliance_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    criterion_id = sa.Column(sa.String(20), nullable=False)
    page_id = sa.Column(sa.String(100), nullable=False)
    status = sa.Column(
        sa.String(20), nullable=False, comment="passed/failed/pending/not_applicable"
    )
    method = sa.Column(sa.String(20), default="automated", nullable=False)
    confidence = sa.Column(sa.String(10), nullable=True)
    evidence = sa.Column(sa.JSON, default=list)
    tool_used = sa.Column(sa.String(50), nullable=True)
    notes = sa.Column(sa.Text, nullable=True)
    reviewer = sa.Column(sa.String(150), nullable=True)
    updated_at = sa.Column(sa.DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class TestInstanceAuditRecord(Base):
    """Append-only history of verdict changes on test instances."""

    __test__ = False

    __tablename__ = "test_instance_audit"
    __table_args__ = (
        sa.Index(
            "ix_test_instance_audit_unit", "session_id", "criterion_id", "page_id"
        ),
    )

    id = sa.Column(sa.Integer, primary_key=True, autoincrement=True)
    session_id = sa.Column(
        sa.String(36),
        sa.ForeignKey("compliance_sessions.id", ondelete="CASCADE"),
        nullable=False,
    )
    criterion_id = sa.Column(sa.String(20), nullable=False)
    page_id = sa.Column(sa.String(100), nullable=False)
    old_status = sa.Column(sa.String(20), nullable=True, comment="Null on creation")
    new_status = sa.Column(sa.String(20), nullable=False)
    method = sa.Column(sa.String(20), nullable=False)
    changed_by = sa.Column(sa.String(150), nullable=True, comment="Tool or reviewer")
    reason = sa.Column(sa.Text, default="")
    created_at = sa.Column(sa.DateTime(timezone=True), default=utcnow)


_OPEN_TASK = sa.text("status IN ('pending', 'in_progress')")


class WorkflowTaskRecord(Base):
    """Human review task raised by adjudication."""

    __tablename__ = "workflow_tasks"
    __table_args__ = (
        sa.Index(
            "uq_workflow_task_open_unit",
            "session_id",
            "criterion_id",
            "page_id",
            unique=True,
            postgresql_where=_OPEN_TASK,
            sqlite_where=_OPEN_TASK,
        ),
    )

    id = sa.Column(sa.String(36), primary_key=True)
    session_id = sa.Column(
        sa.String(36),
        sa.ForeignKey("compliance_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    criterion_id = sa.Column(sa.String(20), nullable=False)
    page_id = sa.Column(sa.String(100), nullable=False)
    page_url = sa.Column(sa.Text, nullable=True)
    workflow_type = sa.Column(sa.String(40), nullable=False)
    priority = sa.Column(sa.Integer, default=3, nullable=False)
    urgency = sa.Column(sa.String(10), default="medium", nullable=False)
    status = sa.Column(sa.String(20), default="pending", nullable=False, index=True)
    assigned_reviewer = sa.Column(sa.String(150), nullable=True)
    assigned_by = sa.Column(sa.String(150), nullable=True)
    assigned_at = sa.Column(sa.DateTime(timezone=True), nullable=True)
    procedure = sa.Column(sa.JSON, nullable=True)
    violation_data = sa.Column(sa.JSON, default=dict)
    estimated_minutes = sa.Column(sa.Integer, default=0)
    resolution = sa.Column(sa.String(30), nullable=True)
    review_results = sa.Column(sa.JSON, nullable=True)
    confidence_level = sa.Column(sa.String(10), nullable=True)
    completed_by = sa.Column(sa.String(150), nullable=True)
    created_at = sa.Column(sa.DateTime(timezone=True), default=utcnow)
    completed_at = sa.Column(sa.DateTime(timezone=True), nullable=True)


class NotificationRecord(Base):
    """Append-only notification log."""

    __tablename__ = "notifications"

    id = sa.Column(sa.Integer, primary_key=True, autoincrement=True)
    session_id = sa.Column(sa.String(36), nullable=False, index=True)
    task_id = sa.Column(sa.String(36), nullable=True, index=True)
    notification_type = sa.Column(sa.String(40), nullable=False)
    recipient = sa.Column(sa.String(150), default="reviewers", nullable=False)
    priority = sa.Column(sa.Integer, nullable=True)
    title = sa.Column(sa.String(300), nullable=False)
    message = sa.Column(sa.Text, default="")
    data = sa.Column(sa.JSON, default=dict)
    created_at = sa.Column(sa.DateTime(timezone=True), default=utcnow)
