"""Verdict audit trail for test instances."""

from sqlalchemy import insert, select
from sqlalchemy.orm import Session

from a11yops.compliance_runner.models.workflow import VerdictChange
from a11yops.compliance_runner.store.tables import TestInstanceAuditRecord, utcnow


def record_verdict_change(
    session: Session,
    *,
    session_id: str,
    criterion_id: str,
    page_id: str,
    old_status: str | None,
    new_status: str,
    method: str,
    changed_by: str | None,
    reason: str = "",
) -> None:
    """Append one verdict change in the caller's transaction.

    Args:
        session: Open store session; the caller commits
        session_id: Owning session
        criterion_id: Criterion of the test instance
        page_id: Page of the test instance
        old_status: Previous verdict, None when the instance is created
        new_status: Verdict after the change
        method: "automated" or "manual"
        changed_by: Tool or reviewer responsible for the change
        reason: Short explanation of the change

    """
    session.execute(
        insert(TestInstanceAuditRecord).values(
            session_id=session_id,
            criterion_id=criterion_id,
            page_id=page_id,
            old_status=old_status,
            new_status=new_status,
            method=method,
            changed_by=changed_by,
            reason=reason,
            created_at=utcnow(),
        )
    )


def load_verdict_history(
    session: Session,
    session_id: str,
    criterion_id: str | None = None,
    page_id: str | None = None,
) -> list[VerdictChange]:
    """Verdict changes of a session, oldest first."""
    query = select(TestInstanceAuditRecord).where(
        TestInstanceAuditRecord.session_id == session_id
    )
    if criterion_id is not None:
        query = query.where(TestInstanceAuditRecord.criterion_id == criterion_id)
    if page_id is not None:
        query = query.where(TestInstanceAuditRecord.page_id == page_id)
    rows = session.scalars(query.order_by(TestInstanceAuditRecord.id)).all()
    return [
        VerdictChange(
            criterion_id=row.criterion_id,
            page_id=row.page_id,
            old_status=row.old_status,
            new_status=row.new_status,
            method=row.method,
            changed_by=row.changed_by,
            reason=row.reason or "",
            changed_at=row.created_at,
        )
        for row in rows
    ]
