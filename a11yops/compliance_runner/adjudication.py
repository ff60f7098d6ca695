"""Decides which violations need a human and manages the review queue."""

import logging
import uuid
from collections.abc import Sequence
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from a11yops.compliance_runner.knowledge_base import UNMAPPED, CriteriaKnowledgeBase
from a11yops.compliance_runner.models.catalogue import CriterionInfo
from a11yops.compliance_runner.models.scan import (
    AggregatedViolation,
    NormalizedViolation,
)
from a11yops.compliance_runner.models.workflow import (
    OPEN_TASK_STATUSES,
    AdjudicationSummary,
    ContextualProcedure,
    NotificationMessage,
    ReviewDecision,
    ReviewSubmission,
    TaskAssignment,
    TaskFilters,
    TaskOutcome,
    VerdictChange,
    WorkflowMetrics,
    WorkflowTaskView,
    WorkflowType,
    WorkflowTypeMetrics,
)
from a11yops.compliance_runner.notifications import Notifier
from a11yops.compliance_runner.store.audit import (
    load_verdict_history,
    record_verdict_change,
)
from a11yops.compliance_runner.store.database import Database, upsert
from a11yops.compliance_runner.store.tables import (
    NotificationRecord,
    TestInstanceRecord,
    WorkflowTaskRecord,
    utcnow,
)

logger = logging.getLogger(__name__)

WORKFLOW_TIME_FACTORS: dict[str, float] = {
    "violation_verification": 1.0,
    "false_positive_check": 0.7,
    "manual_confirmation": 1.2,
    "remediation_validation": 0.9,
}

OVERDUE_HOURS: dict[str, int] = {"high": 24, "medium": 72, "low": 168}

DEFAULT_PROCEDURES: dict[str, ContextualProcedure] = {
    "violation_verification": ContextualProcedure(
        title="Verify Automated Violation",
        overview=(
            "Manually verify that the automated tool correctly identified "
            "an accessibility violation"
        ),
        steps=[
            "Navigate to the page and locate the flagged element",
            "Review the automated tool's findings and reasoning",
            "Test the element with assistive technologies",
            "Determine if the violation is a true positive",
            "Document the impact on users with disabilities",
            "Provide remediation recommendations",
        ],
        tools_needed=["screen_reader", "keyboard_only", "browser_dev_tools"],
    ),
    "false_positive_check": ContextualProcedure(
        title="Check for False Positive",
        overview="Determine if an automated violation is a false positive",
        steps=[
            "Review the automated violation details",
            "Examine the flagged element in context",
            "Test accessibility with assistive technologies",
            "Determine if the violation is legitimate",
            "Document rationale for false positive determination",
        ],
        tools_needed=["screen_reader", "browser_dev_tools"],
    ),
    "manual_confirmation": ContextualProcedure(
        title="Manual Confirmation Required",
        overview="Perform manual testing to confirm automated findings",
        steps=[
            "Review automated test results",
            "Perform comprehensive manual testing",
            "Test with multiple assistive technologies",
            "Validate findings across different scenarios",
            "Document confidence in results",
        ],
        tools_needed=["screen_reader", "keyboard_only", "browser_dev_tools"],
    ),
    "remediation_validation": ContextualProcedure(
        title="Validate Remediation",
        overview="Verify that accessibility fixes resolve the identified issues",
        steps=[
            "Review the original violation and proposed fix",
            "Test the fixed element with assistive technologies",
            "Verify the fix doesn't introduce new issues",
            "Confirm the violation is fully resolved",
            "Document successful remediation",
        ],
        tools_needed=["screen_reader", "keyboard_only", "browser_dev_tools"],
    ),
}


def calculate_priority(severity: str, criterion: CriterionInfo | None) -> int:
    """Review priority from 1 to 5, higher is more urgent."""
    priority = 3
    if severity == "critical":
        priority = 5
    elif severity == "serious":
        priority = 4

    if criterion is not None:
        if criterion.level == "A":
            priority = min(priority + 1, 5)
        if criterion.principle in ("Perceivable", "Operable"):
            priority = min(priority + 1, 5)

    return max(priority, 1)


def is_overdue(task: WorkflowTaskView, now: datetime | None = None) -> bool:
    """Whether an open task has waited longer than its urgency allows."""
    if task.status == "completed" or task.created_at is None:
        return False
    now = now or utcnow()
    created = task.created_at
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    threshold = timedelta(hours=OVERDUE_HOURS.get(task.urgency, 72))
    return now - created > threshold


def _task_view(record: WorkflowTaskRecord) -> WorkflowTaskView:
    return WorkflowTaskView(
        id=record.id,
        session_id=record.session_id,
        criterion_id=record.criterion_id,
        page_id=record.page_id,
        page_url=record.page_url,
        workflow_type=record.workflow_type,
        priority=record.priority,
        urgency=record.urgency,
        status=record.status,
        assigned_reviewer=record.assigned_reviewer,
        procedure=(
            ContextualProcedure.model_validate(record.procedure)
            if record.procedure
            else None
        ),
        violation_data=record.violation_data or {},
        estimated_minutes=record.estimated_minutes or 0,
        resolution=record.resolution,
        created_at=record.created_at,
        assigned_at=record.assigned_at,
        completed_at=record.completed_at,
    )


def _review_reason(workflow_type: str, submission: ReviewSubmission) -> str:
    reason = f"{workflow_type}: {submission.resolution}"
    if submission.notes:
        reason = f"{reason} ({submission.notes})"
    return reason

class AdjudicationEngine:
    """Classifies violations and runs the human review task queue."""

    def __init__(
        self,
        database: Database,
        knowledge_base: CriteriaKnowledgeBase,
        notifier: Notifier,
        reviewer_pool: str = "reviewers",
    ) -> None:
        """Initialize engine.

        Args:
            database: Store for tasks, verdicts and notifications
            knowledge_base: Criteria catalogue lookups
            notifier: Notification recorder and publisher
            reviewer_pool: Recipient of new task notifications

        """
        self.database = database
        self.knowledge_base = knowledge_base
        self.notifier = notifier
        self.reviewer_pool = reviewer_pool

    def decide(
        self, tool: str, violation: NormalizedViolation, criterion_id: str
    ) -> ReviewDecision:
        """Decide whether a violation can stand on automated evidence alone.

        Critical violations and ambiguous cases always escalate to a reviewer.
        """
        severity = violation.impact
        confidence = self.knowledge_base.tool_confidence(tool, severity)
        strategy = self.knowledge_base.get_strategy(criterion_id)

        if severity == "critical" or (
            severity == "serious" and strategy.primary in ("hybrid", "manual")
        ):
            return ReviewDecision(
                action="MANUAL_REVIEW_REQUIRED",
                reason=(
                    "Critical/serious violation in a criterion that benefits "
                    "from manual verification"
                ),
                workflow_type="violation_verification",
                urgency="high",
            )
        if confidence == "medium" and strategy.automated_coverage != "high":
            return ReviewDecision(
                action="MANUAL_REVIEW_REQUIRED",
                reason="Medium confidence detection requires manual verification",
                workflow_type="manual_confirmation",
                urgency="medium",
            )
        if confidence == "low" or severity == "minor":
            return ReviewDecision(
                action="FALSE_POSITIVE_CHECK",
                reason="Low confidence or minor severity",
                workflow_type="false_positive_check",
                urgency="low",
            )
        if confidence == "high" and strategy.automated_coverage == "high":
            return ReviewDecision(
                action="AUTOMATED_SUFFICIENT",
                reason="High confidence detection with high automated coverage",
            )
        return ReviewDecision(
            action="MANUAL_REVIEW_REQUIRED",
            reason="No rule trusts the automated result",
            workflow_type="manual_confirmation",
            urgency="medium",
        )

    def priority_for(self, violation: NormalizedViolation, criterion_id: str) -> int:
        """Review priority for a violation of a criterion."""
        return calculate_priority(
            violation.impact, self.knowledge_base.get_criterion(criterion_id)
        )

    def build_procedure(
        self,
        criterion_id: str,
        violation: NormalizedViolation,
        workflow_type: WorkflowType,
    ) -> ContextualProcedure:
        """Manual procedure tailored to a violation and workflow type."""
        base = self.knowledge_base.get_manual_procedure(criterion_id)
        if base is None:
            return DEFAULT_PROCEDURES[workflow_type].model_copy(deep=True)

        location = violation.selector or "See violation details"
        base_steps = list(base.steps)
        if workflow_type == "violation_verification":
            steps = [
                "Navigate to the page where the automated tool detected the violation",
                f"Locate the element: {location}",
                f"Verify the automated tool's finding: {violation.description}",
                *base_steps,
                "Document whether the automated violation is a true or false positive",
                "If true positive, document the impact on users with disabilities",
                "Provide recommendations for remediation",
            ]
        elif workflow_type == "false_positive_check":
            steps = [
                f"Review the automated violation: {violation.description}",
                f"Navigate to the problematic element: {location}",
                "Assess whether this is a genuine accessibility issue",
                "Test with assistive technology if needed",
                "Document findings and rationale for false positive determination",
            ]
        elif workflow_type == "manual_confirmation":
            steps = [
                f"Automated tool detected: {violation.description}",
                "Perform comprehensive manual testing to confirm the violation",
                *base_steps,
                "Validate findings with multiple testing methods",
                "Document confidence level in the manual test results",
            ]
        else:
            steps = [
                f"Original violation: {violation.description}",
                "Verify that the reported fix addresses the accessibility issue",
                *base_steps,
                "Test with assistive technologies to confirm the fix works",
                "Document that the violation has been successfully resolved",
            ]

        return ContextualProcedure(
            title=base.title,
            overview=base.overview,
            steps=steps,
            tools_needed=list(base.tools_needed),
            violation_context={
                "description": violation.description,
                "severity": violation.impact,
                "selector": violation.selector,
                "html": violation.html,
                "automated_checks": [
                    check.model_dump()
                    for check in self.knowledge_base.automated_checks(criterion_id)
                ],
            },
        )

    def estimate_minutes(self, criterion_id: str, workflow_type: WorkflowType) -> int:
        """Expected review time for a task."""
        manual = self.knowledge_base.estimate_effort(criterion_id).manual_minutes
        base = manual or 20
        return round(base * WORKFLOW_TIME_FACTORS.get(workflow_type, 1.0))

    async def adjudicate(
        self, session_id: str, violations: Sequence[AggregatedViolation]
    ) -> AdjudicationSummary:
        """Classify violations and raise review tasks where needed.

        Args:
            session_id: Owning session
            violations: Stored violations with tool and page context

        Returns:
            Counts per decision and the created task ids

        """
        summary = AdjudicationSummary()
        for item in violations:
            summary.processed_violations += 1
            criteria = self.knowledge_base.map_rule_to_criteria(
                item.tool, item.violation.rule_id, item.violation.tags
            )
            for criterion_id in sorted(criteria):
                if criterion_id == UNMAPPED:
                    summary.unmapped += 1
                    continue

                decision = self.decide(item.tool, item.violation, criterion_id)
                if decision.action == "AUTOMATED_SUFFICIENT":
                    summary.automated_sufficient += 1
                    continue
                if decision.action == "FALSE_POSITIVE_CHECK":
                    summary.false_positive_candidates += 1
                else:
                    summary.manual_review_required += 1

                task = await self.create_task(session_id, item, criterion_id, decision)
                if task is None:
                    summary.tasks_skipped += 1
                else:
                    summary.tasks_created += 1
                    summary.task_ids.append(task.id)

        logger.info(
            f"Adjudicated {summary.processed_violations} violations for session "
            f"{session_id}: {summary.tasks_created} tasks created, "
            f"{summary.tasks_skipped} already open"
        )
        return summary

    async def create_task(
        self,
        session_id: str,
        item: AggregatedViolation,
        criterion_id: str,
        decision: ReviewDecision,
    ) -> WorkflowTaskView | None:
        """Create a review task unless one is already open.

        Args:
            session_id: Owning session
            item: Violation the task is raised for
            criterion_id: Criterion under review
            decision: Decision that asked for review

        Returns:
            The new task, or None if an open task exists for the same
            session, criterion and page

        """
        workflow_type = decision.workflow_type or "manual_confirmation"
        urgency = decision.urgency or "medium"
        violation = item.violation
        priority = self.priority_for(violation, criterion_id)
        procedure = self.build_procedure(criterion_id, violation, workflow_type)
        estimated = self.estimate_minutes(criterion_id, workflow_type)

        def work(
            session: Session,
        ) -> tuple[WorkflowTaskView, NotificationMessage] | None:
            existing = session.execute(
                select(WorkflowTaskRecord.id).where(
                    WorkflowTaskRecord.session_id == session_id,
                    WorkflowTaskRecord.criterion_id == criterion_id,
                    WorkflowTaskRecord.page_id == item.page.id,
                    WorkflowTaskRecord.status.in_(OPEN_TASK_STATUSES),
                )
            ).first()
            if existing is not None:
                return None

            now = utcnow()
            record = WorkflowTaskRecord(
                id=str(uuid.uuid4()),
                session_id=session_id,
                criterion_id=criterion_id,
                page_id=item.page.id,
                page_url=item.page.url,
                workflow_type=workflow_type,
                priority=priority,
                urgency=urgency,
                status="pending",
                procedure=procedure.model_dump(mode="json"),
                violation_data={
                    "tool": item.tool,
                    "rule_id": violation.rule_id,
                    "severity": violation.impact,
                    "description": violation.description,
                    "selector": violation.selector,
                    "help_url": violation.help_url,
                    "html": violation.html,
                    "reason": decision.reason,
                },
                estimated_minutes=estimated,
                created_at=now,
            )
            session.add(record)
            session.flush()

            message = NotificationMessage(
                notification_type="manual_task_created",
                session_id=session_id,
                task_id=record.id,
                recipient=self.reviewer_pool,
                priority=priority,
                title=f"Manual Review Required: {criterion_id}",
                message=(
                    f"Automated testing detected a {violation.impact} violation of "
                    f"{criterion_id} on {item.page.url}. Manual verification is "
                    "needed to confirm the finding."
                ),
                data={"workflow_type": workflow_type, "urgency": urgency},
                created_at=now,
            )
            self.notifier.record(session, message)
            return _task_view(record), message

        try:
            created = self.database.run_in_transaction(work)
        except IntegrityError:
            logger.info(
                f"Open task for {criterion_id} on page {item.page.id} "
                "was created concurrently"
            )
            return None

        if created is None:
            logger.debug(f"Open task exists for {criterion_id} on {item.page.id}")
            return None

        task, message = created
        self.notifier.publish(message)
        logger.info(
            f"Created {workflow_type} task {task.id} for {criterion_id}",
            extra={"session_id": session_id, "priority": priority},
        )
        return task

    async def assign_task(
        self, task_id: str, reviewer_id: str, assigned_by: str | None = None
    ) -> TaskOutcome:
        """Assign a pending task to a reviewer.

        Args:
            task_id: Task to assign
            reviewer_id: Reviewer taking the task
            assigned_by: Who made the assignment

        Returns:
            The updated task, or an error of "not_found" or "invalid_state"

        """

        def work(session: Session) -> TaskOutcome:
            result = session.execute(
                update(WorkflowTaskRecord)
                .where(
                    WorkflowTaskRecord.id == task_id,
                    WorkflowTaskRecord.status == "pending",
                )
                .values(
                    status="in_progress",
                    assigned_reviewer=reviewer_id,
                    assigned_by=assigned_by,
                    assigned_at=utcnow(),
                )
            )
            record = session.get(WorkflowTaskRecord, task_id)
            if record is None:
                return TaskOutcome(error="not_found")
            if result.rowcount == 0:
                return TaskOutcome(error="invalid_state")

            session.refresh(record)
            task = _task_view(record)
            self.notifier.record(session, _assignment_message(task))
            return TaskOutcome(task=task)

        outcome = self.database.run_in_transaction(work)
        if outcome.task is not None:
            self.notifier.publish(_assignment_message(outcome.task))
            logger.info(f"Assigned task {task_id} to {reviewer_id}")
        else:
            logger.warning(f"Could not assign task {task_id}: {outcome.error}")
        return outcome

    async def bulk_assign(
        self, assignments: Sequence[TaskAssignment], assigned_by: str | None = None
    ) -> list[TaskOutcome]:
        """Assign several tasks, reporting each outcome separately."""
        return [
            await self.assign_task(a.task_id, a.reviewer_id, assigned_by)
            for a in assignments
        ]

    async def complete_task(
        self,
        task_id: str,
        submission: ReviewSubmission,
        completed_by: str | None = None,
    ) -> TaskOutcome:
        """Complete an in-progress task with the reviewer's verdict.

        The reviewer's verdict overwrites any automated verdict for the
        task's criterion and page.

        Args:
            task_id: Task to complete
            submission: Reviewer verdict
            completed_by: Reviewer completing the task

        Returns:
            The completed task, or an error of "not_found" or "invalid_state"

        """

        def work(session: Session) -> TaskOutcome:
            now = utcnow()
            result = session.execute(
                update(WorkflowTaskRecord)
                .where(
                    WorkflowTaskRecord.id == task_id,
                    WorkflowTaskRecord.status == "in_progress",
                )
                .values(
                    status="completed",
                    completed_at=now,
                    completed_by=completed_by,
                    resolution=submission.resolution,
                    review_results=submission.model_dump(mode="json"),
                    confidence_level=submission.confidence_level,
                )
            )
            record = session.get(WorkflowTaskRecord, task_id)
            if record is None:
                return TaskOutcome(error="not_found")
            if result.rowcount == 0:
                return TaskOutcome(error="invalid_state")

            session.refresh(record)
            previous = session.execute(
                select(TestInstanceRecord.status).where(
                    TestInstanceRecord.session_id == record.session_id,
                    TestInstanceRecord.criterion_id == record.criterion_id,
                    TestInstanceRecord.page_id == record.page_id,
                )
            ).scalar_one_or_none()
            upsert(
                session,
                TestInstanceRecord.__table__,
                {
                    "session_id": record.session_id,
                    "criterion_id": record.criterion_id,
                    "page_id": record.page_id,
                    "status": submission.test_status,
                    "method": "manual",
                    "confidence": submission.confidence_level,
                    "evidence": [{"reviewer": completed_by, **submission.evidence}],
                    "tool_used": None,
                    "notes": submission.notes,
                    "reviewer": completed_by,
                    "updated_at": now,
                },
                index_elements=("session_id", "criterion_id", "page_id"),
            )
            record_verdict_change(
                session,
                session_id=record.session_id,
                criterion_id=record.criterion_id,
                page_id=record.page_id,
                old_status=previous,
                new_status=submission.test_status,
                method="manual",
                changed_by=completed_by,
                reason=_review_reason(record.workflow_type, submission),
            )
            return TaskOutcome(task=_task_view(record))

        outcome = self.database.run_in_transaction(work)
        if outcome.task is not None:
            logger.info(
                f"Completed task {task_id} as {submission.resolution}",
                extra={"session_id": outcome.task.session_id},
            )
        else:
            logger.warning(f"Could not complete task {task_id}: {outcome.error}")
        return outcome

    async def list_open_tasks(
        self, session_id: str, filters: TaskFilters | None = None
    ) -> list[WorkflowTaskView]:
        """Open tasks of a session, most urgent first."""
        filters = filters or TaskFilters()

        def work(session: Session) -> list[WorkflowTaskView]:
            query = select(WorkflowTaskRecord).where(
                WorkflowTaskRecord.session_id == session_id,
                WorkflowTaskRecord.status.in_(OPEN_TASK_STATUSES),
            )
            if filters.priority is not None:
                query = query.where(WorkflowTaskRecord.priority == filters.priority)
            if filters.urgency is not None:
                query = query.where(WorkflowTaskRecord.urgency == filters.urgency)
            if filters.assigned_reviewer is not None:
                query = query.where(
                    WorkflowTaskRecord.assigned_reviewer == filters.assigned_reviewer
                )
            if filters.workflow_type is not None:
                query = query.where(
                    WorkflowTaskRecord.workflow_type == filters.workflow_type
                )
            query = query.order_by(
                WorkflowTaskRecord.priority.desc(), WorkflowTaskRecord.created_at.asc()
            )
            return [_task_view(r) for r in session.execute(query).scalars()]

        return self.database.read(work)

    async def count_open_tasks(self, session_id: str) -> int:
        """Number of open tasks in a session."""
        return self.database.read(
            lambda s: s.execute(
                select(func.count())
                .select_from(WorkflowTaskRecord)
                .where(
                    WorkflowTaskRecord.session_id == session_id,
                    WorkflowTaskRecord.status.in_(OPEN_TASK_STATUSES),
                )
            ).scalar_one()
        )

    async def workflow_metrics(self, session_id: str) -> WorkflowMetrics:
        """Task queue metrics for a session."""
        tasks = self.database.read(
            lambda s: [
                _task_view(r)
                for r in s.execute(
                    select(WorkflowTaskRecord).where(
                        WorkflowTaskRecord.session_id == session_id
                    )
                ).scalars()
            ]
        )
        now = utcnow()
        completed = sum(1 for t in tasks if t.status == "completed")
        by_type: dict[str, list[WorkflowTaskView]] = {}
        for task in tasks:
            by_type.setdefault(task.workflow_type, []).append(task)

        return WorkflowMetrics(
            total_tasks=len(tasks),
            pending_tasks=sum(1 for t in tasks if t.status == "pending"),
            in_progress_tasks=sum(1 for t in tasks if t.status == "in_progress"),
            completed_tasks=completed,
            critical_tasks=sum(1 for t in tasks if t.priority == 5),
            urgent_tasks=sum(1 for t in tasks if t.urgency == "high"),
            overdue_tasks=sum(1 for t in tasks if is_overdue(t, now)),
            completion_rate=_rate(completed, len(tasks)),
            by_workflow_type=[
                WorkflowTypeMetrics(
                    workflow_type=workflow_type,
                    total=len(group),
                    completed=sum(1 for t in group if t.status == "completed"),
                    completion_rate=_rate(
                        sum(1 for t in group if t.status == "completed"), len(group)
                    ),
                )
                for workflow_type, group in sorted(by_type.items())
            ],
        )

    async def list_notifications(self, session_id: str) -> list[NotificationMessage]:
        """Recorded notifications of a session, oldest first."""
        records = self.database.read(
            lambda s: list(
                s.execute(
                    select(NotificationRecord)
                    .where(NotificationRecord.session_id == session_id)
                    .order_by(NotificationRecord.id)
                ).scalars()
            )
        )
        return [
            NotificationMessage(
                notification_type=r.notification_type,
                session_id=r.session_id,
                task_id=r.task_id,
                recipient=r.recipient,
                priority=r.priority,
                title=r.title,
                message=r.message or "",
                data=r.data or {},
                created_at=r.created_at,
            )
            for r in records
        ]

    async def verdict_history(
        self,
        session_id: str,
        criterion_id: str | None = None,
        page_id: str | None = None,
    ) -> list[VerdictChange]:
        """Verdict changes of a session's test instances, oldest first."""
        return self.database.read(
            lambda s: load_verdict_history(s, session_id, criterion_id, page_id)
        )


def _rate(done: int, total: int) -> int:
    return round(done / total * 100) if total else 0


def _assignment_message(task: WorkflowTaskView) -> NotificationMessage:
    return NotificationMessage(
        notification_type="task_assigned",
        session_id=task.session_id,
        task_id=task.id,
        recipient=task.assigned_reviewer or "",
        priority=task.priority,
        title=f"Manual Task Assigned: {task.criterion_id}",
        message=(
            f"You have been assigned a manual testing task for "
            f"{task.criterion_id}. Estimated time: {task.estimated_minutes} minutes."
        ),
        created_at=task.assigned_at,
    )
