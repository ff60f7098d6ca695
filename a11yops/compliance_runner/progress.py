"""Progress milestone events for running sessions."""

import logging

from a11yops.compliance_runner.models.session import SessionProgress
from a11yops.compliance_runner.models.workflow import NotificationMessage
from a11yops.compliance_runner.notifications import Notifier

logger = logging.getLogger(__name__)


class ProgressTracker:
    """Publishes each completion milestone of a session once."""

    def __init__(self, notifier: Notifier) -> None:
        """Initialize tracker with the notifier used for delivery."""
        self.notifier = notifier

    def unit_finished(self, session_id: str, progress: SessionProgress) -> list[int]:
        """Publish milestones crossed by the latest unit and return them."""
        reached = progress.reach_milestones()
        for milestone in reached:
            logger.info(f"Session {session_id} reached {milestone}%")
            self.notifier.publish(
                NotificationMessage(
                    notification_type="progress_milestone",
                    session_id=session_id,
                    title=f"Session {milestone}% complete",
                    message=(
                        f"{progress.tests_completed}/{progress.tests_total} scan "
                        f"units finished, {progress.violations_found} violations"
                    ),
                    data={
                        "milestone": milestone,
                        "percent_complete": progress.percent_complete,
                        "failed_units": progress.failed_units,
                    },
                )
            )
        return reached
