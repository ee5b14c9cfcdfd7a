"""Periodic appointment housekeeping.

- Appointments still ``requested`` once their day is over are cancelled on
  the system's behalf.
- Consultations left ``in_progress`` after their slot has ended are
  completed.

Both go through the same service operations as everyone else, so the
lifecycle rules, slot release and events all apply.
"""
from datetime import date, datetime, timedelta
from typing import Dict, Optional

from clinic_queue import config
from clinic_queue.errors import InvalidTransitionError
from clinic_queue.logging_config import get_logger
from clinic_queue.service import ClinicService
from clinic_queue.state import Actor

logger = get_logger(__name__)


class AppointmentSweeper:
    """Cancels stale requests and finishes overdue consultations."""

    def __init__(self, service: ClinicService, reason: str = config.AUTO_CANCEL_REASON):
        self.service = service
        self.reason = reason

    def sweep(self) -> Dict[str, int]:
        """Run every housekeeping pass once."""
        return {
            "cancelled": self.cancel_unapproved(),
            "finished": self.finish_overdue(),
        }

    def cancel_unapproved(self, through_date: Optional[date] = None) -> int:
        """
        Cancel ``requested`` appointments dated on or before through_date.

        Args:
            through_date: Last date to sweep (default: yesterday, clinic time)

        Returns:
            Number of appointments cancelled
        """
        if through_date is None:
            through_date = self.service.clock().date() - timedelta(days=1)

        cancelled = 0
        for appointment_id in self.service.ledger.list_stale_request_ids(through_date):
            try:
                self.service.cancel(appointment_id, Actor.SYSTEM, self.reason)
            except InvalidTransitionError:
                # Approved or rejected since the listing
                logger.info("stale_request_skipped", appointment_id=appointment_id)
                continue
            cancelled += 1

        logger.info(
            "stale_requests_swept",
            through_date=through_date.isoformat(),
            cancelled=cancelled,
        )
        return cancelled

    def finish_overdue(self, now: Optional[datetime] = None) -> int:
        """
        Complete ``in_progress`` consultations whose slot ended before now.

        Args:
            now: Cut-off (default: the service clock)

        Returns:
            Number of consultations finished
        """
        if now is None:
            now = self.service.clock()

        finished = 0
        for appointment_id in self.service.ledger.list_overdue_consultation_ids(now):
            try:
                self.service.complete(appointment_id)
            except InvalidTransitionError:
                logger.info("overdue_consultation_skipped", appointment_id=appointment_id)
                continue
            finished += 1

        logger.info("overdue_consultations_finished", cutoff=now.isoformat(), finished=finished)
        return finished
