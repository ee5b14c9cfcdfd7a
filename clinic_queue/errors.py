"""Domain errors for scheduling and queue operations.

Every error carries a stable machine-readable ``code`` so callers can tell
"pick another slot" apart from "someone else already handled this".
"""
from typing import Optional


class SchedulingError(Exception):
    """Base class for all clinic scheduling errors."""
    code = "SCHEDULING_ERROR"
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidScheduleError(SchedulingError):
    """Doctor schedule is malformed (hours, slot duration, breaks, capacity)."""
    code = "INVALID_SCHEDULE"


class SlotInPastError(SchedulingError):
    """Booking attempted against a slot that has already started."""
    code = "SLOT_IN_PAST"
    retryable = True


class SlotFullError(SchedulingError):
    """Slot already holds its maximum number of active appointments."""
    code = "SLOT_FULL"
    retryable = True


class DuplicateBookingError(SchedulingError):
    """Patient already holds an active appointment in this slot."""
    code = "DUPLICATE_BOOKING"


class InvalidTransitionError(SchedulingError):
    """Requested lifecycle change is not allowed from the current status."""
    code = "INVALID_TRANSITION"

    def __init__(self, current: str, attempted: str, reason: Optional[str] = None):
        message = f"Cannot {attempted} an appointment in status '{current}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.current = current
        self.attempted = attempted


class NotFoundError(SchedulingError):
    """Unknown doctor, appointment or slot."""
    code = "NOT_FOUND"


class ScheduleNotFoundError(NotFoundError):
    code = "SCHEDULE_NOT_FOUND"


class AppointmentNotFoundError(NotFoundError):
    code = "APPOINTMENT_NOT_FOUND"


class SlotNotFoundError(NotFoundError):
    """Requested start time is not one of the doctor's slots that day."""
    code = "SLOT_NOT_FOUND"


class QueueEntryNotFoundError(NotFoundError):
    """Appointment is not waiting in (or being served from) a queue."""
    code = "QUEUE_ENTRY_NOT_FOUND"
