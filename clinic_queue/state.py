"""Appointment lifecycle state machine.

One transition table shared by the booking ledger and the queue engine.
Pattern: str Enum states + explicit transition map (current → allowed next).

    requested → approved | rejected | cancelled
    approved  → queued (appointment day only) | cancelled
    queued    → called | cancelled
    called    → in_progress
    in_progress → finished

rejected, cancelled and finished are terminal.
"""
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Callable, Dict, Optional, Tuple

from clinic_queue.errors import InvalidTransitionError


class AppointmentStatus(str, Enum):
    """Canonical appointment statuses."""
    REQUESTED = "requested"
    APPROVED = "approved"
    REJECTED = "rejected"
    QUEUED = "queued"
    CALLED = "called"
    IN_PROGRESS = "in_progress"
    FINISHED = "finished"
    CANCELLED = "cancelled"


class Trigger(str, Enum):
    """Operations that move an appointment between statuses."""
    APPROVE = "approve"
    REJECT = "reject"
    CANCEL = "cancel"
    ENTER_QUEUE = "enter_queue"
    CALL_NEXT = "call_next"
    BEGIN_CONSULTATION = "begin_consultation"
    COMPLETE = "complete"


class Actor(str, Enum):
    """Who initiated a change (recorded on cancellations)."""
    PATIENT = "patient"
    DOCTOR = "doctor"
    ADMIN = "admin"
    SYSTEM = "system"


TERMINAL_STATUSES = frozenset({
    AppointmentStatus.REJECTED,
    AppointmentStatus.CANCELLED,
    AppointmentStatus.FINISHED,
})

CANCELLABLE_STATUSES = frozenset({
    AppointmentStatus.REQUESTED,
    AppointmentStatus.APPROVED,
    AppointmentStatus.QUEUED,
})

# Statuses that hold a place in (or are being served from) the day queue
QUEUE_STATUSES = (
    AppointmentStatus.QUEUED,
    AppointmentStatus.CALLED,
    AppointmentStatus.IN_PROGRESS,
)


@dataclass(frozen=True)
class TransitionContext:
    """Facts a guard may need; only the appointment-day guard uses it today."""
    appointment_date: Optional[date] = None
    today: Optional[date] = None


Guard = Callable[[TransitionContext], bool]


def _is_appointment_day(context: TransitionContext) -> bool:
    return context.appointment_date is not None and context.appointment_date == context.today


# (current, trigger) → (next, guard, guard description)
TRANSITION_TABLE: Dict[
    Tuple[AppointmentStatus, Trigger],
    Tuple[AppointmentStatus, Optional[Guard], Optional[str]],
] = {
    (AppointmentStatus.REQUESTED, Trigger.APPROVE): (AppointmentStatus.APPROVED, None, None),
    (AppointmentStatus.REQUESTED, Trigger.REJECT): (AppointmentStatus.REJECTED, None, None),
    (AppointmentStatus.REQUESTED, Trigger.CANCEL): (AppointmentStatus.CANCELLED, None, None),
    (AppointmentStatus.APPROVED, Trigger.CANCEL): (AppointmentStatus.CANCELLED, None, None),
    (AppointmentStatus.APPROVED, Trigger.ENTER_QUEUE): (
        AppointmentStatus.QUEUED,
        _is_appointment_day,
        "patients can only join the queue on the appointment date",
    ),
    (AppointmentStatus.QUEUED, Trigger.CANCEL): (AppointmentStatus.CANCELLED, None, None),
    # Lowest-token selection is enforced by the queue engine's query
    (AppointmentStatus.QUEUED, Trigger.CALL_NEXT): (AppointmentStatus.CALLED, None, None),
    (AppointmentStatus.CALLED, Trigger.BEGIN_CONSULTATION): (AppointmentStatus.IN_PROGRESS, None, None),
    (AppointmentStatus.IN_PROGRESS, Trigger.COMPLETE): (AppointmentStatus.FINISHED, None, None),
}


def _build_valid_transitions() -> Dict[AppointmentStatus, list[AppointmentStatus]]:
    transitions: Dict[AppointmentStatus, list[AppointmentStatus]] = {
        status: [] for status in AppointmentStatus
    }
    for (current, _trigger), (target, _guard, _description) in TRANSITION_TABLE.items():
        if target not in transitions[current]:
            transitions[current].append(target)
    return transitions


# State machine transition map
# Pattern: Current state → [allowed next states]
VALID_TRANSITIONS: Dict[AppointmentStatus, list[AppointmentStatus]] = _build_valid_transitions()


def validate_transition(current: AppointmentStatus, intended: AppointmentStatus) -> bool:
    """
    Check whether an edge exists between two statuses (guards not evaluated).

    Args:
        current: Current status
        intended: Desired next status

    Returns:
        True if the edge is in the transition table
    """
    return intended in VALID_TRANSITIONS.get(current, [])


def resolve_transition(
    current: AppointmentStatus,
    trigger: Trigger,
    context: Optional[TransitionContext] = None,
) -> AppointmentStatus:
    """
    Return the status ``trigger`` leads to from ``current``.

    Args:
        current: Current status
        trigger: Requested operation
        context: Facts for guarded edges

    Returns:
        Next status

    Raises:
        InvalidTransitionError: No such edge, or its guard rejects the context
    """
    edge = TRANSITION_TABLE.get((current, trigger))
    if edge is None:
        raise InvalidTransitionError(current.value, trigger.value)

    target, guard, description = edge
    if guard is not None and not guard(context or TransitionContext()):
        raise InvalidTransitionError(current.value, trigger.value, description)
    return target


# Legacy vocabulary seen across older clients → canonical status
LEGACY_STATUS_ALIASES: Dict[str, AppointmentStatus] = {
    "requested": AppointmentStatus.REQUESTED,
    "pending": AppointmentStatus.REQUESTED,
    "scheduled": AppointmentStatus.REQUESTED,
    "approved": AppointmentStatus.APPROVED,
    "confirmed": AppointmentStatus.APPROVED,
    "rejected": AppointmentStatus.REJECTED,
    "queued": AppointmentStatus.QUEUED,
    "in_queue": AppointmentStatus.QUEUED,
    "waiting": AppointmentStatus.QUEUED,
    "called": AppointmentStatus.CALLED,
    "in_progress": AppointmentStatus.IN_PROGRESS,
    "processing": AppointmentStatus.IN_PROGRESS,
    "finished": AppointmentStatus.FINISHED,
    "completed": AppointmentStatus.FINISHED,
    "cancelled": AppointmentStatus.CANCELLED,
    "canceled": AppointmentStatus.CANCELLED,
    "no_show": AppointmentStatus.CANCELLED,
}


def normalize_status(raw: str) -> AppointmentStatus:
    """
    Map any legacy status string onto the canonical set.

    "In-Progress", "in_queue", "Waiting", "completed" ... all resolve to one
    AppointmentStatus. Unknown values raise ValueError.
    """
    key = raw.strip().lower().replace("-", "_").replace(" ", "_")
    try:
        return LEGACY_STATUS_ALIASES[key]
    except KeyError:
        raise ValueError(f"Unknown appointment status: {raw!r}") from None
