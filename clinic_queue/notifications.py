"""Domain events and best-effort dispatch to subscribers.

Events are published after the owning transaction commits. A failing
subscriber is logged and isolated behind its own circuit breaker; it never
affects the state change that produced the event.

Breaker states:
- CLOSED: deliveries pass through
- OPEN: subscriber skipped until the retry timeout elapses
- HALF_OPEN: one trial delivery decides whether to close or reopen
"""
import threading
import time
from dataclasses import asdict, dataclass
from datetime import date, datetime, time as time_of_day
from enum import Enum
from typing import Any, Callable, ClassVar, Dict, List, Optional

from clinic_queue import config
from clinic_queue.logging_config import get_logger

logger = get_logger(__name__)


class DomainEvent:
    """Base for all events; subclasses are frozen dataclasses."""
    event_type: ClassVar[str] = "domain_event"

    def to_dict(self) -> Dict[str, Any]:
        payload = {"event_type": self.event_type}
        for key, value in asdict(self).items():
            if isinstance(value, (date, datetime, time_of_day)):
                value = value.isoformat()
            payload[key] = value
        return payload


@dataclass(frozen=True)
class AppointmentBooked(DomainEvent):
    event_type: ClassVar[str] = "appointment_booked"
    appointment_id: str
    doctor_id: str
    patient_id: str
    appointment_date: date
    slot_start: time_of_day


@dataclass(frozen=True)
class AppointmentApproved(DomainEvent):
    event_type: ClassVar[str] = "appointment_approved"
    appointment_id: str
    doctor_id: str
    patient_id: str
    appointment_date: date


@dataclass(frozen=True)
class AppointmentRejected(DomainEvent):
    event_type: ClassVar[str] = "appointment_rejected"
    appointment_id: str
    doctor_id: str
    patient_id: str


@dataclass(frozen=True)
class AppointmentCancelled(DomainEvent):
    event_type: ClassVar[str] = "appointment_cancelled"
    appointment_id: str
    doctor_id: str
    patient_id: str
    cancelled_by: str
    reason: Optional[str] = None


@dataclass(frozen=True)
class PatientCalled(DomainEvent):
    event_type: ClassVar[str] = "patient_called"
    appointment_id: str
    doctor_id: str
    patient_id: str
    queue_token: int


@dataclass(frozen=True)
class QueueUpdated(DomainEvent):
    event_type: ClassVar[str] = "queue_update"
    doctor_id: str
    queue_date: date
    waiting: int


Subscriber = Callable[[DomainEvent], Any]


class BreakerState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class SubscriberBreaker:
    """Failure breaker guarding one subscriber."""

    def __init__(
        self,
        failure_threshold: int = config.NOTIFICATION_FAILURE_THRESHOLD,
        retry_timeout: float = config.NOTIFICATION_RETRY_TIMEOUT_SECONDS,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.retry_timeout = retry_timeout
        self._monotonic = monotonic
        self.failure_count = 0
        self.opened_at: Optional[float] = None
        self._state = BreakerState.CLOSED
        self._trial_in_flight = False
        self._lock = threading.Lock()

    @property
    def state(self) -> str:
        return self._state.value

    def allow(self) -> bool:
        """Whether the next delivery should be attempted."""
        with self._lock:
            if self._state == BreakerState.CLOSED:
                return True
            if self._state == BreakerState.OPEN:
                if self._monotonic() - self.opened_at < self.retry_timeout:
                    return False
                self._state = BreakerState.HALF_OPEN
            # Half open: a single trial until it reports back
            if self._trial_in_flight:
                return False
            self._trial_in_flight = True
            return True

    def record_success(self):
        with self._lock:
            self._trial_in_flight = False
            self.failure_count = 0
            self._state = BreakerState.CLOSED
            self.opened_at = None

    def record_failure(self):
        with self._lock:
            self._trial_in_flight = False
            self.failure_count += 1
            if self._state == BreakerState.HALF_OPEN or self.failure_count >= self.failure_threshold:
                self._state = BreakerState.OPEN
                self.opened_at = self._monotonic()


class EventDispatcher:
    """Fan out domain events to registered subscribers."""

    def __init__(
        self,
        failure_threshold: int = config.NOTIFICATION_FAILURE_THRESHOLD,
        retry_timeout: float = config.NOTIFICATION_RETRY_TIMEOUT_SECONDS,
    ):
        self.failure_threshold = failure_threshold
        self.retry_timeout = retry_timeout
        self._subscribers: List[tuple[Subscriber, SubscriberBreaker]] = []
        self._lock = threading.Lock()

    def subscribe(self, handler: Subscriber) -> SubscriberBreaker:
        """Register a handler; returns the breaker guarding it."""
        breaker = SubscriberBreaker(self.failure_threshold, self.retry_timeout)
        with self._lock:
            self._subscribers.append((handler, breaker))
        return breaker

    def publish(self, event: DomainEvent) -> int:
        """
        Deliver an event to every subscriber.

        Args:
            event: Domain event

        Returns:
            Number of subscribers that handled the event without raising
        """
        with self._lock:
            subscribers = list(self._subscribers)

        delivered = 0
        for handler, breaker in subscribers:
            handler_name = getattr(handler, "__name__", repr(handler))
            if not breaker.allow():
                logger.warning(
                    "notification_skipped",
                    event_type=event.event_type,
                    subscriber=handler_name,
                    breaker_state=breaker.state,
                )
                continue
            try:
                handler(event)
            except Exception:
                breaker.record_failure()
                logger.exception(
                    "notification_delivery_failed",
                    event_type=event.event_type,
                    subscriber=handler_name,
                    failure_count=breaker.failure_count,
                )
                continue
            breaker.record_success()
            delivered += 1

        return delivered


def log_event(event: DomainEvent):
    """Default subscriber: write every event to the structured log."""
    logger.info("domain_event", **event.to_dict())
