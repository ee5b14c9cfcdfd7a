"""Tests for event dispatch and subscriber isolation."""
import pytest
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import date, time

from clinic_queue.notifications import (
    AppointmentBooked,
    EventDispatcher,
    PatientCalled,
    QueueUpdated,
    SubscriberBreaker,
    log_event,
)
from clinic_queue.state import AppointmentStatus

MONDAY = date(2025, 1, 13)
DOCTOR_ID = "doc-001"


def called_event():
    return PatientCalled(appointment_id="apt-1", doctor_id=DOCTOR_ID, patient_id="pat-a", queue_token=1)


class FakeMonotonic:
    def __init__(self):
        self.value = 1000.0

    def __call__(self):
        return self.value


class TestEvents:

    def test_to_dict_includes_type_and_iso_dates(self):
        event = AppointmentBooked(
            appointment_id="apt-1",
            doctor_id=DOCTOR_ID,
            patient_id="pat-a",
            appointment_date=MONDAY,
            slot_start=time(9, 0),
        )
        assert event.to_dict() == {
            "event_type": "appointment_booked",
            "appointment_id": "apt-1",
            "doctor_id": DOCTOR_ID,
            "patient_id": "pat-a",
            "appointment_date": "2025-01-13",
            "slot_start": "09:00:00",
        }

    def test_events_are_frozen(self):
        event = called_event()
        with pytest.raises(Exception):
            event.queue_token = 2

    def test_log_event_does_not_raise(self):
        log_event(QueueUpdated(doctor_id=DOCTOR_ID, queue_date=MONDAY, waiting=3))


class TestEventDispatcher:

    def test_delivers_to_all_subscribers(self):
        dispatcher = EventDispatcher()
        first, second = [], []
        dispatcher.subscribe(first.append)
        dispatcher.subscribe(second.append)

        delivered = dispatcher.publish(called_event())

        assert delivered == 2
        assert first == second == [called_event()]

    def test_failing_subscriber_is_isolated(self):
        dispatcher = EventDispatcher()
        received = []

        def broken(event):
            raise RuntimeError("push gateway down")

        dispatcher.subscribe(broken)
        dispatcher.subscribe(received.append)

        assert dispatcher.publish(called_event()) == 1
        assert received == [called_event()]

    def test_state_change_survives_notification_failure(self, service):
        """A broken subscriber never rolls back the transition that emitted the event."""
        def broken(event):
            raise RuntimeError("push gateway down")

        service.dispatcher.subscribe(broken)
        appointment = service.book(DOCTOR_ID, "pat-a", MONDAY, time(9, 0))
        service.approve(appointment.appointment_id)

        assert service.get_appointment(appointment.appointment_id).status == AppointmentStatus.APPROVED


class TestSubscriberBreaker:
    """Per-subscriber failure breaker."""

    def test_opens_after_threshold(self):
        breaker = SubscriberBreaker(failure_threshold=3, retry_timeout=60, monotonic=FakeMonotonic())

        for _ in range(3):
            assert breaker.allow()
            breaker.record_failure()

        assert breaker.state == "open"
        assert breaker.allow() is False

    def test_half_open_after_timeout_then_closes(self):
        clock = FakeMonotonic()
        breaker = SubscriberBreaker(failure_threshold=1, retry_timeout=60, monotonic=clock)
        breaker.record_failure()
        assert breaker.allow() is False

        clock.value += 61
        assert breaker.allow() is True
        assert breaker.state == "half_open"

        breaker.record_success()
        assert breaker.state == "closed"
        assert breaker.failure_count == 0

    def test_half_open_failure_reopens(self):
        clock = FakeMonotonic()
        breaker = SubscriberBreaker(failure_threshold=5, retry_timeout=10, monotonic=clock)
        for _ in range(5):
            breaker.record_failure()

        clock.value += 11
        assert breaker.allow() is True
        breaker.record_failure()

        assert breaker.state == "open"
        assert breaker.allow() is False

    def test_dispatcher_skips_open_subscriber(self):
        dispatcher = EventDispatcher(failure_threshold=2, retry_timeout=3600)
        calls = []

        def broken(event):
            calls.append(event)
            raise RuntimeError("down")

        breaker = dispatcher.subscribe(broken)
        for _ in range(4):
            dispatcher.publish(called_event())

        assert len(calls) == 2
        assert breaker.state == "open"

    def test_half_open_admits_one_trial(self):
        clock = FakeMonotonic()
        breaker = SubscriberBreaker(failure_threshold=1, retry_timeout=10, monotonic=clock)
        breaker.record_failure()

        clock.value += 11
        assert breaker.allow() is True
        assert breaker.allow() is False
        assert breaker.allow() is False

        breaker.record_success()
        assert breaker.allow() is True
        assert breaker.allow() is True

    def test_half_open_trial_across_threads(self):
        """Concurrent publishers racing a half-open breaker get one trial between them."""
        clock = FakeMonotonic()
        breaker = SubscriberBreaker(failure_threshold=1, retry_timeout=10, monotonic=clock)
        breaker.record_failure()
        clock.value += 11

        barrier = threading.Barrier(8)

        def attempt(_):
            barrier.wait()
            return breaker.allow()

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(attempt, range(8)))

        assert results.count(True) == 1
        assert breaker.state == "half_open"
