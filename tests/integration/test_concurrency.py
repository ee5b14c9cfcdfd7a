"""Concurrent booking and queue operations against a file-backed database."""
import pytest
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import date, time

from clinic_queue.availability import DoctorSchedule, Weekday
from clinic_queue.database import Database
from clinic_queue.errors import SlotFullError
from clinic_queue.service import ClinicService
from clinic_queue.state import Actor, AppointmentStatus

MONDAY = date(2025, 1, 13)
DOCTOR_ID = "doc-001"
NINE = time(9, 0)


def run_together(workers, fn, args):
    """Start every call at the same moment and collect results or exceptions."""
    barrier = threading.Barrier(workers)

    def _call(arg):
        barrier.wait()
        try:
            return fn(arg)
        except Exception as e:
            return e

    with ThreadPoolExecutor(max_workers=workers) as pool:
        return list(pool.map(_call, args))


def capacity_schedule(capacity):
    return DoctorSchedule(
        working_days=[Weekday.MONDAY],
        start_time=time(9, 0),
        end_time=time(10, 0),
        slot_duration_minutes=60,
        max_appointments_per_slot=capacity,
    )


class TestNoOverbooking:

    def test_single_capacity_slot_one_winner(self, file_service):
        """N concurrent bookings on a 1-capacity slot: exactly one succeeds."""
        results = run_together(
            12,
            lambda patient: file_service.book(DOCTOR_ID, patient, MONDAY, NINE),
            [f"pat-{i}" for i in range(12)],
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(successes) == 1
        assert len(failures) == 11
        assert all(isinstance(f, SlotFullError) for f in failures)
        assert file_service.list_slots(DOCTOR_ID, MONDAY)[0].booked_count == 1

    @pytest.mark.parametrize("capacity, extra", [(3, 5), (5, 1)])
    def test_capacity_c_plus_k(self, make_service, capacity, extra):
        """C+k concurrent bookings: exactly C successes and k SlotFullErrors."""
        service = make_service(capacity_schedule(capacity))
        attempts = capacity + extra

        results = run_together(
            attempts,
            lambda patient: service.book(DOCTOR_ID, patient, MONDAY, NINE),
            [f"pat-{i}" for i in range(attempts)],
        )

        assert sum(1 for r in results if not isinstance(r, Exception)) == capacity
        assert sum(1 for r in results if isinstance(r, SlotFullError)) == extra
        active = service.list_doctor_appointments(DOCTOR_ID, MONDAY, AppointmentStatus.REQUESTED)
        assert len(active) == capacity

    def test_concurrent_cancel_and_book_keeps_count_consistent(self, make_service):
        service = make_service(capacity_schedule(2))
        first = service.book(DOCTOR_ID, "pat-0", MONDAY, NINE)
        service.book(DOCTOR_ID, "pat-1", MONDAY, NINE)

        def action(name):
            if name == "cancel":
                return service.cancel(first.appointment_id, Actor.PATIENT)
            return service.book(DOCTOR_ID, name, MONDAY, NINE)

        run_together(4, action, ["cancel", "pat-2", "pat-3", "pat-4"])

        active = [
            a for a in service.list_doctor_appointments(DOCTOR_ID, MONDAY)
            if a.status == AppointmentStatus.REQUESTED
        ]
        slot = service.list_slots(DOCTOR_ID, MONDAY)[0]
        assert slot.booked_count == len(active)
        assert slot.booked_count <= 2


class TestTokenMonotonicity:

    def test_concurrent_enter_queue_gapless_tokens(self, make_service):
        """Racing enter_queue calls get distinct tokens 1..N."""
        service = make_service(capacity_schedule(10))
        ids = []
        for i in range(10):
            appointment = service.book(DOCTOR_ID, f"pat-{i}", MONDAY, NINE)
            service.approve(appointment.appointment_id)
            ids.append(appointment.appointment_id)

        tokens = run_together(10, service.enter_queue, ids)

        assert sorted(tokens) == list(range(1, 11))
        stored = {a.appointment_id: a.queue_token for a in service.list_doctor_appointments(DOCTOR_ID, MONDAY)}
        assert stored == dict(zip(ids, tokens))


class TestCallNextExactlyOnce:

    def test_w_concurrent_calls_each_patient_once(self, make_service):
        """W queued + W concurrent call_next: each called once; the next call finds none."""
        service = make_service(capacity_schedule(8))
        ids = []
        for i in range(8):
            appointment = service.book(DOCTOR_ID, f"pat-{i}", MONDAY, NINE)
            service.approve(appointment.appointment_id)
            service.enter_queue(appointment.appointment_id)
            ids.append(appointment.appointment_id)

        results = run_together(8, lambda _: service.call_next(DOCTOR_ID, MONDAY), range(8))

        assert all(r is not None and not isinstance(r, Exception) for r in results)
        assert sorted(r.appointment_id for r in results) == sorted(ids)
        assert sorted(r.queue_token for r in results) == list(range(1, 9))
        assert service.call_next(DOCTOR_ID, MONDAY) is None

    def test_more_callers_than_patients(self, make_service):
        service = make_service(capacity_schedule(3))
        for i in range(2):
            appointment = service.book(DOCTOR_ID, f"pat-{i}", MONDAY, NINE)
            service.approve(appointment.appointment_id)
            service.enter_queue(appointment.appointment_id)

        results = run_together(5, lambda _: service.call_next(DOCTOR_ID, MONDAY), range(5))

        called = [r for r in results if r is not None]
        assert len(called) == 2
        assert len({r.appointment_id for r in called}) == 2
        assert results.count(None) == 3


@pytest.fixture
def worker_pair(tmp_path, clock, dispatcher):
    """Two services on one file database, like two API worker processes."""
    database_url = f"sqlite:///{tmp_path / 'shared.db'}"
    first = ClinicService(Database(database_url), clock=clock, dispatcher=dispatcher)
    first.set_schedule(DOCTOR_ID, DoctorSchedule(
        working_days=[Weekday.MONDAY],
        start_time=time(9, 0),
        end_time=time(13, 0),
        slot_duration_minutes=30,
        max_appointments_per_slot=1,
    ))
    second = ClinicService(Database(database_url), clock=clock, dispatcher=dispatcher)
    yield first, second
    first.close()
    second.close()


class TestSharedDatabase:

    def test_first_booking_of_each_slot_across_workers(self, worker_pair):
        """Racing the first booking of a fresh slot only ever loses with SlotFullError."""
        first, second = worker_pair
        starts = [slot.start for slot in first.list_slots(DOCTOR_ID, MONDAY)]
        assert len(starts) == 8

        for slot_start in starts:
            results = run_together(
                4,
                lambda i: worker_pair[i % 2].book(DOCTOR_ID, f"pat-{i}", MONDAY, slot_start),
                range(4),
            )
            failures = [r for r in results if isinstance(r, Exception)]
            assert len(failures) == 3
            assert all(isinstance(f, SlotFullError) for f in failures), failures

        assert [slot.booked_count for slot in second.list_slots(DOCTOR_ID, MONDAY)] == [1] * 8

    def test_first_tokens_of_the_day_across_workers(self, worker_pair):
        first, _second = worker_pair
        ids = []
        for i, slot in enumerate(first.list_slots(DOCTOR_ID, MONDAY)[:6]):
            appointment = first.book(DOCTOR_ID, f"pat-{i}", MONDAY, slot.start)
            first.approve(appointment.appointment_id)
            ids.append(appointment.appointment_id)

        tokens = run_together(6, lambda i: worker_pair[i % 2].enter_queue(ids[i]), range(6))

        assert sorted(tokens) == list(range(1, 7))
