"""Tests for the appointment sweep."""
from datetime import date, datetime, time, timedelta

from clinic_queue import config
from clinic_queue.notifications import QueueUpdated
from clinic_queue.state import Actor, AppointmentStatus
from clinic_queue.sweeper import AppointmentSweeper

MONDAY = date(2025, 1, 13)
DOCTOR_ID = "doc-001"


def test_cancels_only_unapproved_past_requests(service, clock):
    stale = service.book(DOCTOR_ID, "pat-a", MONDAY, time(9, 0))
    approved = service.book(DOCTOR_ID, "pat-b", MONDAY, time(9, 30))
    service.approve(approved.appointment_id)

    clock.now = datetime(2025, 1, 14, 0, 5)
    cancelled = AppointmentSweeper(service).cancel_unapproved()

    assert cancelled == 1
    swept = service.get_appointment(stale.appointment_id)
    assert swept.status == AppointmentStatus.CANCELLED
    assert swept.cancelled_by == Actor.SYSTEM
    assert swept.cancellation_reason == config.AUTO_CANCEL_REASON
    assert service.get_appointment(approved.appointment_id).status == AppointmentStatus.APPROVED


def test_default_leaves_todays_requests(service):
    """Requests for today stay open until the day is over."""
    appointment = service.book(DOCTOR_ID, "pat-a", MONDAY, time(9, 0))

    assert AppointmentSweeper(service).cancel_unapproved() == 0
    assert service.get_appointment(appointment.appointment_id).status == AppointmentStatus.REQUESTED


def test_explicit_through_date_includes_that_day(service):
    service.book(DOCTOR_ID, "pat-a", MONDAY, time(9, 0))
    assert AppointmentSweeper(service).cancel_unapproved(through_date=MONDAY) == 1


def test_sweep_frees_slot(service):
    service.book(DOCTOR_ID, "pat-a", MONDAY, time(9, 0))
    AppointmentSweeper(service).cancel_unapproved(through_date=MONDAY)

    assert service.list_slots(DOCTOR_ID, MONDAY)[0].booked_count == 0


class TestFinishOverdue:

    def test_finishes_consultation_after_slot_end(self, queued_pair, service, clock):
        first, second = queued_pair
        clock.now = datetime(2025, 1, 13, 9, 0)
        service.call_next(DOCTOR_ID, MONDAY)

        clock.now = datetime(2025, 1, 13, 9, 31)
        assert AppointmentSweeper(service).finish_overdue() == 1

        finished = service.get_appointment(first.appointment_id)
        assert finished.status == AppointmentStatus.FINISHED
        assert finished.finished_at == datetime(2025, 1, 13, 9, 31)
        assert service.get_appointment(second.appointment_id).status == AppointmentStatus.QUEUED

    def test_leaves_running_slot_alone(self, queued_pair, service, clock):
        first, _second = queued_pair
        clock.now = datetime(2025, 1, 13, 9, 0)
        service.call_next(DOCTOR_ID, MONDAY)

        clock.now = datetime(2025, 1, 13, 9, 20)
        assert AppointmentSweeper(service).finish_overdue() == 0
        assert service.get_appointment(first.appointment_id).status == AppointmentStatus.IN_PROGRESS

    def test_finishes_leftovers_from_earlier_days(self, queued_pair, service, clock):
        first, _second = queued_pair
        service.call_next(DOCTOR_ID, MONDAY)

        assert AppointmentSweeper(service).finish_overdue(now=datetime(2025, 1, 14, 0, 5)) == 1
        assert service.get_appointment(first.appointment_id).status == AppointmentStatus.FINISHED

    def test_ignores_waiting_patients(self, queued_pair, service):
        assert AppointmentSweeper(service).finish_overdue(now=datetime(2025, 1, 14, 0, 5)) == 0

    def test_frees_slot_and_updates_queue(self, queued_pair, service, events):
        service.call_next(DOCTOR_ID, MONDAY)
        AppointmentSweeper(service).finish_overdue(now=datetime(2025, 1, 13, 9, 31))

        assert service.list_slots(DOCTOR_ID, MONDAY)[0].booked_count == 0
        assert isinstance(events[-1], QueueUpdated)
        assert events[-1].waiting == 1


def test_sweep_runs_both_passes(queued_pair, service, clock):
    service.call_next(DOCTOR_ID, MONDAY)
    service.book(DOCTOR_ID, "pat-c", MONDAY + timedelta(weeks=1), time(9, 0))

    clock.now = datetime(2025, 1, 21, 0, 5)
    assert AppointmentSweeper(service).sweep() == {"cancelled": 1, "finished": 1}
