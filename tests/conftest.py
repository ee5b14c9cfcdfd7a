"""Shared test fixtures."""
import pytest
from datetime import date, datetime, time

from clinic_queue.availability import DoctorSchedule, Weekday
from clinic_queue.database import Database
from clinic_queue.notifications import EventDispatcher
from clinic_queue.service import ClinicService

MONDAY = date(2025, 1, 13)
TUESDAY = date(2025, 1, 14)
DOCTOR_ID = "doc-001"


class FixedClock:
    """Callable clock tests can move by hand."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock():
    """Monday 08:00, before the doctor's first slot."""
    return FixedClock(datetime(2025, 1, 13, 8, 0))


@pytest.fixture
def monday_schedule():
    """Mondays 09:00-10:00, 30 minute slots, one patient per slot."""
    return DoctorSchedule(
        working_days=[Weekday.MONDAY],
        start_time=time(9, 0),
        end_time=time(10, 0),
        slot_duration_minutes=30,
        breaks=[],
        max_appointments_per_slot=1,
    )


@pytest.fixture
def events():
    """Events received by a recording subscriber."""
    return []


@pytest.fixture
def dispatcher(events):
    dispatcher = EventDispatcher()
    dispatcher.subscribe(events.append)
    return dispatcher


def build_service(database_url, clock, dispatcher, schedule, **kwargs):
    """ClinicService with DOCTOR_ID already scheduled."""
    service = ClinicService(
        Database(database_url),
        clock=clock,
        dispatcher=dispatcher,
        average_consultation_minutes=kwargs.pop("average_consultation_minutes", 15),
        **kwargs,
    )
    service.set_schedule(DOCTOR_ID, schedule)
    return service


@pytest.fixture
def service(clock, dispatcher, monday_schedule):
    """ClinicService on an in-memory database with one scheduled doctor."""
    service = build_service("sqlite:///:memory:", clock, dispatcher, monday_schedule)
    yield service
    service.close()


@pytest.fixture
def file_service(tmp_path, clock, dispatcher, monday_schedule):
    """ClinicService on a file-backed SQLite database (real connection pool)."""
    service = build_service(
        f"sqlite:///{tmp_path / 'clinic.db'}", clock, dispatcher, monday_schedule
    )
    yield service
    service.close()


@pytest.fixture
def queued_pair(service):
    """Two approved appointments entered into Monday's queue (tokens 1 and 2)."""
    first = service.book(DOCTOR_ID, "pat-a", MONDAY, time(9, 0))
    second = service.book(DOCTOR_ID, "pat-b", MONDAY, time(9, 30))
    for appointment in (first, second):
        service.approve(appointment.appointment_id)
        service.enter_queue(appointment.appointment_id)
    return first, second


@pytest.fixture
def make_service(tmp_path, clock, dispatcher, monday_schedule):
    """Factory for file-backed services with custom queue policy."""
    services = []

    def _make(schedule=None, **kwargs):
        database_url = f"sqlite:///{tmp_path / f'clinic-{len(services)}.db'}"
        service = build_service(database_url, clock, dispatcher, schedule or monday_schedule, **kwargs)
        services.append(service)
        return service

    yield _make
    for service in services:
        service.close()
