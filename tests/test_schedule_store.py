"""Tests for doctor schedule persistence."""
import pytest
from datetime import time

from clinic_queue.availability import BreakWindow, DoctorSchedule, Weekday
from clinic_queue.database import Database
from clinic_queue.errors import InvalidScheduleError, ScheduleNotFoundError
from clinic_queue.schedule_store import ScheduleStore


@pytest.fixture
def store():
    """ScheduleStore with in-memory database."""
    database = Database("sqlite:///:memory:")
    yield ScheduleStore(database)
    database.close()


def weekday_schedule(**overrides):
    values = dict(
        working_days=[Weekday.MONDAY, Weekday.WEDNESDAY, Weekday.FRIDAY],
        start_time=time(9, 0),
        end_time=time(18, 0),
        slot_duration_minutes=30,
        breaks=[BreakWindow(start=time(13, 0), end=time(14, 0))],
        max_appointments_per_slot=2,
    )
    values.update(overrides)
    return DoctorSchedule(**values)


def test_save_and_load_round_trip(store):
    """Saved schedule loads back as the same domain model."""
    schedule = weekday_schedule()
    store.save_schedule("doc-001", schedule)

    assert store.load_schedule("doc-001") == schedule


def test_save_replaces_existing(store):
    store.save_schedule("doc-001", weekday_schedule())
    store.save_schedule("doc-001", weekday_schedule(slot_duration_minutes=20, breaks=[]))

    loaded = store.load_schedule("doc-001")
    assert loaded.slot_duration_minutes == 20
    assert loaded.breaks == []


def test_load_unknown_doctor_raises(store):
    with pytest.raises(ScheduleNotFoundError) as exc_info:
        store.load_schedule("doc-missing")
    assert exc_info.value.code == "SCHEDULE_NOT_FOUND"


def test_invalid_schedule_not_saved(store):
    with pytest.raises(InvalidScheduleError):
        store.save_schedule("doc-001", weekday_schedule(end_time=time(8, 0)))

    with pytest.raises(ScheduleNotFoundError):
        store.load_schedule("doc-001")


def test_defaults_applied():
    schedule = DoctorSchedule(working_days=["monday"], start_time="09:00", end_time="12:00")
    assert schedule.slot_duration_minutes == 30
    assert schedule.max_appointments_per_slot == 1
    assert schedule.working_days == [Weekday.MONDAY]


def test_list_doctor_ids(store):
    store.save_schedule("doc-b", weekday_schedule())
    store.save_schedule("doc-a", weekday_schedule())
    assert store.list_doctor_ids() == ["doc-a", "doc-b"]
