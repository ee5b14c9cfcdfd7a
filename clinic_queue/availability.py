"""Availability calendar: doctor schedule → concrete slots for a date.

generate_slots() is pure (no I/O, no clock reads). The caller passes ``now``
and, optionally, the booked count per slot start.

Time-of-day filtering
- morning: slots starting before 12:00
- afternoon: 12:00 and after
- any: no filtering
"""
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import Dict, List, Optional
from zoneinfo import ZoneInfo

from pydantic import BaseModel, ConfigDict, Field, computed_field

from clinic_queue import config
from clinic_queue.errors import InvalidScheduleError


class Weekday(str, Enum):
    """Working days, in ``date.weekday()`` order."""
    MONDAY = "monday"
    TUESDAY = "tuesday"
    WEDNESDAY = "wednesday"
    THURSDAY = "thursday"
    FRIDAY = "friday"
    SATURDAY = "saturday"
    SUNDAY = "sunday"

    @classmethod
    def from_date(cls, value: date) -> "Weekday":
        return list(cls)[value.weekday()]


class BreakWindow(BaseModel):
    """Unbookable window inside working hours (e.g. lunch)."""
    start: time
    end: time


class DoctorSchedule(BaseModel):
    """
    Recurring weekly schedule for one doctor.

    Construction does not validate business rules; validate_schedule()
    does, so a stored-but-broken schedule surfaces as InvalidScheduleError.
    """
    working_days: List[Weekday] = Field(default_factory=list)
    start_time: time
    end_time: time
    slot_duration_minutes: int = config.DEFAULT_SLOT_DURATION_MINUTES
    breaks: List[BreakWindow] = Field(default_factory=list)
    max_appointments_per_slot: int = config.DEFAULT_MAX_APPOINTMENTS_PER_SLOT

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "working_days": ["monday", "tuesday", "wednesday", "thursday", "friday"],
                "start_time": "09:00",
                "end_time": "18:00",
                "slot_duration_minutes": 30,
                "breaks": [{"start": "13:00", "end": "14:00"}],
                "max_appointments_per_slot": 1,
            }
        }
    )


class Slot(BaseModel):
    """One bookable window; computed on demand, never stored."""
    slot_date: date
    start: time
    end: time
    is_past: bool = False
    booked_count: int = 0
    capacity: int

    model_config = ConfigDict(frozen=True)

    @computed_field
    @property
    def is_available(self) -> bool:
        return not self.is_past and self.booked_count < self.capacity


def clinic_now() -> datetime:
    """Current wall-clock time in the clinic's time zone (naive)."""
    if config.CLINIC_TIMEZONE.upper() == "UTC":
        tz = timezone.utc
    else:
        tz = ZoneInfo(config.CLINIC_TIMEZONE)
    return datetime.now(tz).replace(tzinfo=None)


def validate_schedule(schedule: DoctorSchedule) -> None:
    """
    Check a schedule can produce slots.

    Raises:
        InvalidScheduleError: end ≤ start, duration ≤ 0, capacity < 1,
            or a break window with end ≤ start
    """
    if schedule.end_time <= schedule.start_time:
        raise InvalidScheduleError(
            f"Working hours end ({schedule.end_time:%H:%M}) must be after start "
            f"({schedule.start_time:%H:%M})"
        )
    if schedule.slot_duration_minutes <= 0:
        raise InvalidScheduleError(
            f"Slot duration must be positive, got {schedule.slot_duration_minutes}"
        )
    if schedule.max_appointments_per_slot < 1:
        raise InvalidScheduleError(
            f"Max appointments per slot must be at least 1, got "
            f"{schedule.max_appointments_per_slot}"
        )
    for window in schedule.breaks:
        if window.end <= window.start:
            raise InvalidScheduleError(
                f"Break window {window.start:%H:%M}-{window.end:%H:%M} is empty or reversed"
            )


def _overlaps_break(start: time, end: time, breaks: List[BreakWindow]) -> bool:
    return any(window.start < end and start < window.end for window in breaks)


def _is_past(target_date: date, start: time, now: datetime) -> bool:
    today = now.date()
    if target_date < today:
        return True
    return target_date == today and start <= now.time()


def generate_slots(
    schedule: DoctorSchedule,
    target_date: date,
    now: datetime,
    booked_counts: Optional[Dict[time, int]] = None,
) -> List[Slot]:
    """
    Expand a schedule into the ordered slots for one date.

    Args:
        schedule: Doctor's weekly schedule
        target_date: Calendar date to expand
        now: Clinic-local current time (drives is_past)
        booked_counts: Active bookings per slot start time

    Returns:
        Slots in start-time order; empty if the doctor does not work that day

    Raises:
        InvalidScheduleError: If the schedule is malformed
    """
    validate_schedule(schedule)

    if Weekday.from_date(target_date) not in schedule.working_days:
        return []

    booked_counts = booked_counts or {}
    step = timedelta(minutes=schedule.slot_duration_minutes)
    day_end = datetime.combine(target_date, schedule.end_time)
    cursor = datetime.combine(target_date, schedule.start_time)

    slots = []
    # A trailing step that would run past end_time is dropped
    while cursor + step <= day_end:
        slot_end = cursor + step
        start, end = cursor.time(), slot_end.time()
        if not _overlaps_break(start, end, schedule.breaks):
            slots.append(Slot(
                slot_date=target_date,
                start=start,
                end=end,
                is_past=_is_past(target_date, start, now),
                booked_count=booked_counts.get(start, 0),
                capacity=schedule.max_appointments_per_slot,
            ))
        cursor = slot_end

    return slots


class TimeOfDay(str, Enum):
    """Time of day preferences."""
    MORNING = "morning"  # Before 12:00
    AFTERNOON = "afternoon"  # 12:00 and after
    ANY = "any"


class TimeFilter:
    """Filter slots by time of day."""

    MORNING_CUTOFF = 12  # 12:00 (noon)

    def filter_by_time_of_day(self, slots: List[Slot], preference: TimeOfDay) -> List[Slot]:
        if preference == TimeOfDay.ANY:
            return slots

        filtered = []
        for slot in slots:
            if preference == TimeOfDay.MORNING and slot.start.hour < self.MORNING_CUTOFF:
                filtered.append(slot)
            elif preference == TimeOfDay.AFTERNOON and slot.start.hour >= self.MORNING_CUTOFF:
                filtered.append(slot)

        return filtered
