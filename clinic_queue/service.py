"""ClinicService: the operation surface offered to the API and other collaborators.

Wires one Database to the schedule store, booking ledger, queue engine and
event dispatcher, and exposes every booking/queue operation in one place.
"""
from datetime import date, datetime, time
from typing import Callable, List, Optional

from clinic_queue import config
from clinic_queue.appointment import Appointment, AppointmentPage, AppointmentQuery, BookingDetails
from clinic_queue.availability import (
    DoctorSchedule,
    Slot,
    TimeFilter,
    TimeOfDay,
    clinic_now,
    generate_slots,
)
from clinic_queue.database import Database
from clinic_queue.ledger import AppointmentLedger
from clinic_queue.notifications import EventDispatcher
from clinic_queue.queue_engine import QueueEngine, QueuePosition, QueueSnapshot
from clinic_queue.schedule_store import ScheduleStore
from clinic_queue.state import Actor, AppointmentStatus


class ClinicService:
    """Facade over the calendar, ledger and queue for a single clinic."""

    def __init__(
        self,
        database: Database,
        clock: Callable[[], datetime] = clinic_now,
        dispatcher: Optional[EventDispatcher] = None,
        average_consultation_minutes: int = config.AVERAGE_CONSULTATION_MINUTES,
        auto_start_consultation: bool = config.AUTO_START_CONSULTATION,
    ):
        self.database = database
        self.clock = clock
        self.dispatcher = dispatcher or EventDispatcher()
        self.schedules = ScheduleStore(database)
        self.ledger = AppointmentLedger(database, self.schedules, self.dispatcher, clock)
        self.queue = QueueEngine(
            database,
            self.schedules,
            self.dispatcher,
            clock,
            average_consultation_minutes=average_consultation_minutes,
            auto_start_consultation=auto_start_consultation,
        )
        self.time_filter = TimeFilter()

    @classmethod
    def from_url(cls, database_url: str, **kwargs) -> "ClinicService":
        return cls(Database(database_url), **kwargs)

    # Schedules

    def set_schedule(self, doctor_id: str, schedule: DoctorSchedule) -> DoctorSchedule:
        return self.schedules.save_schedule(doctor_id, schedule)

    def get_schedule(self, doctor_id: str) -> DoctorSchedule:
        return self.schedules.load_schedule(doctor_id)

    def list_doctors(self) -> List[str]:
        return self.schedules.list_doctor_ids()

    # Availability

    def list_slots(
        self,
        doctor_id: str,
        slot_date: date,
        time_of_day: TimeOfDay = TimeOfDay.ANY,
    ) -> List[Slot]:
        """
        Slots for one doctor-day with live booked counts.

        Past slots are included and flagged ``is_past``.

        Raises:
            ScheduleNotFoundError: Unknown doctor
            InvalidScheduleError: Stored schedule is malformed
        """
        schedule = self.schedules.load_schedule(doctor_id)
        slots = generate_slots(
            schedule, slot_date, self.clock(), self.ledger.booked_counts(doctor_id, slot_date)
        )
        return self.time_filter.filter_by_time_of_day(slots, time_of_day)

    # Booking ledger

    def book(
        self,
        doctor_id: str,
        patient_id: str,
        appointment_date: date,
        slot_start: time,
        details: Optional[BookingDetails] = None,
    ) -> Appointment:
        return self.ledger.book(doctor_id, patient_id, appointment_date, slot_start, details)

    def approve(self, appointment_id: str) -> Appointment:
        return self.ledger.approve(appointment_id)

    def reject(self, appointment_id: str) -> Appointment:
        return self.ledger.reject(appointment_id)

    def cancel(self, appointment_id: str, actor: Actor, reason: Optional[str] = None) -> Appointment:
        return self.ledger.cancel(appointment_id, actor, reason)

    def get_appointment(self, appointment_id: str) -> Appointment:
        return self.ledger.get(appointment_id)

    def list_doctor_appointments(
        self,
        doctor_id: str,
        appointment_date: date,
        status: Optional[AppointmentStatus] = None,
    ) -> List[Appointment]:
        return self.ledger.list_for_doctor_day(doctor_id, appointment_date, status)

    def list_patient_appointments(self, patient_id: str) -> List[Appointment]:
        return self.ledger.list_for_patient(patient_id)

    def search_appointments(self, query: AppointmentQuery) -> AppointmentPage:
        return self.ledger.search(query)

    # Queue engine

    def enter_queue(self, appointment_id: str) -> int:
        return self.queue.enter_queue(appointment_id)

    def call_next(self, doctor_id: str, queue_date: date) -> Optional[Appointment]:
        return self.queue.call_next(doctor_id, queue_date)

    def begin_consultation(self, appointment_id: str) -> Appointment:
        return self.queue.begin_consultation(appointment_id)

    def complete(self, appointment_id: str) -> Appointment:
        return self.queue.complete(appointment_id)

    def get_position(self, appointment_id: str) -> QueuePosition:
        return self.queue.get_position(appointment_id)

    def get_queue(self, doctor_id: str, queue_date: date) -> QueueSnapshot:
        return self.queue.get_queue(doctor_id, queue_date)

    def close(self):
        self.database.close()
