"""Doctor schedule loading and saving.

Pattern: Separate database persistence from domain models.
DoctorSchedule (domain) vs DoctorScheduleRecord (database).
"""
from typing import List

from clinic_queue.api.database_models import DoctorScheduleRecord, utc_now
from clinic_queue.availability import BreakWindow, DoctorSchedule, validate_schedule
from clinic_queue.database import Database
from clinic_queue.errors import ScheduleNotFoundError
from clinic_queue.logging_config import get_logger

logger = get_logger(__name__)


class ScheduleStore:
    """Reads and writes DoctorSchedule records."""

    def __init__(self, database: Database):
        self.database = database

    def load_schedule(self, doctor_id: str) -> DoctorSchedule:
        """
        Load a doctor's weekly schedule.

        Args:
            doctor_id: Doctor identifier

        Returns:
            DoctorSchedule instance

        Raises:
            ScheduleNotFoundError: If the doctor has no schedule
        """
        with self.database.session() as db:
            record = db.query(DoctorScheduleRecord).filter(
                DoctorScheduleRecord.doctor_id == doctor_id
            ).first()

            if not record:
                raise ScheduleNotFoundError(f"Doctor {doctor_id} has no schedule")

            # Convert database model to domain model
            return DoctorSchedule(
                working_days=record.working_days or [],
                start_time=record.start_time,
                end_time=record.end_time,
                slot_duration_minutes=record.slot_duration_minutes,
                breaks=[BreakWindow(**window) for window in record.breaks or []],
                max_appointments_per_slot=record.max_appointments_per_slot,
            )

    def save_schedule(self, doctor_id: str, schedule: DoctorSchedule) -> DoctorSchedule:
        """
        Create or replace a doctor's schedule.

        Raises:
            InvalidScheduleError: If the schedule cannot produce slots
        """
        validate_schedule(schedule)
        payload = schedule.model_dump(mode="json")

        with self.database.transaction() as db:
            record = db.get(DoctorScheduleRecord, doctor_id)
            if record is None:
                record = DoctorScheduleRecord(doctor_id=doctor_id)
                db.add(record)

            record.working_days = payload["working_days"]
            record.start_time = schedule.start_time
            record.end_time = schedule.end_time
            record.slot_duration_minutes = schedule.slot_duration_minutes
            record.breaks = payload["breaks"]
            record.max_appointments_per_slot = schedule.max_appointments_per_slot
            record.updated_at = utc_now()

        logger.info("schedule_saved", doctor_id=doctor_id, working_days=payload["working_days"])
        return schedule

    def list_doctor_ids(self) -> List[str]:
        """All doctors with a schedule, sorted."""
        with self.database.session() as db:
            rows = db.query(DoctorScheduleRecord.doctor_id).order_by(
                DoctorScheduleRecord.doctor_id
            ).all()
            return [row.doctor_id for row in rows]
