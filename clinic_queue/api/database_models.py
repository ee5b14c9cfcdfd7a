"""SQLAlchemy database models."""
from datetime import datetime, UTC
from sqlalchemy import (
    Column, String, Integer, Date, Time, DateTime, JSON, Index, UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utc_now():
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class AppointmentRecord(Base):
    """Appointment ledger; rows are never deleted."""
    __tablename__ = "appointments"

    appointment_id = Column(String(40), primary_key=True, index=True)
    doctor_id = Column(String(100), nullable=False, index=True)
    patient_id = Column(String(100), nullable=False, index=True)
    appointment_date = Column(Date, nullable=False)
    slot_start = Column(Time, nullable=False)
    slot_end = Column(Time, nullable=False)
    consultation_mode = Column(String(20), nullable=False, default="in_person")
    reason = Column(String(500), nullable=True)
    symptoms = Column(JSON, nullable=False, default=list)
    status = Column(String(20), nullable=False)
    queue_token = Column(Integer, nullable=True)
    # Clinic-local times set by lifecycle transitions
    queued_at = Column(DateTime, nullable=True)
    called_at = Column(DateTime, nullable=True)
    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancelled_by = Column(String(20), nullable=True)
    cancellation_reason = Column(String(500), nullable=True)
    created_at = Column(DateTime, default=utc_now, nullable=False)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now, nullable=False)

    __table_args__ = (
        Index("ix_appointments_doctor_day_status", "doctor_id", "appointment_date", "status"),
        # NULL tokens (not yet queued) do not collide
        UniqueConstraint("doctor_id", "appointment_date", "queue_token", name="uq_appointments_queue_token"),
    )

    def __repr__(self):
        return (
            f"<AppointmentRecord(id={self.appointment_id}, doctor={self.doctor_id}, "
            f"date={self.appointment_date}, status={self.status})>"
        )


class SlotCounter(Base):
    """Active (non-terminal) bookings per doctor slot."""
    __tablename__ = "slot_counters"

    doctor_id = Column(String(100), primary_key=True)
    slot_date = Column(Date, primary_key=True)
    slot_start = Column(Time, primary_key=True)
    booked_count = Column(Integer, nullable=False, default=0)

    def __repr__(self):
        return (
            f"<SlotCounter(doctor={self.doctor_id}, date={self.slot_date}, "
            f"start={self.slot_start}, booked={self.booked_count})>"
        )


class QueueCounter(Base):
    """Last issued queue token per doctor-day."""
    __tablename__ = "queue_counters"

    doctor_id = Column(String(100), primary_key=True)
    queue_date = Column(Date, primary_key=True)
    last_token = Column(Integer, nullable=False, default=0)

    def __repr__(self):
        return f"<QueueCounter(doctor={self.doctor_id}, date={self.queue_date}, last={self.last_token})>"


class DoctorScheduleRecord(Base):
    """Weekly schedule per doctor, written by clinic administrators."""
    __tablename__ = "doctor_schedules"

    doctor_id = Column(String(100), primary_key=True, index=True)
    working_days = Column(JSON, nullable=False, default=list)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    slot_duration_minutes = Column(Integer, nullable=False)
    breaks = Column(JSON, nullable=False, default=list)  # [{"start": "HH:MM:SS", "end": ...}]
    max_appointments_per_slot = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=utc_now, nullable=False)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now, nullable=False)

    def __repr__(self):
        return f"<DoctorScheduleRecord(doctor_id={self.doctor_id})>"
