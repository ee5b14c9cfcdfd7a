"""Appointment domain models.

Pattern: Separate database persistence from domain models.
Appointment (domain, pydantic) vs AppointmentRecord (database, SQLAlchemy).
"""
from datetime import date, datetime, time
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from clinic_queue import config
from clinic_queue.state import Actor, AppointmentStatus


class ConsultationMode(str, Enum):
    IN_PERSON = "in_person"
    ONLINE = "online"


class BookingDetails(BaseModel):
    """Patient-supplied details attached to a booking."""
    consultation_mode: ConsultationMode = ConsultationMode.IN_PERSON
    reason: Optional[str] = Field(None, max_length=config.MAX_REASON_LENGTH)
    symptoms: List[str] = Field(default_factory=list)


class Appointment(BaseModel):
    """Snapshot of one appointment as stored in the ledger."""
    appointment_id: str
    doctor_id: str
    patient_id: str
    appointment_date: date
    slot_start: time
    slot_end: time
    consultation_mode: ConsultationMode
    reason: Optional[str] = None
    symptoms: List[str] = Field(default_factory=list)
    status: AppointmentStatus
    queue_token: Optional[int] = None
    queued_at: Optional[datetime] = None
    called_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[Actor] = None
    cancellation_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(
        from_attributes=True,
        json_schema_extra={
            "example": {
                "appointment_id": "apt-3f9c2a7b1d4e",
                "doctor_id": "doc-001",
                "patient_id": "pat-042",
                "appointment_date": "2025-01-13",
                "slot_start": "09:00:00",
                "slot_end": "09:30:00",
                "consultation_mode": "in_person",
                "reason": "Persistent cough",
                "symptoms": ["cough", "fever"],
                "status": "queued",
                "queue_token": 3,
            }
        }
    )


class SortOrder(str, Enum):
    ASC = "asc"
    DESC = "desc"


class AppointmentQuery(BaseModel):
    """Admin search over every appointment; unset filters match everything."""
    status: Optional[AppointmentStatus] = None
    consultation_mode: Optional[ConsultationMode] = None
    doctor_id: Optional[str] = None
    patient_id: Optional[str] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    page: int = Field(1, ge=1)
    limit: int = Field(10, ge=1, le=100)
    sort_order: SortOrder = SortOrder.DESC


class AppointmentPage(BaseModel):
    """One page of search results plus per-status counts over all matches."""
    appointments: List[Appointment]
    page: int
    limit: int
    total: int
    total_pages: int
    has_next: bool
    has_prev: bool
    status_counts: Dict[str, int] = Field(default_factory=dict)
