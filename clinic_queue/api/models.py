"""Pydantic models for API request/response validation."""
from datetime import date, time
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from clinic_queue import config
from clinic_queue.appointment import Appointment, ConsultationMode
from clinic_queue.availability import Slot, TimeOfDay


class BookAppointmentRequest(BaseModel):
    """Request schema for POST /api/v1/appointments."""
    doctor_id: str = Field(..., min_length=1, max_length=100, description="Doctor identifier")
    appointment_date: date = Field(..., description="Visit date (YYYY-MM-DD)")
    slot_start: time = Field(..., description="Start time of a listed slot (HH:MM)")
    patient_id: Optional[str] = Field(
        None,
        min_length=1,
        max_length=100,
        description="Patient to book for (admins only; patients always book for themselves)",
    )
    consultation_mode: ConsultationMode = ConsultationMode.IN_PERSON
    reason: Optional[str] = Field(None, max_length=config.MAX_REASON_LENGTH)
    symptoms: List[str] = Field(default_factory=list, max_length=20)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "doctor_id": "doc-001",
                "appointment_date": "2025-01-13",
                "slot_start": "09:30",
                "consultation_mode": "in_person",
                "reason": "Follow-up on blood test results",
                "symptoms": ["fatigue"],
            }
        }
    )


class CancelAppointmentRequest(BaseModel):
    """Request schema for POST /api/v1/appointments/{id}/cancel."""
    reason: Optional[str] = Field(None, max_length=config.MAX_REASON_LENGTH)

    model_config = ConfigDict(
        json_schema_extra={"example": {"reason": "Feeling better, no longer needed"}}
    )


class SlotListResponse(BaseModel):
    doctor_id: str
    slot_date: date
    time_of_day: TimeOfDay
    slots: List[Slot]


class EnterQueueResponse(BaseModel):
    appointment_id: str
    queue_token: int


class CallNextResponse(BaseModel):
    """``appointment`` is null when nobody is waiting."""
    appointment: Optional[Appointment] = None
    message: str

    model_config = ConfigDict(
        json_schema_extra={
            "example": {"appointment": None, "message": "No more patients in queue"}
        }
    )


class DoctorListResponse(BaseModel):
    doctor_ids: List[str]


class ErrorResponse(BaseModel):
    """Error response schema."""
    error: str = Field(..., description="Error message")
    detail: Optional[str] = Field(None, description="Detailed error information")
    code: Optional[str] = Field(None, description="Error code")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "error": "Slot Full",
                "detail": "Slot 09:00 on 2025-01-13 is full (1 per slot)",
                "code": "SLOT_FULL"
            }
        }
    )
