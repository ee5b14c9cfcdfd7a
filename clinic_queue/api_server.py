"""FastAPI server for the clinic appointment and queue engine.

Features:
- CORS middleware for the patient and doctor web apps
- Domain errors mapped to stable HTTP status + error code
- Health check endpoint
- Structured logging with request IDs
- Background task cancelling stale requests and finishing overdue consultations
"""
import asyncio
from contextlib import asynccontextmanager
from datetime import date
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from clinic_queue import __version__, config
from clinic_queue.api.dependencies import (
    Caller,
    CallerRole,
    get_caller,
    get_clinic_service,
    require_admin,
    require_staff,
    reset_clinic_service,
)
from clinic_queue.api.models import (
    BookAppointmentRequest,
    CallNextResponse,
    CancelAppointmentRequest,
    DoctorListResponse,
    EnterQueueResponse,
    ErrorResponse,
    SlotListResponse,
)
from clinic_queue.appointment import (
    Appointment,
    AppointmentPage,
    AppointmentQuery,
    BookingDetails,
    ConsultationMode,
    SortOrder,
)
from clinic_queue.availability import DoctorSchedule, TimeOfDay
from clinic_queue.errors import (
    DuplicateBookingError,
    InvalidScheduleError,
    InvalidTransitionError,
    NotFoundError,
    SchedulingError,
    SlotFullError,
    SlotInPastError,
)
from clinic_queue.logging_config import RequestIDMiddleware, get_logger, setup_structured_logging
from clinic_queue.queue_engine import QueuePosition, QueueSnapshot
from clinic_queue.service import ClinicService
from clinic_queue.state import Actor, normalize_status
from clinic_queue.sweeper import AppointmentSweeper

logger = get_logger(__name__)

# Most specific class first
ERROR_STATUS_CODES = [
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (InvalidScheduleError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (SlotFullError, status.HTTP_409_CONFLICT),
    (SlotInPastError, status.HTTP_409_CONFLICT),
    (DuplicateBookingError, status.HTTP_409_CONFLICT),
    (InvalidTransitionError, status.HTTP_409_CONFLICT),
]


async def sweep_appointments_periodically(sweeper: AppointmentSweeper, interval_seconds: int):
    """Background task: cancel stale requests, finish overdue consultations."""
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            await asyncio.to_thread(sweeper.sweep)
        except Exception:
            logger.exception("appointment_sweep_failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown logic."""
    setup_structured_logging(config.LOG_LEVEL)
    logger.info("clinic_queue_starting", version=__version__)

    try:
        service = get_clinic_service()
    except Exception:
        logger.exception("database_initialization_failed")
        raise

    sweep_task = asyncio.create_task(sweep_appointments_periodically(
        AppointmentSweeper(service), config.APPOINTMENT_SWEEP_INTERVAL_SECONDS
    ))
    logger.info("appointment_sweep_started", interval_seconds=config.APPOINTMENT_SWEEP_INTERVAL_SECONDS)

    yield

    sweep_task.cancel()
    try:
        await sweep_task
    except asyncio.CancelledError:
        logger.info("appointment_sweep_cancelled")

    reset_clinic_service()
    logger.info("clinic_queue_shutting_down")


app = FastAPI(
    title="Clinic Queue API",
    description="Appointment booking and day-of-visit queue for a single clinic",
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
)
app.add_middleware(RequestIDMiddleware)


# Global exception handlers
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle Pydantic validation errors consistently."""
    logger.warning("request_validation_failed", errors=str(exc.errors()))
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=ErrorResponse(
            error="Validation Error",
            detail=str(exc.errors()),
            code="VALIDATION_ERROR"
        ).model_dump()
    )


@app.exception_handler(SchedulingError)
async def scheduling_error_handler(request: Request, exc: SchedulingError):
    """Map domain errors to HTTP status with their stable code."""
    status_code = status.HTTP_400_BAD_REQUEST
    for error_class, mapped_status in ERROR_STATUS_CODES:
        if isinstance(exc, error_class):
            status_code = mapped_status
            break

    logger.info("request_rejected", code=exc.code, detail=exc.message, path=request.url.path)
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(
            error=type(exc).__name__,
            detail=exc.message,
            code=exc.code
        ).model_dump()
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Catch-all handler for unexpected exceptions."""
    logger.error("unexpected_error", path=request.url.path, exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorResponse(
            error="Internal Server Error",
            detail="An unexpected error occurred. Please try again later.",
            code="INTERNAL_ERROR"
        ).model_dump()
    )


def _ensure_can_access(caller: Caller, appointment: Appointment):
    """Patients see their own appointments; doctors see their own patients."""
    if caller.role == CallerRole.PATIENT and appointment.patient_id != caller.user_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not your appointment")
    if caller.role == CallerRole.DOCTOR and appointment.doctor_id != caller.user_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not your patient")


def _ensure_own_queue(caller: Caller, doctor_id: str):
    if caller.role == CallerRole.DOCTOR and doctor_id != caller.user_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not your queue")


@app.get("/health", tags=["Health"])
async def health_check():
    """Health check endpoint for load balancers."""
    return {
        "status": "healthy",
        "service": "clinic-queue-api",
        "version": __version__
    }


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with API info."""
    return {
        "message": "Clinic Queue API",
        "docs": "/docs",
        "health": "/health"
    }


# Schedules

@app.get("/api/v1/doctors", tags=["Schedules"], response_model=DoctorListResponse)
def list_doctors(
    caller: Caller = Depends(get_caller),
    service: ClinicService = Depends(get_clinic_service),
):
    return DoctorListResponse(doctor_ids=service.list_doctors())


@app.put("/api/v1/doctors/{doctor_id}/schedule", tags=["Schedules"], response_model=DoctorSchedule)
def put_schedule(
    doctor_id: str,
    schedule: DoctorSchedule,
    caller: Caller = Depends(require_admin),
    service: ClinicService = Depends(get_clinic_service),
):
    """Create or replace a doctor's weekly schedule (admin only)."""
    return service.set_schedule(doctor_id, schedule)


@app.get("/api/v1/doctors/{doctor_id}/schedule", tags=["Schedules"], response_model=DoctorSchedule)
def get_schedule(
    doctor_id: str,
    caller: Caller = Depends(get_caller),
    service: ClinicService = Depends(get_clinic_service),
):
    return service.get_schedule(doctor_id)


@app.get("/api/v1/doctors/{doctor_id}/slots", tags=["Availability"], response_model=SlotListResponse)
def list_slots(
    doctor_id: str,
    slot_date: date = Query(..., alias="date", description="YYYY-MM-DD"),
    time_of_day: TimeOfDay = Query(TimeOfDay.ANY),
    caller: Caller = Depends(get_caller),
    service: ClinicService = Depends(get_clinic_service),
):
    """List a doctor's slots for one date; past slots are flagged, not hidden."""
    return SlotListResponse(
        doctor_id=doctor_id,
        slot_date=slot_date,
        time_of_day=time_of_day,
        slots=service.list_slots(doctor_id, slot_date, time_of_day),
    )


@app.get(
    "/api/v1/doctors/{doctor_id}/appointments",
    tags=["Appointments"],
    response_model=List[Appointment],
)
def list_doctor_appointments(
    doctor_id: str,
    appointment_date: date = Query(..., alias="date", description="YYYY-MM-DD"),
    status_filter: Optional[str] = Query(
        None, alias="status", description="Canonical or legacy status name"
    ),
    caller: Caller = Depends(require_staff),
    service: ClinicService = Depends(get_clinic_service),
):
    _ensure_own_queue(caller, doctor_id)
    appointment_status = None
    if status_filter:
        try:
            appointment_status = normalize_status(status_filter)
        except ValueError as e:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    return service.list_doctor_appointments(doctor_id, appointment_date, appointment_status)


# Booking ledger

@app.post(
    "/api/v1/appointments",
    tags=["Appointments"],
    response_model=Appointment,
    status_code=status.HTTP_201_CREATED,
)
def book_appointment(
    request: BookAppointmentRequest,
    caller: Caller = Depends(get_caller),
    service: ClinicService = Depends(get_clinic_service),
):
    """
    Book a slot. Patients book for themselves; admins name the patient.

    Raises:
        403: Doctors cannot book; admins must supply patient_id
        404: Unknown doctor or slot
        409: Slot full, slot in the past, or duplicate booking
    """
    if caller.role == CallerRole.PATIENT:
        patient_id = caller.user_id
    elif caller.role == CallerRole.ADMIN and request.patient_id:
        patient_id = request.patient_id
    else:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only patients, or admins naming a patient_id, may book",
        )

    return service.book(
        request.doctor_id,
        patient_id,
        request.appointment_date,
        request.slot_start,
        BookingDetails(
            consultation_mode=request.consultation_mode,
            reason=request.reason,
            symptoms=request.symptoms,
        ),
    )


@app.get("/api/v1/appointments", tags=["Appointments"], response_model=AppointmentPage)
def search_appointments(
    status_filter: Optional[str] = Query(
        None, alias="status", description="Canonical or legacy status name"
    ),
    consultation_mode: Optional[ConsultationMode] = Query(None),
    doctor_id: Optional[str] = Query(None),
    patient_id: Optional[str] = Query(None),
    date_from: Optional[date] = Query(None, description="YYYY-MM-DD, inclusive"),
    date_to: Optional[date] = Query(None, description="YYYY-MM-DD, inclusive"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    sort_order: SortOrder = Query(SortOrder.DESC),
    caller: Caller = Depends(require_admin),
    service: ClinicService = Depends(get_clinic_service),
):
    """All appointments, filtered and paged, with per-status counts (admin only)."""
    appointment_status = None
    if status_filter:
        try:
            appointment_status = normalize_status(status_filter)
        except ValueError as e:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    return service.search_appointments(AppointmentQuery(
        status=appointment_status,
        consultation_mode=consultation_mode,
        doctor_id=doctor_id,
        patient_id=patient_id,
        date_from=date_from,
        date_to=date_to,
        page=page,
        limit=limit,
        sort_order=sort_order,
    ))


@app.get("/api/v1/patients/me/appointments", tags=["Appointments"], response_model=List[Appointment])
def list_my_appointments(
    caller: Caller = Depends(get_caller),
    service: ClinicService = Depends(get_clinic_service),
):
    return service.list_patient_appointments(caller.user_id)


@app.get("/api/v1/appointments/{appointment_id}", tags=["Appointments"], response_model=Appointment)
def get_appointment(
    appointment_id: str,
    caller: Caller = Depends(get_caller),
    service: ClinicService = Depends(get_clinic_service),
):
    appointment = service.get_appointment(appointment_id)
    _ensure_can_access(caller, appointment)
    return appointment


@app.post("/api/v1/appointments/{appointment_id}/approve", tags=["Appointments"], response_model=Appointment)
def approve_appointment(
    appointment_id: str,
    caller: Caller = Depends(require_staff),
    service: ClinicService = Depends(get_clinic_service),
):
    _ensure_can_access(caller, service.get_appointment(appointment_id))
    return service.approve(appointment_id)


@app.post("/api/v1/appointments/{appointment_id}/reject", tags=["Appointments"], response_model=Appointment)
def reject_appointment(
    appointment_id: str,
    caller: Caller = Depends(require_staff),
    service: ClinicService = Depends(get_clinic_service),
):
    _ensure_can_access(caller, service.get_appointment(appointment_id))
    return service.reject(appointment_id)


@app.post("/api/v1/appointments/{appointment_id}/cancel", tags=["Appointments"], response_model=Appointment)
def cancel_appointment(
    appointment_id: str,
    request: Optional[CancelAppointmentRequest] = None,
    caller: Caller = Depends(get_caller),
    service: ClinicService = Depends(get_clinic_service),
):
    _ensure_can_access(caller, service.get_appointment(appointment_id))
    reason = request.reason if request else None
    return service.cancel(appointment_id, Actor(caller.role.value), reason)


# Queue engine

@app.post(
    "/api/v1/appointments/{appointment_id}/enter-queue",
    tags=["Queue"],
    response_model=EnterQueueResponse,
)
def enter_queue(
    appointment_id: str,
    caller: Caller = Depends(require_staff),
    service: ClinicService = Depends(get_clinic_service),
):
    _ensure_can_access(caller, service.get_appointment(appointment_id))
    token = service.enter_queue(appointment_id)
    return EnterQueueResponse(appointment_id=appointment_id, queue_token=token)


@app.post("/api/v1/appointments/{appointment_id}/start", tags=["Queue"], response_model=Appointment)
def begin_consultation(
    appointment_id: str,
    caller: Caller = Depends(require_staff),
    service: ClinicService = Depends(get_clinic_service),
):
    _ensure_can_access(caller, service.get_appointment(appointment_id))
    return service.begin_consultation(appointment_id)


@app.post("/api/v1/appointments/{appointment_id}/complete", tags=["Queue"], response_model=Appointment)
def complete_consultation(
    appointment_id: str,
    caller: Caller = Depends(require_staff),
    service: ClinicService = Depends(get_clinic_service),
):
    _ensure_can_access(caller, service.get_appointment(appointment_id))
    return service.complete(appointment_id)


@app.get("/api/v1/appointments/{appointment_id}/position", tags=["Queue"], response_model=QueuePosition)
def get_position(
    appointment_id: str,
    caller: Caller = Depends(get_caller),
    service: ClinicService = Depends(get_clinic_service),
):
    _ensure_can_access(caller, service.get_appointment(appointment_id))
    return service.get_position(appointment_id)


@app.post(
    "/api/v1/doctors/{doctor_id}/queue/{queue_date}/call-next",
    tags=["Queue"],
    response_model=CallNextResponse,
)
def call_next(
    doctor_id: str,
    queue_date: date,
    caller: Caller = Depends(require_staff),
    service: ClinicService = Depends(get_clinic_service),
):
    """Call the lowest-token waiting patient; ``appointment`` is null when the queue is empty."""
    _ensure_own_queue(caller, doctor_id)
    appointment = service.call_next(doctor_id, queue_date)
    if appointment is None:
        return CallNextResponse(appointment=None, message="No more patients in queue")
    return CallNextResponse(
        appointment=appointment,
        message=f"Called token {appointment.queue_token}",
    )


@app.get("/api/v1/doctors/{doctor_id}/queue/{queue_date}", tags=["Queue"], response_model=QueueSnapshot)
def get_queue(
    doctor_id: str,
    queue_date: date,
    caller: Caller = Depends(require_staff),
    service: ClinicService = Depends(get_clinic_service),
):
    _ensure_own_queue(caller, doctor_id)
    return service.get_queue(doctor_id, queue_date)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "clinic_queue.api_server:app",
        host=config.API_HOST,
        port=config.API_PORT,
        log_level=config.LOG_LEVEL.lower()
    )
