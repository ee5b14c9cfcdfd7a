"""Booking ledger: the authoritative store of appointments.

Responsibilities:
- Book against a generated slot without ever exceeding its capacity
- Apply lifecycle transitions as compare-and-swap updates
- Keep the per-slot counter equal to the number of non-terminal bookings

Pattern: per-slot lock + conditional UPDATE on the slot counter inside one
transaction. Across processes the counter row is created with an idempotent
INSERT and the conditional UPDATE alone decides capacity; the lock keeps
same-process callers from queueing on the database.
"""
import uuid
from datetime import date, datetime, time
from typing import Callable, Dict, List, Optional

from sqlalchemy import and_, func, or_
from sqlalchemy.orm import Session as SQLSession

from clinic_queue.api.database_models import AppointmentRecord, SlotCounter, utc_now
from clinic_queue.appointment import (
    Appointment,
    AppointmentPage,
    AppointmentQuery,
    BookingDetails,
    SortOrder,
)
from clinic_queue.availability import Slot, clinic_now, generate_slots
from clinic_queue.database import Database, insert_if_missing
from clinic_queue.errors import (
    AppointmentNotFoundError,
    DuplicateBookingError,
    InvalidTransitionError,
    SlotFullError,
    SlotInPastError,
    SlotNotFoundError,
)
from clinic_queue.locks import KeyedLock
from clinic_queue.logging_config import get_logger
from clinic_queue.notifications import (
    AppointmentApproved,
    AppointmentBooked,
    AppointmentCancelled,
    AppointmentRejected,
    EventDispatcher,
    QueueUpdated,
)
from clinic_queue.schedule_store import ScheduleStore
from clinic_queue.state import (
    TERMINAL_STATUSES,
    Actor,
    AppointmentStatus,
    TransitionContext,
    Trigger,
    resolve_transition,
)

logger = get_logger(__name__)

ACTIVE_STATUS_VALUES = [
    status.value for status in AppointmentStatus if status not in TERMINAL_STATUSES
]


def generate_appointment_id() -> str:
    return f"apt-{uuid.uuid4().hex[:12]}"


def get_record(db: SQLSession, appointment_id: str) -> AppointmentRecord:
    """
    Fetch an appointment row.

    Raises:
        AppointmentNotFoundError: If no such appointment exists
    """
    record = db.get(AppointmentRecord, appointment_id)
    if record is None:
        raise AppointmentNotFoundError(f"Appointment {appointment_id} not found")
    return record


def release_slot(db: SQLSession, record: AppointmentRecord):
    """Give back one unit of slot capacity."""
    db.query(SlotCounter).filter(
        SlotCounter.doctor_id == record.doctor_id,
        SlotCounter.slot_date == record.appointment_date,
        SlotCounter.slot_start == record.slot_start,
        SlotCounter.booked_count > 0,
    ).update(
        {SlotCounter.booked_count: SlotCounter.booked_count - 1},
        synchronize_session=False,
    )


def count_waiting(db: SQLSession, doctor_id: str, queue_date: date) -> int:
    """Appointments still waiting (``queued``) for one doctor-day."""
    return db.query(AppointmentRecord).filter(
        AppointmentRecord.doctor_id == doctor_id,
        AppointmentRecord.appointment_date == queue_date,
        AppointmentRecord.status == AppointmentStatus.QUEUED.value,
    ).count()


def transition_record(
    db: SQLSession,
    record: AppointmentRecord,
    trigger: Trigger,
    context: Optional[TransitionContext] = None,
    **fields,
) -> AppointmentRecord:
    """
    Move an appointment along one lifecycle edge.

    The UPDATE only matches while the row still has the status we read, so
    a concurrent change makes this fail instead of overwriting it.

    Args:
        db: Session inside an open transaction
        record: Row as read in this transaction
        trigger: Lifecycle operation
        context: Facts for guarded edges
        **fields: Extra columns to set with the status (timestamps, token, ...)

    Returns:
        The refreshed row

    Raises:
        InvalidTransitionError: Edge not allowed, guard failed, or lost a race
    """
    current = AppointmentStatus(record.status)
    target = resolve_transition(current, trigger, context)

    values = {getattr(AppointmentRecord, name): value for name, value in fields.items()}
    values[AppointmentRecord.status] = target.value
    values[AppointmentRecord.updated_at] = utc_now()

    updated = db.query(AppointmentRecord).filter(
        AppointmentRecord.appointment_id == record.appointment_id,
        AppointmentRecord.status == current.value,
    ).update(values, synchronize_session=False)

    if updated != 1:
        raise InvalidTransitionError(
            current.value, trigger.value, "appointment was changed concurrently"
        )

    if target in TERMINAL_STATUSES:
        release_slot(db, record)

    db.refresh(record)
    logger.info(
        "appointment_transitioned",
        appointment_id=record.appointment_id,
        from_status=current.value,
        to_status=target.value,
        trigger=trigger.value,
    )
    return record


class AppointmentLedger:
    """Books appointments and applies non-queue lifecycle changes."""

    def __init__(
        self,
        database: Database,
        schedule_store: ScheduleStore,
        dispatcher: EventDispatcher,
        clock: Callable[[], datetime] = clinic_now,
    ):
        self.database = database
        self.schedule_store = schedule_store
        self.dispatcher = dispatcher
        self.clock = clock
        self._slot_locks = KeyedLock()

    # Booking

    def book(
        self,
        doctor_id: str,
        patient_id: str,
        appointment_date: date,
        slot_start: time,
        details: Optional[BookingDetails] = None,
    ) -> Appointment:
        """
        Book one place in a doctor's slot.

        Args:
            doctor_id: Doctor identifier
            patient_id: Patient identifier
            appointment_date: Calendar date of the visit
            slot_start: Start time of one of that day's slots
            details: Consultation mode, reason, symptoms

        Returns:
            New appointment in status ``requested``

        Raises:
            ScheduleNotFoundError: Unknown doctor
            InvalidScheduleError: Doctor's schedule is malformed
            SlotNotFoundError: slot_start is not a slot on that date
            SlotInPastError: Date or slot already past
            DuplicateBookingError: Patient already holds this slot
            SlotFullError: Slot at capacity
        """
        details = details or BookingDetails()
        now = self.clock()
        if appointment_date < now.date():
            raise SlotInPastError(f"{appointment_date} is in the past")

        schedule = self.schedule_store.load_schedule(doctor_id)
        slot = self._find_slot(
            generate_slots(schedule, appointment_date, now), doctor_id, appointment_date, slot_start
        )
        if slot.is_past:
            raise SlotInPastError(
                f"Slot {slot.start:%H:%M} on {appointment_date} has already started"
            )

        with self._slot_locks.hold(doctor_id, appointment_date, slot.start):
            with self.database.transaction() as db:
                self._ensure_not_duplicate(db, doctor_id, patient_id, appointment_date, slot.start)
                self._reserve_slot(db, doctor_id, appointment_date, slot.start, slot.capacity)

                record = AppointmentRecord(
                    appointment_id=generate_appointment_id(),
                    doctor_id=doctor_id,
                    patient_id=patient_id,
                    appointment_date=appointment_date,
                    slot_start=slot.start,
                    slot_end=slot.end,
                    consultation_mode=details.consultation_mode.value,
                    reason=details.reason,
                    symptoms=list(details.symptoms),
                    status=AppointmentStatus.REQUESTED.value,
                )
                db.add(record)
                db.flush()
                appointment = Appointment.model_validate(record)

        logger.info(
            "appointment_booked",
            appointment_id=appointment.appointment_id,
            doctor_id=doctor_id,
            patient_id=patient_id,
            appointment_date=appointment_date.isoformat(),
            slot_start=slot.start.isoformat(),
        )
        self.dispatcher.publish(AppointmentBooked(
            appointment_id=appointment.appointment_id,
            doctor_id=doctor_id,
            patient_id=patient_id,
            appointment_date=appointment_date,
            slot_start=slot.start,
        ))
        return appointment

    def _find_slot(
        self, slots: List[Slot], doctor_id: str, appointment_date: date, slot_start: time
    ) -> Slot:
        for slot in slots:
            if slot.start == slot_start:
                return slot
        raise SlotNotFoundError(
            f"Doctor {doctor_id} has no slot starting at {slot_start:%H:%M} on {appointment_date}"
        )

    def _ensure_not_duplicate(
        self, db: SQLSession, doctor_id: str, patient_id: str, appointment_date: date, slot_start: time
    ):
        existing = db.query(AppointmentRecord.appointment_id).filter(
            AppointmentRecord.doctor_id == doctor_id,
            AppointmentRecord.patient_id == patient_id,
            AppointmentRecord.appointment_date == appointment_date,
            AppointmentRecord.slot_start == slot_start,
            AppointmentRecord.status.in_(ACTIVE_STATUS_VALUES),
        ).first()
        if existing:
            raise DuplicateBookingError(
                f"Patient {patient_id} already holds appointment {existing.appointment_id} in this slot"
            )

    def _reserve_slot(
        self, db: SQLSession, doctor_id: str, slot_date: date, slot_start: time, capacity: int
    ):
        insert_if_missing(
            db, SlotCounter, doctor_id=doctor_id, slot_date=slot_date, slot_start=slot_start, booked_count=0
        )

        # Compare and increment in one statement
        reserved = db.query(SlotCounter).filter(
            SlotCounter.doctor_id == doctor_id,
            SlotCounter.slot_date == slot_date,
            SlotCounter.slot_start == slot_start,
            SlotCounter.booked_count < capacity,
        ).update(
            {SlotCounter.booked_count: SlotCounter.booked_count + 1},
            synchronize_session=False,
        )
        if reserved != 1:
            raise SlotFullError(
                f"Slot {slot_start:%H:%M} on {slot_date} is full ({capacity} per slot)"
            )

    # Lifecycle

    def approve(self, appointment_id: str) -> Appointment:
        """requested → approved."""
        appointment = self._transition(appointment_id, Trigger.APPROVE)
        self.dispatcher.publish(AppointmentApproved(
            appointment_id=appointment.appointment_id,
            doctor_id=appointment.doctor_id,
            patient_id=appointment.patient_id,
            appointment_date=appointment.appointment_date,
        ))
        return appointment

    def reject(self, appointment_id: str) -> Appointment:
        """requested → rejected; frees the slot."""
        appointment = self._transition(appointment_id, Trigger.REJECT)
        self.dispatcher.publish(AppointmentRejected(
            appointment_id=appointment.appointment_id,
            doctor_id=appointment.doctor_id,
            patient_id=appointment.patient_id,
        ))
        return appointment

    def cancel(self, appointment_id: str, actor: Actor, reason: Optional[str] = None) -> Appointment:
        """
        Cancel from requested, approved or queued; frees the slot.

        Raises:
            AppointmentNotFoundError: Unknown id
            InvalidTransitionError: Already called, in progress or terminal
        """
        with self.database.transaction() as db:
            record = get_record(db, appointment_id)
            was_queued = record.status == AppointmentStatus.QUEUED.value
            transition_record(
                db,
                record,
                Trigger.CANCEL,
                cancelled_at=self.clock(),
                cancelled_by=actor.value,
                cancellation_reason=reason,
            )
            appointment = Appointment.model_validate(record)
            waiting = count_waiting(db, record.doctor_id, record.appointment_date) if was_queued else None

        self.dispatcher.publish(AppointmentCancelled(
            appointment_id=appointment.appointment_id,
            doctor_id=appointment.doctor_id,
            patient_id=appointment.patient_id,
            cancelled_by=actor.value,
            reason=reason,
        ))
        if waiting is not None:
            self.dispatcher.publish(QueueUpdated(
                doctor_id=appointment.doctor_id,
                queue_date=appointment.appointment_date,
                waiting=waiting,
            ))
        return appointment

    def _transition(self, appointment_id: str, trigger: Trigger) -> Appointment:
        with self.database.transaction() as db:
            record = transition_record(db, get_record(db, appointment_id), trigger)
            return Appointment.model_validate(record)

    # Queries

    def get(self, appointment_id: str) -> Appointment:
        with self.database.session() as db:
            return Appointment.model_validate(get_record(db, appointment_id))

    def list_for_doctor_day(
        self,
        doctor_id: str,
        appointment_date: date,
        status: Optional[AppointmentStatus] = None,
    ) -> List[Appointment]:
        """Appointments for one doctor-day, ordered by slot then booking time."""
        with self.database.session() as db:
            query = db.query(AppointmentRecord).filter(
                AppointmentRecord.doctor_id == doctor_id,
                AppointmentRecord.appointment_date == appointment_date,
            )
            if status is not None:
                query = query.filter(AppointmentRecord.status == status.value)
            records = query.order_by(
                AppointmentRecord.slot_start, AppointmentRecord.created_at
            ).all()
            return [Appointment.model_validate(record) for record in records]

    def list_for_patient(self, patient_id: str) -> List[Appointment]:
        """A patient's appointments, newest date first."""
        with self.database.session() as db:
            records = db.query(AppointmentRecord).filter(
                AppointmentRecord.patient_id == patient_id
            ).order_by(
                AppointmentRecord.appointment_date.desc(), AppointmentRecord.slot_start
            ).all()
            return [Appointment.model_validate(record) for record in records]

    def list_stale_request_ids(self, through_date: date) -> List[str]:
        """Ids of still-``requested`` appointments dated on or before through_date."""
        with self.database.session() as db:
            rows = db.query(AppointmentRecord.appointment_id).filter(
                AppointmentRecord.status == AppointmentStatus.REQUESTED.value,
                AppointmentRecord.appointment_date <= through_date,
            ).order_by(AppointmentRecord.appointment_date).all()
            return [row.appointment_id for row in rows]

    def list_overdue_consultation_ids(self, now: datetime) -> List[str]:
        """Ids of ``in_progress`` appointments whose slot ended before now."""
        with self.database.session() as db:
            rows = db.query(AppointmentRecord.appointment_id).filter(
                AppointmentRecord.status == AppointmentStatus.IN_PROGRESS.value,
                or_(
                    AppointmentRecord.appointment_date < now.date(),
                    and_(
                        AppointmentRecord.appointment_date == now.date(),
                        AppointmentRecord.slot_end < now.time(),
                    ),
                ),
            ).order_by(AppointmentRecord.appointment_date, AppointmentRecord.queue_token).all()
            return [row.appointment_id for row in rows]

    def search(self, query: AppointmentQuery) -> AppointmentPage:
        """
        Filtered, paged listing across all doctors and patients.

        Results are ordered by appointment date (``query.sort_order``), then
        slot start and booking time.
        """
        with self.database.session() as db:
            matches = db.query(AppointmentRecord)
            if query.status is not None:
                matches = matches.filter(AppointmentRecord.status == query.status.value)
            if query.consultation_mode is not None:
                matches = matches.filter(
                    AppointmentRecord.consultation_mode == query.consultation_mode.value
                )
            if query.doctor_id:
                matches = matches.filter(AppointmentRecord.doctor_id == query.doctor_id)
            if query.patient_id:
                matches = matches.filter(AppointmentRecord.patient_id == query.patient_id)
            if query.date_from is not None:
                matches = matches.filter(AppointmentRecord.appointment_date >= query.date_from)
            if query.date_to is not None:
                matches = matches.filter(AppointmentRecord.appointment_date <= query.date_to)

            total = matches.count()
            status_counts = dict(
                matches.with_entities(AppointmentRecord.status, func.count())
                .group_by(AppointmentRecord.status)
                .all()
            )

            by_date = AppointmentRecord.appointment_date
            records = matches.order_by(
                by_date.asc() if query.sort_order == SortOrder.ASC else by_date.desc(),
                AppointmentRecord.slot_start,
                AppointmentRecord.created_at,
            ).offset((query.page - 1) * query.limit).limit(query.limit).all()

            return AppointmentPage(
                appointments=[Appointment.model_validate(record) for record in records],
                page=query.page,
                limit=query.limit,
                total=total,
                total_pages=(total + query.limit - 1) // query.limit,
                has_next=query.page * query.limit < total,
                has_prev=query.page > 1,
                status_counts=status_counts,
            )

    def booked_counts(self, doctor_id: str, slot_date: date) -> Dict[time, int]:
        """Active bookings per slot start for one doctor-day."""
        with self.database.session() as db:
            counters = db.query(SlotCounter).filter(
                SlotCounter.doctor_id == doctor_id,
                SlotCounter.slot_date == slot_date,
            ).all()
            return {counter.slot_start: counter.booked_count for counter in counters}
