"""Queue engine: tokens, call-next and wait estimates for one doctor-day.

Token order is the only "who is next" contract. Tokens come from a
per-(doctor, date) counter incremented in the same transaction that moves
the appointment to ``queued``, so a failed transition never burns a token.

call_next() is serialized per doctor-day in-process; the status
compare-and-swap covers callers in other processes.
"""
from datetime import date, datetime
from typing import Callable, List, Optional

from pydantic import BaseModel, Field
from sqlalchemy.orm import Session as SQLSession

from clinic_queue import config
from clinic_queue.api.database_models import AppointmentRecord, QueueCounter
from clinic_queue.appointment import Appointment
from clinic_queue.availability import clinic_now
from clinic_queue.database import Database, insert_if_missing
from clinic_queue.errors import InvalidTransitionError, QueueEntryNotFoundError
from clinic_queue.ledger import count_waiting, get_record, transition_record
from clinic_queue.locks import KeyedLock
from clinic_queue.logging_config import get_logger
from clinic_queue.notifications import EventDispatcher, PatientCalled, QueueUpdated
from clinic_queue.schedule_store import ScheduleStore
from clinic_queue.state import (
    QUEUE_STATUSES,
    AppointmentStatus,
    TransitionContext,
    Trigger,
    resolve_transition,
)

logger = get_logger(__name__)


class QueuePosition(BaseModel):
    """Where an appointment stands in its doctor-day queue."""
    appointment_id: str
    queue_token: int
    status: AppointmentStatus
    position: int = Field(..., description="1 = next to be called; 0 = being seen")
    patients_ahead: int
    estimated_wait_minutes: int


class QueueEntry(BaseModel):
    appointment_id: str
    patient_id: str
    queue_token: int
    status: AppointmentStatus
    position: int
    estimated_wait_minutes: int


class QueueStats(BaseModel):
    total_patients: int = 0
    waiting: int = 0
    in_consultation: int = 0
    finished: int = 0
    cancelled: int = 0
    current_token: Optional[int] = None


class QueueSnapshot(BaseModel):
    """Doctor-day queue view: active entries in token order plus counts."""
    doctor_id: str
    queue_date: date
    average_consultation_minutes: int
    entries: List[QueueEntry] = Field(default_factory=list)
    stats: QueueStats = Field(default_factory=QueueStats)


class QueueEngine:
    """Serves the day-of-visit queue."""

    def __init__(
        self,
        database: Database,
        schedule_store: ScheduleStore,
        dispatcher: EventDispatcher,
        clock: Callable[[], datetime] = clinic_now,
        average_consultation_minutes: int = config.AVERAGE_CONSULTATION_MINUTES,
        auto_start_consultation: bool = config.AUTO_START_CONSULTATION,
    ):
        self.database = database
        self.schedule_store = schedule_store
        self.dispatcher = dispatcher
        self.clock = clock
        self.average_consultation_minutes = average_consultation_minutes
        self.auto_start_consultation = auto_start_consultation
        self._day_locks = KeyedLock()

    def enter_queue(self, appointment_id: str) -> int:
        """
        Issue the next token for an approved appointment on its day.

        Args:
            appointment_id: Appointment identifier

        Returns:
            Queue token (1, 2, 3, ... per doctor-day)

        Raises:
            AppointmentNotFoundError: Unknown id
            InvalidTransitionError: Not approved, or not the appointment day
        """
        with self.database.session() as db:
            record = get_record(db, appointment_id)
            doctor_id, queue_date = record.doctor_id, record.appointment_date

        with self._day_locks.hold(doctor_id, queue_date):
            with self.database.transaction() as db:
                record = get_record(db, appointment_id)
                now = self.clock()
                context = TransitionContext(appointment_date=record.appointment_date, today=now.date())
                # Check before touching the counter; rollback would undo it anyway
                resolve_transition(AppointmentStatus(record.status), Trigger.ENTER_QUEUE, context)

                token = self._next_token(db, doctor_id, queue_date)
                transition_record(
                    db, record, Trigger.ENTER_QUEUE, context, queue_token=token, queued_at=now
                )
                waiting = count_waiting(db, doctor_id, queue_date)

        logger.info(
            "queue_token_issued",
            appointment_id=appointment_id,
            doctor_id=doctor_id,
            queue_date=queue_date.isoformat(),
            queue_token=token,
        )
        self.dispatcher.publish(QueueUpdated(doctor_id=doctor_id, queue_date=queue_date, waiting=waiting))
        return token

    def _next_token(self, db: SQLSession, doctor_id: str, queue_date: date) -> int:
        insert_if_missing(db, QueueCounter, doctor_id=doctor_id, queue_date=queue_date, last_token=0)

        # Increment-and-read inside this transaction; never read-then-write
        db.query(QueueCounter).filter(
            QueueCounter.doctor_id == doctor_id,
            QueueCounter.queue_date == queue_date,
        ).update(
            {QueueCounter.last_token: QueueCounter.last_token + 1},
            synchronize_session=False,
        )
        return db.query(QueueCounter.last_token).filter(
            QueueCounter.doctor_id == doctor_id,
            QueueCounter.queue_date == queue_date,
        ).scalar()

    def call_next(self, doctor_id: str, queue_date: date) -> Optional[Appointment]:
        """
        Call the lowest-token waiting patient.

        With auto-start enabled the consultation begins in the same step
        (called → in_progress).

        Returns:
            The called appointment, or None when nobody is waiting

        Raises:
            ScheduleNotFoundError: Unknown doctor
        """
        self.schedule_store.load_schedule(doctor_id)

        with self._day_locks.hold(doctor_id, queue_date):
            while True:
                try:
                    appointment, waiting = self._call_lowest_token(doctor_id, queue_date)
                except InvalidTransitionError:
                    # Head of the queue changed under us (e.g. cancelled elsewhere)
                    logger.info("call_next_retry", doctor_id=doctor_id, queue_date=queue_date.isoformat())
                    continue
                break

        if appointment is None:
            logger.info("queue_empty", doctor_id=doctor_id, queue_date=queue_date.isoformat())
            return None

        logger.info(
            "patient_called",
            appointment_id=appointment.appointment_id,
            doctor_id=doctor_id,
            queue_token=appointment.queue_token,
            status=appointment.status.value,
        )
        self.dispatcher.publish(PatientCalled(
            appointment_id=appointment.appointment_id,
            doctor_id=doctor_id,
            patient_id=appointment.patient_id,
            queue_token=appointment.queue_token,
        ))
        self.dispatcher.publish(QueueUpdated(doctor_id=doctor_id, queue_date=queue_date, waiting=waiting))
        return appointment

    def _call_lowest_token(self, doctor_id: str, queue_date: date):
        with self.database.transaction() as db:
            record = db.query(AppointmentRecord).filter(
                AppointmentRecord.doctor_id == doctor_id,
                AppointmentRecord.appointment_date == queue_date,
                AppointmentRecord.status == AppointmentStatus.QUEUED.value,
            ).order_by(AppointmentRecord.queue_token).first()

            if record is None:
                return None, 0

            now = self.clock()
            transition_record(db, record, Trigger.CALL_NEXT, called_at=now)
            if self.auto_start_consultation:
                transition_record(db, record, Trigger.BEGIN_CONSULTATION, started_at=now)

            return Appointment.model_validate(record), count_waiting(db, doctor_id, queue_date)

    def begin_consultation(self, appointment_id: str) -> Appointment:
        """called → in_progress (only needed when auto-start is off)."""
        with self.database.transaction() as db:
            record = transition_record(
                db, get_record(db, appointment_id), Trigger.BEGIN_CONSULTATION, started_at=self.clock()
            )
            return Appointment.model_validate(record)

    def complete(self, appointment_id: str) -> Appointment:
        """
        Finish a consultation.

        Raises:
            AppointmentNotFoundError: Unknown id
            InvalidTransitionError: Appointment is not in progress
        """
        with self.database.transaction() as db:
            record = transition_record(
                db, get_record(db, appointment_id), Trigger.COMPLETE, finished_at=self.clock()
            )
            appointment = Appointment.model_validate(record)
            waiting = count_waiting(db, record.doctor_id, record.appointment_date)

        logger.info(
            "consultation_finished",
            appointment_id=appointment_id,
            doctor_id=appointment.doctor_id,
            queue_token=appointment.queue_token,
        )
        self.dispatcher.publish(QueueUpdated(
            doctor_id=appointment.doctor_id,
            queue_date=appointment.appointment_date,
            waiting=waiting,
        ))
        return appointment

    def get_position(self, appointment_id: str) -> QueuePosition:
        """
        Position = queued entries with a lower token + 1.

        Called or in-progress appointments report position 0 and no wait.

        Raises:
            AppointmentNotFoundError: Unknown id
            QueueEntryNotFoundError: Appointment is not in a queue
        """
        with self.database.session() as db:
            record = get_record(db, appointment_id)
            status = AppointmentStatus(record.status)

            if status in (AppointmentStatus.CALLED, AppointmentStatus.IN_PROGRESS):
                return QueuePosition(
                    appointment_id=appointment_id,
                    queue_token=record.queue_token,
                    status=status,
                    position=0,
                    patients_ahead=0,
                    estimated_wait_minutes=0,
                )
            if status != AppointmentStatus.QUEUED:
                raise QueueEntryNotFoundError(
                    f"Appointment {appointment_id} is not in a queue (status '{status.value}')"
                )

            ahead = db.query(AppointmentRecord).filter(
                AppointmentRecord.doctor_id == record.doctor_id,
                AppointmentRecord.appointment_date == record.appointment_date,
                AppointmentRecord.status == AppointmentStatus.QUEUED.value,
                AppointmentRecord.queue_token < record.queue_token,
            ).count()

            return QueuePosition(
                appointment_id=appointment_id,
                queue_token=record.queue_token,
                status=status,
                position=ahead + 1,
                patients_ahead=ahead,
                estimated_wait_minutes=ahead * self.average_consultation_minutes,
            )

    def get_queue(self, doctor_id: str, queue_date: date) -> QueueSnapshot:
        """
        Snapshot of a doctor-day queue.

        Raises:
            ScheduleNotFoundError: Unknown doctor
        """
        self.schedule_store.load_schedule(doctor_id)

        with self.database.session() as db:
            records = db.query(AppointmentRecord).filter(
                AppointmentRecord.doctor_id == doctor_id,
                AppointmentRecord.appointment_date == queue_date,
                AppointmentRecord.queue_token.isnot(None),
            ).order_by(AppointmentRecord.queue_token).all()

            stats = QueueStats(total_patients=len(records))
            entries = []
            waiting_ahead = 0
            for record in records:
                status = AppointmentStatus(record.status)
                if status == AppointmentStatus.FINISHED:
                    stats.finished += 1
                elif status == AppointmentStatus.CANCELLED:
                    stats.cancelled += 1
                if status not in QUEUE_STATUSES:
                    continue

                if status == AppointmentStatus.QUEUED:
                    stats.waiting += 1
                    position = waiting_ahead + 1
                    wait = waiting_ahead * self.average_consultation_minutes
                    waiting_ahead += 1
                else:
                    stats.in_consultation += 1
                    if stats.current_token is None:
                        stats.current_token = record.queue_token
                    position, wait = 0, 0

                entries.append(QueueEntry(
                    appointment_id=record.appointment_id,
                    patient_id=record.patient_id,
                    queue_token=record.queue_token,
                    status=status,
                    position=position,
                    estimated_wait_minutes=wait,
                ))

        return QueueSnapshot(
            doctor_id=doctor_id,
            queue_date=queue_date,
            average_consultation_minutes=self.average_consultation_minutes,
            entries=entries,
            stats=stats,
        )
