"""
QueueEngine: the operations the HTTP layer (or any other boundary) calls.

Every mutating operation runs as one unit of work: validate, mutate, commit,
and only then publish notifications. Transient storage races are retried
here; business-rule errors (``QueueError`` subclasses) go straight back to
the caller.
"""
import logging
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from . import audit, escalation, registry, state_machine
from .audit import AuditSink, DatabaseAuditSink
from .config import settings
from .database import begin_write
from .errors import (AuthRequiredError, ConflictError, NotFoundError,
                     PermissionDeniedError, QueueError, ValidationError)
from .events import (Event, EventPublisher, doctor_status_changed,
                     emergency_raised, queue_changed)
from .models import (DiagnosticEntry, Doctor, EntryStatus, Medicine, QueueKind,
                     Visit, WorkStatus, now)
from .ordering import DIAGNOSTIC_QUEUE, OPD_QUEUE, PriorityQueue
from .schemas import (AdminDashboard, AuditOut, DiagnosticBoardRow,
                      DiagnosticEntryOut, DoctorBoardRow, DoctorOut,
                      PublicBoard, QueueEntryOut, QueuePosition,
                      RegistrationOut, VisitLookupOut, VisitOut)

logger = logging.getLogger(__name__)

# Shown on the public board even when nobody is queued for them.
DEFAULT_TEST_TYPES = ("XRAY", "MRI", "LAB")

ACTIVE = (EntryStatus.WAITING, EntryStatus.IN_PROGRESS)

Work = Callable[[Session], Tuple[object, List[Event]]]


# Unique keys two concurrent units of work can both try to claim. Any other
# integrity failure is a real error and is not retried.
_RACED_KEYS = (
    "token_counters",
    "queue_heads",
    "uq_visit_token_per_day",
    "visits.doctor_id, visits.visit_day, visits.token_number",
)


def _is_transient(exc: Exception) -> bool:
    if isinstance(exc, StaleDataError):
        return True
    message = str(getattr(exc, "orig", exc)).lower()
    if isinstance(exc, IntegrityError):
        duplicate = "unique constraint failed" in message or "duplicate entry" in message
        return duplicate and any(key in message for key in _RACED_KEYS)
    return "locked" in message or "deadlock" in message or "lock wait" in message


def _test_type(value: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationError("Test type is required.")
    return str(value).strip().upper()


class QueueEngine:
    def __init__(
        self,
        session_factory,
        publisher: EventPublisher,
        audit_sink: Optional[AuditSink] = None,
        retry_limit: Optional[int] = None,
        minutes_per_token: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.publisher = publisher
        self.audit = audit_sink or DatabaseAuditSink()
        self.retry_limit = max(1, retry_limit or settings.QUEUE_RETRY_LIMIT)
        self.minutes_per_token = minutes_per_token or settings.MINUTES_PER_TOKEN

    # =================================================================
    # Unit of work
    # =================================================================

    def _transact(self, operation: str, work: Work):
        attempt = 0
        while True:
            attempt += 1
            db = self.session_factory()
            try:
                begin_write(db)
                result, events = work(db)
                db.commit()
            except QueueError:
                db.rollback()
                raise
            except (StaleDataError, IntegrityError, OperationalError) as exc:
                db.rollback()
                if not _is_transient(exc):
                    raise
                if attempt >= self.retry_limit:
                    logger.error("%s gave up after %s conflicting attempts", operation, attempt)
                    raise ConflictError(
                        f"{operation} could not be completed because of concurrent updates, please retry."
                    ) from exc
                logger.warning("%s conflicted (attempt %s/%s): %s", operation, attempt, self.retry_limit, exc)
                continue
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()

            self._publish(events)
            return result

    def _read(self, work: Callable[[Session], object]):
        db = self.session_factory()
        try:
            return work(db)
        finally:
            db.close()

    def _publish(self, events: Iterable[Event]) -> None:
        for event in events:
            try:
                self.publisher.publish(event)
            except Exception:
                # The mutation is committed either way
                logger.exception("Publishing %s failed", event.type.value)

    # =================================================================
    # Helpers
    # =================================================================

    @staticmethod
    def _doctor(db: Session, doctor_id: int) -> Doctor:
        doctor = db.get(Doctor, doctor_id)
        if doctor is None:
            raise NotFoundError(f"Doctor {doctor_id} not found.")
        return doctor

    @staticmethod
    def _entry(db: Session, queue: PriorityQueue, entry_id: int):
        entry = db.get(queue.model, entry_id)
        if entry is None:
            raise NotFoundError(f"{queue.kind.value} queue entry {entry_id} not found.")
        return entry

    @staticmethod
    def _queue_event(queue: PriorityQueue, key) -> Event:
        if queue.kind == QueueKind.OPD:
            return queue_changed(doctor_id=key)
        return queue_changed(test_type=key)

    @staticmethod
    def _render(queue: PriorityQueue, entry):
        if queue.kind == QueueKind.OPD:
            return QueueEntryOut.from_entry(entry)
        return DiagnosticEntryOut.from_entry(entry)

    def _transition(self, queue: PriorityQueue, entry_id: int, target: EntryStatus, operation: str, effects=None):
        """
        Generic status change. ``effects(db, entry)`` runs after the state
        machine accepted the change and may return extra events.
        """
        def work(db):
            entry = self._entry(db, queue, entry_id)
            key = queue.key_of(entry)
            head = queue.acquire(db, key)
            db.refresh(entry)

            state_machine.advance(db, queue, entry, target)
            events = [self._queue_event(queue, key)]
            if effects is not None:
                events.extend(effects(db, entry) or [])
            queue.touch(db, head)

            logger.info("%s: %s entry %s -> %s", operation, queue.kind.value, entry.id, target.value)
            return self._render(queue, entry), events

        return self._transact(operation, work)

    # =================================================================
    # Visit registry
    # =================================================================

    def register_visit(self, patient_id: int, doctor_id: int, is_emergency: bool = False,
                       is_protected: bool = True) -> RegistrationOut:
        def work(db):
            head = OPD_QUEUE.acquire(db, doctor_id)
            visit = registry.register_visit(db, patient_id, doctor_id, is_emergency, is_protected)
            OPD_QUEUE.touch(db, head)
            out = RegistrationOut(
                visit=VisitOut.model_validate(visit),
                token_number=visit.token_number,
                external_ref=visit.external_ref,
                entry_id=visit.opd_entry.id,
            )
            return out, [queue_changed(doctor_id=doctor_id)]

        return self._transact("register_visit", work)

    def lookup_visit(self, external_ref: str, dob: Optional[str] = None) -> VisitLookupOut:
        def work(db):
            visit = db.query(Visit).filter(Visit.external_ref == external_ref).first()
            if visit is None:
                raise NotFoundError("Visit not found.")
            if visit.is_protected:
                if not dob:
                    raise AuthRequiredError("Password required.", is_protected=True)
                if dob != visit.patient.dob:
                    raise PermissionDeniedError("Invalid date of birth.", is_protected=True)

            active = OPD_QUEUE.list(db, visit.doctor_id)
            index = next((i for i, e in enumerate(active) if e.visit_id == visit.id), -1)
            tokens_ahead = max(index, 0)
            serving = next((e for e in active if e.status == EntryStatus.IN_PROGRESS), None)

            return VisitLookupOut(
                visit=VisitOut.model_validate(visit),
                doctor_name=visit.doctor.name,
                delay_reason=visit.doctor.delay_reason,
                queue=QueuePosition(
                    position=index + 1,
                    tokens_ahead=tokens_ahead,
                    estimated_wait_minutes=tokens_ahead * self.minutes_per_token,
                    current_token=serving.visit.token_number if serving else None,
                ),
                diagnostics=[DiagnosticEntryOut.from_entry(d) for d in visit.diagnostics],
            )

        return self._read(work)

    def get_visit(self, external_ref: str) -> VisitOut:
        """Staff-side lookup, no date of birth check."""
        def work(db):
            visit = db.query(Visit).filter(Visit.external_ref == external_ref).first()
            if visit is None:
                raise NotFoundError("Visit not found.")
            return VisitOut.model_validate(visit)

        return self._read(work)

    # =================================================================
    # OPD queue
    # =================================================================

    def list_queue(self, doctor_id: int) -> List[QueueEntryOut]:
        def work(db):
            self._doctor(db, doctor_id)
            return [QueueEntryOut.from_entry(e) for e in OPD_QUEUE.list(db, doctor_id)]

        return self._read(work)

    def get_next(self, doctor_id: int) -> Optional[QueueEntryOut]:
        def work(db):
            entry = OPD_QUEUE.get_next(db, doctor_id)
            return QueueEntryOut.from_entry(entry) if entry else None

        return self._read(work)

    def start_service(self, entry_id: int) -> QueueEntryOut:
        def effects(db, entry):
            entry.visit.status = EntryStatus.IN_PROGRESS
            entry.doctor.last_action_at = now()

        return self._transition(OPD_QUEUE, entry_id, EntryStatus.IN_PROGRESS, "start_service", effects)

    def complete_service(self, entry_id: int, diagnosis: Optional[str] = None,
                         medicines: Iterable = (), referrals: Iterable = ()) -> QueueEntryOut:
        medicines = list(medicines or [])
        referrals = [(_test_type(r.test_type), bool(r.is_emergency)) for r in (referrals or [])]

        def effects(db, entry):
            finished_at = now()
            visit = entry.visit
            visit.status = EntryStatus.COMPLETED
            visit.completed_at = finished_at
            if diagnosis is not None:
                visit.diagnosis = diagnosis
            entry.doctor.last_action_at = finished_at

            for med in medicines:
                db.add(Medicine(visit_id=visit.id, name=med.name, dosage=med.dosage))

            events = []
            for test_type in sorted({t for t, _ in referrals}):
                DIAGNOSTIC_QUEUE.touch(db, DIAGNOSTIC_QUEUE.acquire(db, test_type))
                events.append(queue_changed(test_type=test_type))
            for test_type, urgent in referrals:
                escalation.create_referral(db, visit, test_type, urgent)
            db.flush()
            return events

        return self._transition(OPD_QUEUE, entry_id, EntryStatus.COMPLETED, "complete_service", effects)

    def mark_not_available(self, entry_id: int) -> QueueEntryOut:
        def effects(db, entry):
            entry.visit.status = EntryStatus.NOT_AVAILABLE

        return self._transition(OPD_QUEUE, entry_id, EntryStatus.NOT_AVAILABLE, "mark_not_available", effects)

    def reactivate(self, entry_id: int) -> QueueEntryOut:
        def effects(db, entry):
            entry.visit.status = EntryStatus.WAITING

        return self._transition(OPD_QUEUE, entry_id, EntryStatus.WAITING, "reactivate", effects)

    # =================================================================
    # Diagnostic queues
    # =================================================================

    def list_diagnostic_queue(self, test_type: str) -> List[DiagnosticEntryOut]:
        test_type = _test_type(test_type)
        return self._read(
            lambda db: [DiagnosticEntryOut.from_entry(e) for e in DIAGNOSTIC_QUEUE.list(db, test_type)]
        )

    def get_next_diagnostic(self, test_type: str) -> Optional[DiagnosticEntryOut]:
        test_type = _test_type(test_type)

        def work(db):
            entry = DIAGNOSTIC_QUEUE.get_next(db, test_type)
            return DiagnosticEntryOut.from_entry(entry) if entry else None

        return self._read(work)

    def start_diagnostic(self, entry_id: int) -> DiagnosticEntryOut:
        return self._transition(DIAGNOSTIC_QUEUE, entry_id, EntryStatus.IN_PROGRESS, "start_diagnostic")

    def complete_diagnostic(self, entry_id: int, result: Optional[str] = None) -> DiagnosticEntryOut:
        def effects(db, entry):
            if result is not None:
                entry.result = result

        return self._transition(DIAGNOSTIC_QUEUE, entry_id, EntryStatus.COMPLETED, "complete_diagnostic", effects)

    def mark_diagnostic_not_available(self, entry_id: int) -> DiagnosticEntryOut:
        return self._transition(
            DIAGNOSTIC_QUEUE, entry_id, EntryStatus.NOT_AVAILABLE, "mark_diagnostic_not_available"
        )

    def reactivate_diagnostic(self, entry_id: int) -> DiagnosticEntryOut:
        return self._transition(DIAGNOSTIC_QUEUE, entry_id, EntryStatus.WAITING, "reactivate_diagnostic")

    # =================================================================
    # Priority escalation
    # =================================================================

    def mark_emergency(self, visit_id: int, reason: str, actor: str = "system") -> VisitOut:
        def work(db):
            visit = escalation.load_visit(db, visit_id)
            test_types = sorted({d.test_type for d in visit.diagnostics})
            heads = [OPD_QUEUE.acquire(db, visit.doctor_id)]
            heads += [DIAGNOSTIC_QUEUE.acquire(db, t) for t in test_types]
            db.refresh(visit)

            newly_raised = escalation.mark_emergency(db, self.audit, visit, reason, actor)
            OPD_QUEUE.touch(db, heads[0])
            for head in heads[1:]:
                DIAGNOSTIC_QUEUE.touch(db, head)

            events = [queue_changed(doctor_id=visit.doctor_id)]
            events += [queue_changed(test_type=t) for t in test_types]
            if newly_raised:
                events.append(emergency_raised(
                    visit.doctor_id,
                    f"Emergency Alert: Token {visit.token_number} marked as Emergency!",
                ))
            return VisitOut.model_validate(visit), events

        return self._transact("mark_emergency", work)

    def override_priority(self, visit_id: int, reason: str, actor: str) -> QueueEntryOut:
        def work(db):
            visit = escalation.load_visit(db, visit_id)
            head = OPD_QUEUE.acquire(db, visit.doctor_id)
            db.refresh(visit)

            escalation.override_priority(db, self.audit, visit, reason, actor)
            OPD_QUEUE.touch(db, head)
            return QueueEntryOut.from_entry(visit.opd_entry), [queue_changed(doctor_id=visit.doctor_id)]

        return self._transact("override_priority", work)

    # =================================================================
    # Doctors
    # =================================================================

    def set_doctor_work_status(self, doctor_id: int, status: WorkStatus) -> DoctorOut:
        status = WorkStatus(status)

        def work(db):
            doctor = self._doctor(db, doctor_id)
            if status == WorkStatus.IN_OPD and doctor.work_status != WorkStatus.IN_OPD:
                # Arriving in the OPD starts the idle clock
                doctor.last_action_at = now()
            doctor.work_status = status
            db.flush()
            logger.info("Doctor %s work status -> %s", doctor_id, status.value)
            return DoctorOut.model_validate(doctor), [doctor_status_changed(doctor_id, status.value)]

        return self._transact("set_doctor_work_status", work)

    def set_delay_reason(self, doctor_id: int, reason: Optional[str]) -> DoctorOut:
        reason = reason.strip() if reason and reason.strip() else None

        def work(db):
            doctor = self._doctor(db, doctor_id)
            doctor.delay_reason = reason
            db.flush()
            status = "DELAYED" if reason else WorkStatus(doctor.work_status).value
            return DoctorOut.model_validate(doctor), [doctor_status_changed(doctor_id, status, reason)]

        return self._transact("set_delay_reason", work)

    # =================================================================
    # Boards
    # =================================================================

    @staticmethod
    def _doctor_row(db: Session, doctor: Doctor) -> DoctorBoardRow:
        active = OPD_QUEUE.list(db, doctor.id)
        serving = next((e for e in active if e.status == EntryStatus.IN_PROGRESS), None)
        return DoctorBoardRow(
            id=doctor.id,
            name=doctor.name,
            department=doctor.department,
            room=doctor.opd_room,
            status=doctor.work_status,
            delay_reason=doctor.delay_reason,
            current_token=serving.visit.token_number if serving else None,
            queue_length=len(active),
        )

    def public_board(self) -> PublicBoard:
        def work(db):
            doctors = db.query(Doctor).order_by(Doctor.id).all()
            tests = db.query(DiagnosticEntry).filter(DiagnosticEntry.status.in_(ACTIVE)).all()

            rows = {t: DiagnosticBoardRow(test_type=t, count=0) for t in DEFAULT_TEST_TYPES}
            for test in tests:
                row = rows.setdefault(test.test_type, DiagnosticBoardRow(test_type=test.test_type, count=0))
                row.count += 1
                if test.status == EntryStatus.IN_PROGRESS:
                    row.current_token = test.visit.token_number

            return PublicBoard(
                opd=[self._doctor_row(db, d) for d in doctors],
                diagnostics=list(rows.values()),
                timestamp=datetime.now(),
            )

        return self._read(work)

    def admin_dashboard(self) -> AdminDashboard:
        def work(db):
            doctors = db.query(Doctor).order_by(Doctor.id).all()
            opd = []
            for doctor in doctors:
                opd += [QueueEntryOut.from_entry(e) for e in OPD_QUEUE.list(db, doctor.id)]
            tests = (
                db.query(DiagnosticEntry)
                .filter(DiagnosticEntry.status.in_(ACTIVE))
                .order_by(DiagnosticEntry.test_type, *DIAGNOSTIC_QUEUE.ordering())
                .all()
            )
            return AdminDashboard(
                doctors=[self._doctor_row(db, d) for d in doctors],
                opd=opd,
                diagnostics=[DiagnosticEntryOut.from_entry(t) for t in tests],
                logs=[AuditOut.model_validate(log) for log in audit.recent(db)],
            )

        return self._read(work)
