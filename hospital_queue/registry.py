"""
Visit registry: token assignment and visit creation.

Tokens come from the ``token_counters`` row of (doctor, day) which is bumped
with a single ``UPDATE ... SET last_token = last_token + 1``. The first
visit of the day inserts the row instead; two first visits racing on that
insert hit the primary key and the loser is retried by the engine with a
fresh read. ``visits`` also carries a unique (doctor, day, token)
constraint as a last line of defence.
"""
import datetime
import hashlib
import logging
import secrets
import time

from sqlalchemy import func
from sqlalchemy.orm import Session

from .errors import NotFoundError
from .models import (Doctor, EntryStatus, OPDQueueEntry, Patient, TokenCounter,
                     Visit, now)

logger = logging.getLogger(__name__)


def max_token_today(db: Session, doctor_id: int, day: datetime.date) -> int:
    return (
        db.query(func.max(Visit.token_number))
        .filter(Visit.doctor_id == doctor_id, Visit.visit_day == day)
        .scalar()
        or 0
    )


def next_token(db: Session, doctor_id: int, day: datetime.date) -> int:
    updated = (
        db.query(TokenCounter)
        .filter(TokenCounter.doctor_id == doctor_id, TokenCounter.day == day)
        .update({TokenCounter.last_token: TokenCounter.last_token + 1}, synchronize_session=False)
    )
    if updated:
        return (
            db.query(TokenCounter.last_token)
            .filter(TokenCounter.doctor_id == doctor_id, TokenCounter.day == day)
            .scalar()
        )

    # First registration of the day for this doctor
    token = max_token_today(db, doctor_id, day) + 1
    db.add(TokenCounter(doctor_id=doctor_id, day=day, last_token=token))
    db.flush()
    return token


def make_external_ref(patient_id: int, doctor_id: int, created_at: datetime.datetime) -> str:
    """
    Opaque visit reference used as the QR payload and patient lookup key.

    SHA-256 over the patient, doctor, creation instant and a random salt:
    it cannot be turned back into the patient's identity and collisions are
    negligible even for visits created in the same nanosecond.
    """
    material = f"{patient_id}-{doctor_id}-{created_at.isoformat()}-{time.time_ns()}-{secrets.token_hex(16)}"
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def register_visit(
    db: Session,
    patient_id: int,
    doctor_id: int,
    is_emergency: bool = False,
    is_protected: bool = True,
) -> Visit:
    """Create the visit and its OPD queue entry in the caller's transaction."""
    doctor = db.get(Doctor, doctor_id)
    if doctor is None:
        raise NotFoundError(f"Doctor {doctor_id} not found.")
    if db.get(Patient, patient_id) is None:
        raise NotFoundError(f"Patient {patient_id} not found.")

    created_at = now()
    day = created_at.date()
    token = next_token(db, doctor_id, day)

    visit = Visit(
        patient_id=patient_id,
        doctor_id=doctor_id,
        token_number=token,
        visit_day=day,
        external_ref=make_external_ref(patient_id, doctor_id, created_at),
        is_emergency=is_emergency,
        is_protected=is_protected,
        status=EntryStatus.WAITING,
        created_at=created_at,
    )
    db.add(visit)
    db.flush()

    db.add(OPDQueueEntry(
        visit_id=visit.id,
        doctor_id=doctor_id,
        status=EntryStatus.WAITING,
        priority=1 if is_emergency else 0,
        created_at=created_at,
    ))
    db.flush()

    logger.info(
        "Registered visit %s for doctor %s with token %s%s",
        visit.id, doctor_id, token, " (emergency)" if is_emergency else "",
    )
    return visit
