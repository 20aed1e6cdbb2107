import datetime
import enum

from sqlalchemy import (Boolean, Column, Date, DateTime, Enum, ForeignKey,
                        Integer, String, Text, UniqueConstraint)
from sqlalchemy.orm import relationship

from .database import Base


def now() -> datetime.datetime:
    """Wall-clock time used for every timestamp column (naive, server local)."""
    return datetime.datetime.now()


# --- ENUMS ---

class EntryStatus(str, enum.Enum):
    WAITING = "WAITING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    NOT_AVAILABLE = "NOT_AVAILABLE"


class WorkStatus(str, enum.Enum):
    AVAILABLE = "AVAILABLE"
    IN_OPD = "IN_OPD"
    IN_OT = "IN_OT"
    LEAVE = "LEAVE"


class QueueKind(str, enum.Enum):
    OPD = "OPD"
    DIAGNOSTIC = "DIAGNOSTIC"


# --- MASTER DATA ---

class Doctor(Base):
    __tablename__ = "doctors"
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    department = Column(String(100))
    opd_room = Column(String(20))
    work_status = Column(Enum(WorkStatus), default=WorkStatus.AVAILABLE, nullable=False)
    delay_reason = Column(String(255), nullable=True)
    # Last start/complete of a consultation; read by the inactivity sweep
    last_action_at = Column(DateTime, nullable=True)

    visits = relationship("Visit", back_populates="doctor")
    opd_entries = relationship("OPDQueueEntry", back_populates="doctor")


class Patient(Base):
    __tablename__ = "patients"
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    dob = Column(String(10))  # YYYY-MM-DD, doubles as the visit lookup password

    visits = relationship("Visit", back_populates="patient")


# --- VISIT & QUEUES ---

class Visit(Base):
    __tablename__ = "visits"
    __table_args__ = (
        UniqueConstraint("doctor_id", "visit_day", "token_number", name="uq_visit_token_per_day"),
    )

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False)
    doctor_id = Column(Integer, ForeignKey("doctors.id"), nullable=False, index=True)
    token_number = Column(Integer, nullable=False)
    visit_day = Column(Date, nullable=False, index=True)
    external_ref = Column(String(64), unique=True, index=True, nullable=False)

    is_emergency = Column(Boolean, default=False, nullable=False)
    emergency_reason = Column(String(255), nullable=True)
    is_protected = Column(Boolean, default=True, nullable=False)

    status = Column(Enum(EntryStatus), default=EntryStatus.WAITING, nullable=False)
    diagnosis = Column(Text, nullable=True)
    created_at = Column(DateTime, default=now, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    patient = relationship("Patient", back_populates="visits")
    doctor = relationship("Doctor", back_populates="visits")
    opd_entry = relationship("OPDQueueEntry", back_populates="visit", uselist=False)
    diagnostics = relationship("DiagnosticEntry", back_populates="visit", order_by="DiagnosticEntry.id")
    medicines = relationship("Medicine", back_populates="visit")


class OPDQueueEntry(Base):
    __tablename__ = "opd_queue"
    id = Column(Integer, primary_key=True, index=True)
    visit_id = Column(Integer, ForeignKey("visits.id"), unique=True, nullable=False)
    doctor_id = Column(Integer, ForeignKey("doctors.id"), nullable=False, index=True)
    status = Column(Enum(EntryStatus), default=EntryStatus.WAITING, nullable=False, index=True)
    priority = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=now, nullable=False)
    updated_at = Column(DateTime, default=now, onupdate=now)

    visit = relationship("Visit", back_populates="opd_entry")
    doctor = relationship("Doctor", back_populates="opd_entries")


class DiagnosticEntry(Base):
    __tablename__ = "diagnostics"
    id = Column(Integer, primary_key=True, index=True)
    visit_id = Column(Integer, ForeignKey("visits.id"), nullable=False, index=True)
    test_type = Column(String(32), nullable=False, index=True)  # XRAY, MRI, LAB ...
    status = Column(Enum(EntryStatus), default=EntryStatus.WAITING, nullable=False, index=True)
    priority = Column(Integer, default=0, nullable=False)
    is_emergency = Column(Boolean, default=False, nullable=False)
    result = Column(Text, nullable=True)
    created_at = Column(DateTime, default=now, nullable=False)
    updated_at = Column(DateTime, default=now, onupdate=now)

    visit = relationship("Visit", back_populates="diagnostics")


class Medicine(Base):
    __tablename__ = "medicines"
    id = Column(Integer, primary_key=True, index=True)
    visit_id = Column(Integer, ForeignKey("visits.id"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    dosage = Column(String(100))

    visit = relationship("Visit", back_populates="medicines")


# --- CONCURRENCY CONTROL ---

class TokenCounter(Base):
    """Per doctor, per calendar day token sequence."""
    __tablename__ = "token_counters"
    doctor_id = Column(Integer, ForeignKey("doctors.id"), primary_key=True)
    day = Column(Date, primary_key=True)
    last_token = Column(Integer, nullable=False, default=0)


class QueueHead(Base):
    """One row per queue key. Every ordering mutation bumps `version` in its own transaction."""
    __tablename__ = "queue_heads"
    kind = Column(Enum(QueueKind), primary_key=True)
    key = Column(String(64), primary_key=True)
    version = Column(Integer, nullable=False)
    touched_at = Column(DateTime, default=now)

    __mapper_args__ = {"version_id_col": version}


# --- AUDIT ---

class AuditLog(Base):
    __tablename__ = "audit_log"
    id = Column(Integer, primary_key=True, index=True)
    actor = Column(String(100), nullable=False)
    action = Column(String(50), nullable=False)
    visit_id = Column(Integer, ForeignKey("visits.id"), nullable=True)
    details = Column(Text)
    timestamp = Column(DateTime, default=now, nullable=False)
