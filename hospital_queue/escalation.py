"""
Priority escalation.

An emergency is a visit-level flag. It lifts the visit's OPD entry and every
diagnostic entry of the visit to priority 1, and ``referral_priority`` makes
diagnostic entries created later inherit it. An administrative override is
narrower: it only lifts the OPD entry and leaves the visit flag alone.
"""
import logging

from sqlalchemy.orm import Session

from . import audit
from .audit import AuditSink
from .errors import NotFoundError, ValidationError
from .models import DiagnosticEntry, Visit

logger = logging.getLogger(__name__)

URGENT = 1
NORMAL = 0


def referral_priority(visit: Visit, flagged_urgent: bool = False) -> int:
    """Priority for a diagnostic entry being created now for ``visit``."""
    return URGENT if (visit.is_emergency or flagged_urgent) else NORMAL


def _require_reason(reason: str) -> str:
    if reason is None or not reason.strip():
        raise ValidationError("A reason is required.")
    return reason.strip()


def load_visit(db: Session, visit_id: int) -> Visit:
    visit = db.get(Visit, visit_id)
    if visit is None:
        raise NotFoundError(f"Visit {visit_id} not found.")
    return visit


def mark_emergency(db: Session, sink: AuditSink, visit: Visit, reason: str, actor: str) -> bool:
    """
    Escalate ``visit``. Returns True when the visit was not an emergency
    before; a repeat call only refreshes the reason and the audit trail.
    """
    reason = _require_reason(reason)
    newly_raised = not visit.is_emergency

    visit.emergency_reason = reason
    visit.is_emergency = True
    # No-ops on an escalated visit, whose entries already carry the flag
    if visit.opd_entry is not None:
        visit.opd_entry.priority = URGENT
    for test in visit.diagnostics:
        test.priority = URGENT
        test.is_emergency = True

    sink.record(
        db, actor, audit.EMERGENCY, visit.id,
        f"{'Emergency raised' if newly_raised else 'Emergency reason updated'} "
        f"for token {visit.token_number}. Reason: {reason}",
    )
    return newly_raised


def override_priority(db: Session, sink: AuditSink, visit: Visit, reason: str, actor: str) -> None:
    reason = _require_reason(reason)
    if visit.opd_entry is None:
        raise NotFoundError(f"Visit {visit.id} has no OPD queue entry.")
    visit.opd_entry.priority = URGENT
    sink.record(
        db, actor, audit.PRIORITY_OVERRIDE, visit.id,
        f"Priority override for visit #{visit.id}. Reason: {reason}",
    )


def create_referral(db: Session, visit: Visit, test_type: str, flagged_urgent: bool = False) -> DiagnosticEntry:
    priority = referral_priority(visit, flagged_urgent)
    entry = DiagnosticEntry(
        visit_id=visit.id,
        test_type=test_type,
        priority=priority,
        is_emergency=bool(visit.is_emergency or flagged_urgent),
    )
    db.add(entry)
    logger.info("Referred visit %s to %s with priority %s", visit.id, test_type, priority)
    return entry
