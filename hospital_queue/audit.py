"""Audit sink for escalation and override actions."""
import logging
from typing import Optional, Protocol

from sqlalchemy.orm import Session

from .models import AuditLog

logger = logging.getLogger(__name__)

EMERGENCY = "EMERGENCY"
PRIORITY_OVERRIDE = "PRIORITY_OVERRIDE"


class AuditSink(Protocol):
    def record(self, db: Session, actor: str, action: str, visit_id: Optional[int], details: str) -> None:
        ...


class DatabaseAuditSink:
    """Writes into ``audit_log`` inside the caller's transaction, so a rolled back mutation leaves no trail."""

    def record(self, db: Session, actor: str, action: str, visit_id: Optional[int], details: str) -> None:
        db.add(AuditLog(actor=actor, action=action, visit_id=visit_id, details=details))
        logger.info("Audit %s by %s on visit %s: %s", action, actor, visit_id, details)


def recent(db: Session, limit: int = 20):
    return db.query(AuditLog).order_by(AuditLog.timestamp.desc(), AuditLog.id.desc()).limit(limit).all()
