"""
Legal status transitions for OPD and diagnostic queue entries.

    WAITING       -> IN_PROGRESS    serial order, queue must be free
    WAITING       -> COMPLETED      diagnostics only (one-step tests), serial order
    IN_PROGRESS   -> COMPLETED
    WAITING       -> NOT_AVAILABLE
    NOT_AVAILABLE -> WAITING        back into standard ordering, priority untouched

COMPLETED is terminal and IN_PROGRESS never goes back.
"""
from sqlalchemy.orm import Session

from .errors import StateError
from .models import EntryStatus, QueueKind
from .ordering import PriorityQueue

W, P, C, NA = (
    EntryStatus.WAITING,
    EntryStatus.IN_PROGRESS,
    EntryStatus.COMPLETED,
    EntryStatus.NOT_AVAILABLE,
)

TRANSITIONS = {
    QueueKind.OPD: {(W, P), (P, C), (W, NA), (NA, W)},
    QueueKind.DIAGNOSTIC: {(W, P), (W, C), (P, C), (W, NA), (NA, W)},
}

# Transitions out of WAITING into service need to be the computed next entry.
SERVICE_STARTS = {(W, P), (W, C)}


def check(kind: QueueKind, current: EntryStatus, target: EntryStatus) -> None:
    if (current, target) not in TRANSITIONS[kind]:
        raise StateError(
            f"Illegal {kind.value} transition {current.value} -> {target.value}.",
            current_status=current.value,
            requested_status=target.value,
        )


def advance(db: Session, queue: PriorityQueue, entry, target: EntryStatus) -> EntryStatus:
    """Validate and apply ``entry.status = target``; returns the previous status."""
    current = EntryStatus(entry.status)
    check(queue.kind, current, target)

    if (current, target) in SERVICE_STARTS:
        key = queue.key_of(entry)
        busy = queue.in_progress(db, key)
        if target == P and busy is not None and busy.id != entry.id:
            raise StateError(
                f"Entry {busy.id} is already in progress on {queue.kind.value} queue {key}.",
                in_progress_entry_id=busy.id,
            )
        queue.enforce_serial(db, entry)

    entry.status = target
    return current
