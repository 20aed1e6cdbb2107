"""
Queue store and ordering engine.

A queue is the set of entries sharing a key (the doctor for OPD, the test
type for diagnostics). Both kinds are ordered the same way: priority first
(1 before 0), then FIFO inside a priority band. ``PriorityQueue`` holds that
logic once and is instantiated for each kind at the bottom of the module.

Every mutation that can change who is next goes through ``acquire`` first:
it loads the queue's ``QueueHead`` row, and ``touch`` later bumps the row's
optimistic version. Two transactions racing on the same queue cannot both
commit; the loser gets ``StaleDataError`` and the engine retries it.
"""
import logging
from typing import Any, List, Sequence

from sqlalchemy import case, func
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import flag_modified

from .errors import OutOfOrderError
from .models import (DiagnosticEntry, EntryStatus, OPDQueueEntry, QueueHead,
                     QueueKind, Visit, now)

logger = logging.getLogger(__name__)


class PriorityQueue:
    def __init__(
        self,
        kind: QueueKind,
        model,
        key_attr: str,
        tiebreak: Sequence[Any],
        active_statuses: Sequence[EntryStatus],
        join=None,
    ):
        self.kind = kind
        self.model = model
        self.key_attr = key_attr
        self.tiebreak = tuple(tiebreak)
        self.active_statuses = tuple(active_statuses)
        self.join = join

    # --- keys & comparator ---

    def key_of(self, entry) -> Any:
        return getattr(entry, self.key_attr)

    def ordering(self):
        """priority desc, then token / creation order asc, then id asc."""
        return (self.model.priority.desc(), *self.tiebreak, self.model.id.asc())

    def _query(self, db: Session, key):
        q = db.query(self.model)
        if self.join is not None:
            q = q.join(self.join)
        return q.filter(getattr(self.model, self.key_attr) == key)

    # --- reads ---

    def get_next(self, db: Session, key):
        """The WAITING entry that must be served next, or None when nobody waits."""
        return (
            self._query(db, key)
            .filter(self.model.status == EntryStatus.WAITING)
            .order_by(*self.ordering())
            .first()
        )

    def in_progress(self, db: Session, key):
        return (
            self._query(db, key)
            .filter(self.model.status == EntryStatus.IN_PROGRESS)
            .first()
        )

    def waiting_count(self, db: Session, key) -> int:
        return (
            db.query(func.count(self.model.id))
            .filter(
                getattr(self.model, self.key_attr) == key,
                self.model.status == EntryStatus.WAITING,
            )
            .scalar()
        )

    def list(self, db: Session, key) -> List:
        """Active entries, the one in service first, then in serving order."""
        serving_first = case((self.model.status == EntryStatus.IN_PROGRESS, 0), else_=1)
        return (
            self._query(db, key)
            .filter(self.model.status.in_(self.active_statuses))
            .order_by(serving_first, *self.ordering())
            .all()
        )

    # --- serial enforcement ---

    def enforce_serial(self, db: Session, entry) -> None:
        """Only the computed next entry may begin service; work already started is exempt."""
        if entry.status == EntryStatus.IN_PROGRESS:
            return
        nxt = self.get_next(db, self.key_of(entry))
        if nxt is None or nxt.id != entry.id:
            next_id = nxt.id if nxt is not None else None
            logger.info(
                "Out of order start on %s queue %s: entry %s requested, %s is next",
                self.kind.value, self.key_of(entry), entry.id, next_id,
            )
            raise OutOfOrderError(next_entry_id=next_id)

    # --- check-and-set ---

    def acquire(self, db: Session, key) -> QueueHead:
        """Load (or create) the head row; must happen before reading the queue for validation."""
        head = db.get(QueueHead, (self.kind, str(key)))
        if head is None:
            head = QueueHead(kind=self.kind, key=str(key))
            db.add(head)
            db.flush()
        return head

    def touch(self, db: Session, head: QueueHead) -> None:
        head.touched_at = now()
        # force the versioned UPDATE even if the timestamp did not change
        flag_modified(head, "touched_at")
        db.flush()


OPD_QUEUE = PriorityQueue(
    kind=QueueKind.OPD,
    model=OPDQueueEntry,
    key_attr="doctor_id",
    tiebreak=(Visit.token_number.asc(),),
    active_statuses=(EntryStatus.WAITING, EntryStatus.IN_PROGRESS),
    join=OPDQueueEntry.visit,
)

DIAGNOSTIC_QUEUE = PriorityQueue(
    kind=QueueKind.DIAGNOSTIC,
    model=DiagnosticEntry,
    key_attr="test_type",
    tiebreak=(DiagnosticEntry.created_at.asc(),),
    active_statuses=(EntryStatus.WAITING, EntryStatus.IN_PROGRESS, EntryStatus.NOT_AVAILABLE),
)
