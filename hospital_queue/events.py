"""
Change notifications for doctor screens, public boards and admin consoles.

Components receive an ``EventPublisher`` explicitly and call ``publish``
only after their transaction has committed. ``Broadcaster`` fans events out
to in-process subscribers. Delivery is at-most-once with no replay: a
subscriber that is slow, gone or raising simply misses the event, and
observers that reconnect re-fetch the queue instead of replaying.
"""
import asyncio
import enum
import itertools
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Protocol

logger = logging.getLogger(__name__)


class EventType(str, enum.Enum):
    QUEUE_CHANGED = "queue-changed"
    DOCTOR_STATUS_CHANGED = "doctor-status-changed"
    EMERGENCY_RAISED = "emergency-raised"
    INACTIVITY_ALERT = "inactivity-alert"
    ADMIN_ALERT = "admin-alert"


class Audience(str, enum.Enum):
    ALL = "all"
    # only screens filtered to the event's doctor, plus admin consoles
    DOCTOR = "doctor"
    ADMIN = "admin"


@dataclass(frozen=True)
class Event:
    type: EventType
    payload: Dict[str, Any] = field(default_factory=dict)
    doctor_id: Optional[int] = None
    test_type: Optional[str] = None
    audience: Audience = Audience.ALL

    def to_dict(self) -> Dict[str, Any]:
        return {"event": self.type.value, **self.payload}


# --- event constructors ---

def queue_changed(doctor_id: Optional[int] = None, test_type: Optional[str] = None) -> Event:
    payload = {"doctorId": doctor_id} if doctor_id is not None else {"testType": test_type}
    return Event(EventType.QUEUE_CHANGED, payload, doctor_id=doctor_id, test_type=test_type)


def doctor_status_changed(doctor_id: int, status: str, reason: Optional[str] = None) -> Event:
    payload = {"doctorId": doctor_id, "status": status}
    if reason is not None:
        payload["reason"] = reason
    return Event(EventType.DOCTOR_STATUS_CHANGED, payload, doctor_id=doctor_id)


def emergency_raised(doctor_id: int, message: str) -> Event:
    return Event(EventType.EMERGENCY_RAISED, {"doctorId": doctor_id, "message": message}, doctor_id=doctor_id)


def inactivity_alert(doctor_id: int, message: str) -> Event:
    return Event(EventType.INACTIVITY_ALERT, {"doctorId": doctor_id, "message": message}, doctor_id=doctor_id,
                 audience=Audience.DOCTOR)


def admin_alert(alert_type: str, doctor_id: int, message: str, **extra: Any) -> Event:
    payload = {"type": alert_type, "doctorId": doctor_id, "message": message, **extra}
    return Event(EventType.ADMIN_ALERT, payload, doctor_id=doctor_id, audience=Audience.ADMIN)


# --- publishing ---

class EventPublisher(Protocol):
    def publish(self, event: Event) -> None:
        ...


@dataclass
class Subscription:
    id: int
    callback: Callable[[Event], None]
    doctor_id: Optional[int] = None
    test_type: Optional[str] = None
    admin: bool = False

    def matches(self, event: Event) -> bool:
        if self.admin:
            return True
        if event.audience == Audience.ADMIN:
            return False
        if event.audience == Audience.DOCTOR:
            return self.doctor_id is not None and event.doctor_id == self.doctor_id
        if self.doctor_id is None and self.test_type is None:
            return True
        if self.doctor_id is not None and event.doctor_id == self.doctor_id:
            return True
        return self.test_type is not None and event.test_type == self.test_type


class Broadcaster:
    def __init__(self):
        self._subscriptions: Dict[int, Subscription] = {}
        self._lock = threading.Lock()
        self._ids = itertools.count(1)

    def subscribe(self, callback, doctor_id=None, test_type=None, admin=False) -> Subscription:
        sub = Subscription(next(self._ids), callback, doctor_id, test_type, admin)
        with self._lock:
            self._subscriptions[sub.id] = sub
        logger.debug("Subscription %s added (doctor=%s test=%s admin=%s)", sub.id, doctor_id, test_type, admin)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            self._subscriptions.pop(sub.id, None)

    def subscribe_queue(self, loop: asyncio.AbstractEventLoop, maxsize: int = 100, **filters):
        """Subscription feeding an asyncio.Queue owned by ``loop``; safe to publish from worker threads."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

        def offer(event: Event) -> None:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("Subscriber queue full, dropping %s", event.type.value)

        def deliver(event: Event) -> None:
            loop.call_soon_threadsafe(offer, event)

        return self.subscribe(deliver, **filters), queue

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def publish(self, event: Event) -> None:
        with self._lock:
            subs = list(self._subscriptions.values())
        delivered = 0
        for sub in subs:
            if not sub.matches(event):
                continue
            try:
                sub.callback(event)
                delivered += 1
            except Exception:
                logger.exception("Subscriber %s failed on %s, event dropped", sub.id, event.type.value)
        logger.debug("Published %s to %s subscriber(s)", event.type.value, delivered)
