"""
Inactivity monitor.

Periodically looks for doctors who are in the OPD, have patients waiting and
have not started or completed a consultation for longer than the threshold.
Each finding sends an ``inactivity-alert`` to the doctor's screens and an
``admin-alert`` to admin consoles. Alerts repeat on every tick for as long
as the condition holds.
"""
import asyncio
import contextlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from .config import settings
from .events import EventPublisher, admin_alert, inactivity_alert
from .models import Doctor, WorkStatus, now
from .ordering import OPD_QUEUE

logger = logging.getLogger(__name__)


@dataclass
class InactivityFinding:
    doctor_id: int
    doctor_name: str
    idle_minutes: int
    waiting: int


class InactivityMonitor:
    def __init__(
        self,
        session_factory,
        publisher: EventPublisher,
        interval_seconds: Optional[float] = None,
        threshold_minutes: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.publisher = publisher
        self.interval_seconds = interval_seconds or settings.INACTIVITY_INTERVAL_SECONDS
        self.threshold_minutes = threshold_minutes or settings.INACTIVITY_THRESHOLD_MINUTES
        self._task: Optional[asyncio.Task] = None

    # --- one pass ---

    def sweep(self, at: Optional[datetime] = None) -> List[InactivityFinding]:
        """Evaluate every doctor once; a failure on one doctor does not stop the others."""
        at = at or now()
        cutoff = at - timedelta(minutes=self.threshold_minutes)
        findings = []

        db = self.session_factory()
        try:
            # NULL last_action_at never compares below the cutoff
            candidates = (
                db.query(Doctor)
                .filter(Doctor.work_status == WorkStatus.IN_OPD, Doctor.last_action_at < cutoff)
                .order_by(Doctor.id)
                .all()
            )
            for doctor in candidates:
                try:
                    if OPD_QUEUE.in_progress(db, doctor.id) is not None:
                        continue
                    waiting = OPD_QUEUE.waiting_count(db, doctor.id)
                    if waiting == 0:
                        continue
                    finding = InactivityFinding(
                        doctor_id=doctor.id,
                        doctor_name=doctor.name,
                        idle_minutes=int((at - doctor.last_action_at).total_seconds() // 60),
                        waiting=waiting,
                    )
                    findings.append(finding)
                except Exception:
                    logger.exception("Inactivity check failed for doctor %s", doctor.id)
                    db.rollback()
        finally:
            db.close()

        # alerts go out only once the read session is closed
        for finding in findings:
            try:
                self._alert(finding)
            except Exception:
                logger.exception("Inactivity alert for doctor %s failed", finding.doctor_id)
        if findings:
            logger.info("Inactivity sweep raised %s alert(s)", len(findings))
        return findings

    def _alert(self, finding: InactivityFinding) -> None:
        logger.warning(
            "Doctor %s idle for %s min with %s waiting",
            finding.doctor_id, finding.idle_minutes, finding.waiting,
        )
        self.publisher.publish(inactivity_alert(
            finding.doctor_id,
            f"System Alert: You have been inactive for {finding.idle_minutes} minutes "
            f"with {finding.waiting} patients waiting.",
        ))
        self.publisher.publish(admin_alert(
            "INACTIVITY",
            finding.doctor_id,
            f"Dr. {finding.doctor_name} is inactive for {finding.idle_minutes}m "
            f"with {finding.waiting} waiting.",
            doctorName=finding.doctor_name,
            idleMinutes=finding.idle_minutes,
            waitingCount=finding.waiting,
        ))

    # --- lifecycle ---

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name="inactivity-monitor")
        logger.info(
            "Inactivity monitor started (every %ss, threshold %s min)",
            self.interval_seconds, self.threshold_minutes,
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Inactivity monitor stopped")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await asyncio.to_thread(self.sweep)
            except Exception:
                logger.exception("Inactivity sweep failed")
