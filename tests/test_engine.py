import sqlite3

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from hospital_queue.engine import QueueEngine
from hospital_queue.errors import (AuthRequiredError, ConflictError,
                                   OutOfOrderError, PermissionDeniedError)
from hospital_queue.events import EventType, queue_changed
from hospital_queue.models import Visit, WorkStatus
from hospital_queue.ordering import OPD_QUEUE
from hospital_queue.schemas import ReferralIn


class TestUnitOfWork:
    def test_events_follow_successful_commit(self, queue_engine, clinic, published):
        reg = queue_engine.register_visit(clinic.patients[0], clinic.doctor)

        assert [e.to_dict() for e in published] == [{"event": "queue-changed", "doctorId": clinic.doctor}]
        assert reg.entry_id

    def test_failed_mutation_publishes_nothing(self, queue_engine, clinic, published):
        queue_engine.register_visit(clinic.patients[0], clinic.doctor)
        second = queue_engine.register_visit(clinic.patients[1], clinic.doctor)
        published.clear()

        with pytest.raises(OutOfOrderError):
            queue_engine.start_service(second.entry_id)
        assert published == []

    def test_transient_conflicts_are_retried(self, queue_engine, published):
        attempts = []

        def work(db):
            attempts.append(1)
            if len(attempts) < 3:
                raise StaleDataError("queue head changed underneath")
            return "done", [queue_changed(doctor_id=1)]

        assert queue_engine._transact("flaky", work) == "done"
        assert len(attempts) == 3
        assert len(published) == 1

    def test_retry_budget_surfaces_conflict(self, session_factory, broadcaster, published):
        engine = QueueEngine(session_factory, broadcaster, retry_limit=3)
        attempts = []

        def work(db):
            attempts.append(1)
            raise OperationalError("UPDATE queue_heads", {}, Exception("database is locked"))

        with pytest.raises(ConflictError):
            engine._transact("always_locked", work)
        assert len(attempts) == 3
        assert published == []

    def test_non_transient_storage_errors_propagate(self, queue_engine):
        def work(db):
            raise OperationalError("SELECT", {}, Exception("no such table: nowhere"))

        with pytest.raises(OperationalError):
            queue_engine._transact("broken", work)

    def test_racing_unique_keys_are_retried(self, queue_engine):
        attempts = []

        def work(db):
            attempts.append(1)
            if len(attempts) == 1:
                raise IntegrityError(
                    "INSERT INTO token_counters", {},
                    Exception("UNIQUE constraint failed: token_counters.doctor_id, token_counters.day"),
                )
            return "done", []

        assert queue_engine._transact("first_of_day", work) == "done"
        assert len(attempts) == 2

    def test_other_integrity_errors_are_not_retried(self, queue_engine):
        attempts = []

        def work(db):
            attempts.append(1)
            raise IntegrityError("INSERT INTO visits", {}, Exception("FOREIGN KEY constraint failed"))

        with pytest.raises(IntegrityError):
            queue_engine._transact("dangling", work)
        assert len(attempts) == 1

    def test_duplicate_outside_the_raced_keys_is_not_retried(self, queue_engine):
        attempts = []

        def work(db):
            attempts.append(1)
            raise IntegrityError("INSERT INTO patients", {}, Exception("UNIQUE constraint failed: patients.id"))

        with pytest.raises(IntegrityError):
            queue_engine._transact("duplicate_patient", work)
        assert len(attempts) == 1

    def test_publisher_failure_does_not_undo_commit(self, session_factory, clinic):
        class ExplodingPublisher:
            def publish(self, event):
                raise RuntimeError("socket gone")

        engine = QueueEngine(session_factory, ExplodingPublisher())
        reg = engine.register_visit(clinic.patients[0], clinic.doctor)

        db = session_factory()
        try:
            assert db.get(Visit, reg.visit.id) is not None
        finally:
            db.close()


class TestVisitLookup:
    def test_protected_visit_needs_date_of_birth(self, queue_engine, clinic):
        reg = queue_engine.register_visit(clinic.patients[0], clinic.doctor)

        with pytest.raises(AuthRequiredError) as missing:
            queue_engine.lookup_visit(reg.external_ref)
        assert missing.value.extra == {"is_protected": True}
        with pytest.raises(PermissionDeniedError):
            queue_engine.lookup_visit(reg.external_ref, "2000-12-31")

        found = queue_engine.lookup_visit(reg.external_ref, "1990-01-01")
        assert found.visit.id == reg.visit.id
        assert found.doctor_name == "Dr. Meera Nair"

    def test_position_and_estimated_wait(self, queue_engine, clinic):
        regs = [
            queue_engine.register_visit(p, clinic.doctor, is_protected=False)
            for p in clinic.patients[:3]
        ]
        queue_engine.start_service(regs[0].entry_id)

        status = queue_engine.lookup_visit(regs[2].external_ref)
        assert status.queue.position == 3
        assert status.queue.tokens_ahead == 2
        assert status.queue.estimated_wait_minutes == 20
        assert status.queue.current_token == 1

    def test_finished_visit_shows_diagnostics(self, queue_engine, clinic):
        reg = queue_engine.register_visit(clinic.patients[0], clinic.doctor, is_protected=False)
        queue_engine.start_service(reg.entry_id)
        queue_engine.complete_service(reg.entry_id, referrals=[ReferralIn(test_type="LAB")])

        status = queue_engine.lookup_visit(reg.external_ref)
        assert status.queue.tokens_ahead == 0
        assert [d.test_type for d in status.diagnostics] == ["LAB"]


class TestDoctorStatus:
    def test_entering_opd_starts_idle_clock(self, queue_engine, clinic, published):
        doctor = queue_engine.set_doctor_work_status(clinic.other_doctor, WorkStatus.IN_OPD)

        assert doctor.work_status == WorkStatus.IN_OPD
        assert doctor.last_action_at is not None
        assert published[-1].to_dict() == {
            "event": "doctor-status-changed", "doctorId": clinic.other_doctor, "status": "IN_OPD",
        }

    def test_delay_reason_broadcasts_delayed(self, queue_engine, clinic, published):
        doctor = queue_engine.set_delay_reason(clinic.doctor, "Emergency surgery")
        assert doctor.delay_reason == "Emergency surgery"
        assert published[-1].payload == {
            "doctorId": clinic.doctor, "status": "DELAYED", "reason": "Emergency surgery",
        }

        cleared = queue_engine.set_delay_reason(clinic.doctor, "  ")
        assert cleared.delay_reason is None
        assert published[-1].payload["status"] == "IN_OPD"


class TestBoards:
    def test_public_board(self, queue_engine, clinic):
        regs = [queue_engine.register_visit(p, clinic.doctor) for p in clinic.patients[:3]]
        queue_engine.start_service(regs[0].entry_id)
        queue_engine.complete_service(regs[0].entry_id, referrals=[ReferralIn(test_type="CT")])
        queue_engine.start_service(regs[1].entry_id)

        board = queue_engine.public_board()
        rows = {row.id: row for row in board.opd}
        assert rows[clinic.doctor].current_token == 2
        assert rows[clinic.doctor].queue_length == 2
        assert rows[clinic.other_doctor].queue_length == 0

        counters = {row.test_type: row.count for row in board.diagnostics}
        assert counters == {"XRAY": 0, "MRI": 0, "LAB": 0, "CT": 1}

    def test_admin_dashboard_includes_audit_trail(self, queue_engine, clinic):
        reg = queue_engine.register_visit(clinic.patients[0], clinic.doctor)
        queue_engine.mark_emergency(reg.visit.id, "Low saturation", actor="dr_meera")

        dashboard = queue_engine.admin_dashboard()
        assert [e.id for e in dashboard.opd] == [reg.entry_id]
        assert [log.actor for log in dashboard.logs] == ["dr_meera"]
        assert {row.id for row in dashboard.doctors} == {clinic.doctor, clinic.other_doctor}


def test_emergency_event_reaches_doctor_screen_only(queue_engine, clinic, broadcaster):
    doctor_screen, other_screen = [], []
    broadcaster.subscribe(doctor_screen.append, doctor_id=clinic.doctor)
    broadcaster.subscribe(other_screen.append, doctor_id=clinic.other_doctor)

    reg = queue_engine.register_visit(clinic.patients[0], clinic.doctor)
    queue_engine.mark_emergency(reg.visit.id, "Anaphylaxis")

    assert EventType.EMERGENCY_RAISED in [e.type for e in doctor_screen]
    assert other_screen == []


class TestReadersAndWriters:
    def test_open_read_does_not_take_the_write_lock(self, db_engine, clinic, session_factory):
        reader = session_factory()
        try:
            OPD_QUEUE.list(reader, clinic.doctor)

            raw = sqlite3.connect(db_engine.url.database, timeout=0, isolation_level=None)
            try:
                raw.execute("BEGIN IMMEDIATE")
                raw.execute("ROLLBACK")
            finally:
                raw.close()
        finally:
            reader.close()

    def test_writer_commits_while_a_read_is_open(self, queue_engine, clinic, session_factory):
        reader = session_factory()
        try:
            assert OPD_QUEUE.list(reader, clinic.doctor) == []
            reg = queue_engine.register_visit(clinic.patients[0], clinic.doctor)
        finally:
            reader.close()

        assert reg.token_number == 1
        assert [e.id for e in queue_engine.list_queue(clinic.doctor)] == [reg.entry_id]
