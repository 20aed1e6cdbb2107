import threading

import pytest
from sqlalchemy.orm.exc import StaleDataError

from hospital_queue.errors import OutOfOrderError, StateError
from hospital_queue.models import EntryStatus
from hospital_queue.ordering import OPD_QUEUE
from hospital_queue.schemas import ReferralIn


def register_all(queue_engine, clinic, count, doctor=None):
    doctor = doctor or clinic.doctor
    return [queue_engine.register_visit(p, doctor) for p in clinic.patients[:count]]


class TestGetNext:
    def test_empty_queue_has_no_next(self, queue_engine, clinic):
        assert queue_engine.get_next(clinic.doctor) is None

    def test_lowest_token_first(self, queue_engine, clinic):
        regs = register_all(queue_engine, clinic, 3)
        assert [r.token_number for r in regs] == [1, 2, 3]
        assert queue_engine.get_next(clinic.doctor).id == regs[0].entry_id

    def test_emergency_jumps_ahead(self, queue_engine, clinic):
        p1, p2 = register_all(queue_engine, clinic, 2)
        assert queue_engine.get_next(clinic.doctor).id == p1.entry_id

        queue_engine.mark_emergency(p2.visit.id, "Chest pain")

        nxt = queue_engine.get_next(clinic.doctor)
        assert nxt.id == p2.entry_id
        assert nxt.priority == 1

    def test_two_emergencies_keep_token_order(self, queue_engine, clinic):
        regs = register_all(queue_engine, clinic, 4)
        queue_engine.mark_emergency(regs[3].visit.id, "Bleeding")
        queue_engine.mark_emergency(regs[2].visit.id, "Fainted")

        order = [e.id for e in queue_engine.list_queue(clinic.doctor)]
        assert order == [regs[2].entry_id, regs[3].entry_id, regs[0].entry_id, regs[1].entry_id]

    def test_queues_are_per_doctor(self, queue_engine, clinic):
        mine = queue_engine.register_visit(clinic.patients[0], clinic.doctor)
        theirs = queue_engine.register_visit(clinic.patients[1], clinic.other_doctor)

        assert theirs.token_number == 1
        assert queue_engine.get_next(clinic.doctor).id == mine.entry_id
        assert queue_engine.get_next(clinic.other_doctor).id == theirs.entry_id


class TestSerialEnforcement:
    def test_out_of_order_start_names_true_next(self, queue_engine, clinic):
        p1, p2 = register_all(queue_engine, clinic, 2)

        with pytest.raises(OutOfOrderError) as exc:
            queue_engine.start_service(p2.entry_id)
        assert exc.value.next_entry_id == p1.entry_id

        started = queue_engine.start_service(p1.entry_id)
        assert started.status == EntryStatus.IN_PROGRESS

    def test_rejected_start_leaves_queue_untouched(self, queue_engine, clinic):
        p1, p2 = register_all(queue_engine, clinic, 2)
        with pytest.raises(OutOfOrderError):
            queue_engine.start_service(p2.entry_id)

        statuses = {e.id: e.status for e in queue_engine.list_queue(clinic.doctor)}
        assert statuses == {p1.entry_id: EntryStatus.WAITING, p2.entry_id: EntryStatus.WAITING}

    def test_in_progress_entry_listed_first(self, queue_engine, clinic):
        p1, p2, p3 = register_all(queue_engine, clinic, 3)
        queue_engine.start_service(p1.entry_id)
        queue_engine.mark_emergency(p3.visit.id, "Seizure")

        listed = queue_engine.list_queue(clinic.doctor)
        assert [e.id for e in listed] == [p1.entry_id, p3.entry_id, p2.entry_id]
        # the patient already in the room finishes regardless of the new emergency
        done = queue_engine.complete_service(p1.entry_id, diagnosis="Flu")
        assert done.status == EntryStatus.COMPLETED


class TestReactivation:
    def test_not_available_skips_and_reactivate_restores_order(self, queue_engine, clinic):
        p1, p2, p3 = register_all(queue_engine, clinic, 3)

        queue_engine.mark_not_available(p1.entry_id)
        assert queue_engine.get_next(clinic.doctor).id == p2.entry_id
        assert p1.entry_id not in [e.id for e in queue_engine.list_queue(clinic.doctor)]

        back = queue_engine.reactivate(p1.entry_id)
        assert back.status == EntryStatus.WAITING
        assert back.priority == 0
        assert queue_engine.get_next(clinic.doctor).id == p1.entry_id

    def test_reactivated_entry_does_not_pass_an_emergency(self, queue_engine, clinic):
        p1, p2, p3 = register_all(queue_engine, clinic, 3)
        queue_engine.mark_not_available(p1.entry_id)
        queue_engine.mark_emergency(p3.visit.id, "Accident")

        queue_engine.reactivate(p1.entry_id)
        order = [e.id for e in queue_engine.list_queue(clinic.doctor)]
        assert order == [p3.entry_id, p1.entry_id, p2.entry_id]


class TestDiagnosticOrdering:
    def consult(self, queue_engine, reg, *referrals):
        queue_engine.start_service(reg.entry_id)
        queue_engine.complete_service(reg.entry_id, diagnosis="Check", referrals=list(referrals))

    def test_fifo_by_creation_within_priority(self, queue_engine, clinic):
        p1, p2 = register_all(queue_engine, clinic, 2)
        self.consult(queue_engine, p1, ReferralIn(test_type="xray"))
        self.consult(queue_engine, p2, ReferralIn(test_type="XRAY"))

        queue = queue_engine.list_diagnostic_queue("XRAY")
        assert [e.visit_id for e in queue] == [p1.visit.id, p2.visit.id]
        assert queue_engine.get_next_diagnostic("xray").visit_id == p1.visit.id

    def test_urgent_referral_first(self, queue_engine, clinic):
        p1, p2 = register_all(queue_engine, clinic, 2)
        self.consult(queue_engine, p1, ReferralIn(test_type="MRI"))
        self.consult(queue_engine, p2, ReferralIn(test_type="MRI", is_emergency=True))

        queue = queue_engine.list_diagnostic_queue("MRI")
        assert [e.visit_id for e in queue] == [p2.visit.id, p1.visit.id]
        assert queue[0].priority == 1 and queue[0].is_emergency

    def test_not_available_tests_stay_listed(self, queue_engine, clinic):
        (p1,) = register_all(queue_engine, clinic, 1)
        self.consult(queue_engine, p1, ReferralIn(test_type="LAB"))
        entry = queue_engine.list_diagnostic_queue("LAB")[0]

        queue_engine.mark_diagnostic_not_available(entry.id)

        listed = queue_engine.list_diagnostic_queue("LAB")
        assert [e.status for e in listed] == [EntryStatus.NOT_AVAILABLE]
        assert queue_engine.get_next_diagnostic("LAB") is None


def start_together(start, entry_ids):
    """Runs ``start`` for every entry at once; returns (started ids, refusals)."""
    barrier = threading.Barrier(len(entry_ids))
    started, refused = [], []
    lock = threading.Lock()

    def run(entry_id):
        barrier.wait()
        try:
            start(entry_id)
        except (OutOfOrderError, StateError) as exc:
            with lock:
                refused.append(exc)
            return
        with lock:
            started.append(entry_id)

    threads = [threading.Thread(target=run, args=(i,)) for i in entry_ids]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return started, refused


class TestCheckAndSet:
    def test_concurrent_starts_admit_one_patient(self, queue_engine, clinic):
        regs = register_all(queue_engine, clinic, 5)

        started, refused = start_together(queue_engine.start_service, [r.entry_id for r in regs])

        assert started == [regs[0].entry_id]
        assert len(refused) == 4
        in_room = [e.id for e in queue_engine.list_queue(clinic.doctor) if e.status == EntryStatus.IN_PROGRESS]
        assert in_room == [regs[0].entry_id]

    def test_concurrent_starts_of_the_same_entry(self, queue_engine, clinic):
        reg = register_all(queue_engine, clinic, 1)[0]

        started, refused = start_together(queue_engine.start_service, [reg.entry_id] * 4)

        assert started == [reg.entry_id]
        assert all(isinstance(exc, StateError) for exc in refused)
        assert len(refused) == 3

    def test_concurrent_starts_at_one_station(self, queue_engine, clinic):
        for reg in register_all(queue_engine, clinic, 3):
            queue_engine.start_service(reg.entry_id)
            queue_engine.complete_service(reg.entry_id, referrals=[ReferralIn(test_type="MRI")])
        waiting = queue_engine.list_diagnostic_queue("MRI")

        started, refused = start_together(queue_engine.start_diagnostic, [t.id for t in waiting])

        assert started == [waiting[0].id]
        assert len(refused) == 2

    def test_stale_queue_head_is_rejected(self, queue_engine, clinic, session_factory):
        queue_engine.register_visit(clinic.patients[0], clinic.doctor)
        slow, fast = session_factory(), session_factory()
        try:
            behind = OPD_QUEUE.acquire(slow, clinic.doctor)
            # end the read; the loaded head keeps the version it saw
            slow.commit()

            OPD_QUEUE.touch(fast, OPD_QUEUE.acquire(fast, clinic.doctor))
            fast.commit()

            with pytest.raises(StaleDataError):
                OPD_QUEUE.touch(slow, behind)
        finally:
            slow.close()
            fast.close()
