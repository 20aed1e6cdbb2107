from datetime import timedelta
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from hospital_queue import database
from hospital_queue.engine import QueueEngine
from hospital_queue.events import Broadcaster
from hospital_queue.main import create_app
from hospital_queue.models import Doctor, Patient, WorkStatus, now
from hospital_queue.security import create_access_token

# --- DATABASE ---

@pytest.fixture
def db_engine(tmp_path):
    """Fresh SQLite file per test; a file (not :memory:) so worker threads share it."""
    engine = database.build_engine(f"sqlite:///{tmp_path / 'test.db'}")
    database.init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return database.make_session_factory(db_engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


# --- ENGINE & EVENTS ---

@pytest.fixture
def broadcaster():
    return Broadcaster()


@pytest.fixture
def published(broadcaster):
    """Every event the broadcaster delivers, in order."""
    seen = []
    broadcaster.subscribe(seen.append, admin=True)
    return seen


@pytest.fixture
def queue_engine(session_factory, broadcaster):
    return QueueEngine(session_factory, broadcaster, retry_limit=5, minutes_per_token=10)


@pytest.fixture
def clinic(session_factory):
    """Two doctors (one in the OPD, idle for 11 minutes) and five patients."""
    session = session_factory()
    doctors = [
        Doctor(name="Dr. Meera Nair", department="General Medicine", opd_room="101",
               work_status=WorkStatus.IN_OPD, last_action_at=now() - timedelta(minutes=11)),
        Doctor(name="Dr. Arjun Rao", department="Pediatrics", opd_room="201",
               work_status=WorkStatus.AVAILABLE),
    ]
    patients = [Patient(name=f"Patient {i}", dob=f"1990-01-0{i}") for i in range(1, 6)]
    session.add_all(doctors + patients)
    session.commit()
    data = SimpleNamespace(
        doctor=doctors[0].id,
        other_doctor=doctors[1].id,
        patients=[p.id for p in patients],
    )
    session.close()
    return data


# --- HTTP ---

@pytest.fixture
def auth():
    """auth("doctor") -> Authorization header for a token carrying that role."""
    def header(role: str, username: str = None) -> dict:
        token = create_access_token({"sub": username or f"test_{role}", "role": role})
        return {"Authorization": f"Bearer {token}"}
    return header


@pytest.fixture
def app(db_engine, broadcaster):
    return create_app(bind=db_engine, broadcaster=broadcaster, monitor_enabled=False)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c
