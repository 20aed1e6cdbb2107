"""
Demo data: a handful of doctors, random patients and today's visits.

    python -m hospital_queue.seeder

Visits go through ``QueueEngine.register_visit`` so tokens and queue
entries look exactly like real registrations. Prints bearer tokens for
each role at the end.
"""
import logging
import logging.config
import random

from faker import Faker

from .config import settings
from .database import SessionLocal, init_db
from .engine import QueueEngine
from .events import Broadcaster
from .models import Doctor, Patient, WorkStatus, now
from .security import Role, create_access_token

logger = logging.getLogger(__name__)

DOCTORS = [
    ("Dr. Meera Nair", "General Medicine", "101", WorkStatus.IN_OPD),
    ("Dr. Arjun Rao", "General Medicine", "102", WorkStatus.IN_OPD),
    ("Dr. Farah Khan", "Pediatrics", "201", WorkStatus.AVAILABLE),
    ("Dr. Vikram Shah", "Orthopedics", "305", WorkStatus.IN_OT),
]


def seed_data(patients: int = 30, visits: int = 20, seed: int = None):
    fake = Faker()
    if seed is not None:
        Faker.seed(seed)
        random.seed(seed)

    init_db()
    db = SessionLocal()
    try:
        logger.info("Creating doctors")
        doctors = []
        for name, department, room, work_status in DOCTORS:
            doctor = db.query(Doctor).filter(Doctor.name == name).first()
            if doctor is None:
                doctor = Doctor(
                    name=name, department=department, opd_room=room, work_status=work_status,
                    last_action_at=now() if work_status == WorkStatus.IN_OPD else None,
                )
                db.add(doctor)
            doctors.append(doctor)

        logger.info("Creating %s patients", patients)
        db_patients = [
            Patient(
                name=fake.name(),
                dob=fake.date_of_birth(minimum_age=1, maximum_age=90).isoformat(),
            )
            for _ in range(patients)
        ]
        db.add_all(db_patients)
        db.commit()
        doctor_ids = [d.id for d in doctors if d.work_status == WorkStatus.IN_OPD] or [d.id for d in doctors]
        patient_ids = [p.id for p in db_patients]
    finally:
        db.close()

    logger.info("Registering %s visits", visits)
    engine = QueueEngine(SessionLocal, Broadcaster())
    for _ in range(visits):
        engine.register_visit(
            random.choice(patient_ids),
            random.choice(doctor_ids),
            is_emergency=random.random() < 0.1,
        )

    for role in Role:
        token = create_access_token({"sub": f"demo_{role.value}", "role": role.value})
        print(f"{role.value:>12}: {token}")


if __name__ == "__main__":
    logging.config.dictConfig(settings.LOGGING_CONFIG)
    seed_data()
