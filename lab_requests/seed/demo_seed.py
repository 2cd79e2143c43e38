import json
import logging
from datetime import date

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from lab_requests.database import SessionLocal, session_scope
from lab_requests.models.lab import LabRecord
from lab_requests.models.patient import PatientRecord
from lab_requests.schemas.lab import LabStatus

logger = logging.getLogger(__name__)

DEMO_PATIENT = {
    "id": "demo-patient-0001",
    "code": "P-00001",
    "given_name": "Jane",
    "family_name": "Doe",
    "full_name": "Jane Doe",
    "sex": "female",
    "date_of_birth": date(1984, 6, 2),
}

DEMO_LABS = [
    {"id": "demo-lab-0001", "code": "L-00001", "type": "Complete Blood Count", "requested_on": "2024-01-15T08:30:00.000Z"},
    {"id": "demo-lab-0002", "code": "L-00002", "type": "Lipid Panel", "requested_on": "2024-01-15T08:32:00.000Z"},
]


def seed_demo_data(session_factory: sessionmaker = SessionLocal) -> int:
    """Insert the demo patient and its requested labs; returns how many labs were added."""
    added = 0
    with session_scope(session_factory) as db:
        if db.get(PatientRecord, DEMO_PATIENT["id"]) is None:
            db.add(PatientRecord(**DEMO_PATIENT))

        existing = set(db.scalars(select(LabRecord.code)))
        for item in DEMO_LABS:
            if item["code"] in existing:
                continue
            db.add(
                LabRecord(
                    patient_id=DEMO_PATIENT["id"],
                    status=LabStatus.REQUESTED.value,
                    notes=json.dumps([]),
                    **item,
                )
            )
            added += 1

    if added:
        logger.info("Seeded %d demo lab requests", added)
    return added
