import json
import logging
from typing import Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from starlette.concurrency import run_in_threadpool

from lab_requests.database import SessionLocal, session_scope
from lab_requests.errors import NotFound, PersistenceError
from lab_requests.models.lab import LabRecord
from lab_requests.models.patient import PatientRecord
from lab_requests.schemas.lab import Lab, LabStatus
from lab_requests.schemas.patient import PatientSummary

logger = logging.getLogger(__name__)

IMMUTABLE_FIELDS = ("code", "patient", "type", "requested_on")


class LabRecordStore(Protocol):
    async def find(self, lab_id: str) -> Lab: ...

    async def save_or_update(self, lab: Lab) -> Lab: ...


class PatientLookup(Protocol):
    async def find(self, patient_id: str) -> PatientSummary: ...


def _load_notes(record: LabRecord) -> list[str]:
    # Unreadable history is an error, never an empty list.
    if not record.notes:
        return []
    try:
        parsed = json.loads(record.notes)
    except json.JSONDecodeError:
        parsed = None
    if not isinstance(parsed, list):
        logger.error("Stored notes of lab request %s are not a JSON list", record.id)
        raise PersistenceError(f"Notes of lab request {record.id} are unreadable")
    return [str(item) for item in parsed]


def lab_from_record(record: LabRecord) -> Lab:
    return Lab(
        id=record.id,
        code=record.code,
        patient=record.patient_id,
        type=record.type,
        status=LabStatus(record.status),
        result=record.result,
        notes=_load_notes(record),
        requested_on=record.requested_on,
        completed_on=record.completed_on,
        canceled_on=record.canceled_on,
    )


def _check_transition(current: Lab, incoming: Lab) -> None:
    """Storage-side guard for the lifecycle contract.

    Raises PersistenceError when `incoming` is not a legal successor of the
    stored state. Re-saving an identical terminal record is allowed.
    """
    for field in IMMUTABLE_FIELDS:
        if getattr(current, field) != getattr(incoming, field):
            raise PersistenceError(f"Lab request {current.id}: '{field}' cannot be changed")

    if current.status.is_terminal:
        if incoming.model_dump() != current.model_dump():
            raise PersistenceError(f"Lab request {current.id} is already {current.status.value}")
        return

    if incoming.notes[: len(current.notes)] != current.notes:
        raise PersistenceError(f"Lab request {current.id}: existing notes cannot be modified")
    if incoming.status is LabStatus.COMPLETED and not incoming.completed_on:
        raise PersistenceError(f"Lab request {current.id}: completed_on is required to complete")
    if incoming.status is LabStatus.CANCELED and not incoming.canceled_on:
        raise PersistenceError(f"Lab request {current.id}: canceled_on is required to cancel")


class SqlLabRecordStore:
    """Lab record store over SQLAlchemy, one short-lived session per call."""

    def __init__(self, session_factory: sessionmaker = SessionLocal):
        self._session_factory = session_factory

    async def find(self, lab_id: str) -> Lab:
        return await run_in_threadpool(self._find, lab_id)

    async def save_or_update(self, lab: Lab) -> Lab:
        return await run_in_threadpool(self._save_or_update, lab)

    def _find(self, lab_id: str) -> Lab:
        with self._session_factory() as db:
            record = db.query(LabRecord).filter(LabRecord.id == lab_id).first()
            if not record:
                raise NotFound(f"Lab request {lab_id} not found")
            return lab_from_record(record)

    def _save_or_update(self, lab: Lab) -> Lab:
        try:
            with session_scope(self._session_factory) as db:
                saved = lab_from_record(self._apply(db, lab))
        except SQLAlchemyError as exc:
            logger.exception("Failed to persist lab request %s", lab.id)
            raise PersistenceError(f"Could not save lab request {lab.id}") from exc
        return saved

    def _apply(self, db: Session, lab: Lab) -> LabRecord:
        record = db.query(LabRecord).filter(LabRecord.id == lab.id).with_for_update().first()
        if record is None:
            record = LabRecord(
                id=lab.id,
                code=lab.code,
                patient_id=lab.patient,
                type=lab.type,
                requested_on=lab.requested_on,
            )
            db.add(record)
        else:
            _check_transition(lab_from_record(record), lab)

        record.status = lab.status.value
        record.result = lab.result
        record.notes = json.dumps(lab.notes)
        record.completed_on = lab.completed_on
        record.canceled_on = lab.canceled_on
        db.flush()
        return record


class SqlPatientLookup:
    def __init__(self, session_factory: sessionmaker = SessionLocal):
        self._session_factory = session_factory

    async def find(self, patient_id: str) -> PatientSummary:
        return await run_in_threadpool(self._find, patient_id)

    def _find(self, patient_id: str) -> PatientSummary:
        with self._session_factory() as db:
            record = db.query(PatientRecord).filter(PatientRecord.id == patient_id).first()
            if not record:
                raise NotFound(f"Patient {patient_id} not found")
            return PatientSummary(
                id=record.id,
                full_name=record.full_name,
                code=record.code,
                sex=record.sex,
                date_of_birth=record.date_of_birth,
            )
