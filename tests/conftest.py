import asyncio
from collections.abc import Generator
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from lab_requests.config import settings
from lab_requests.database import Base, get_db, get_session_factory
from lab_requests.errors import NotFound, PersistenceError
from lab_requests.main import app
from lab_requests.schemas.lab import Lab
from lab_requests.schemas.patient import PatientSummary
from lab_requests.services.lifecycle import LabLifecycleManager
from lab_requests.services.permissions import Capability, GrantedPermissions
from lab_requests.services.validation import validate_complete
from lab_requests.services.view_registry import LabViewRegistry, get_view_registry

FIXED_NOW = datetime(2020, 3, 30, 4, 45, 20, 102000, tzinfo=timezone.utc)


class InMemoryLabStore:
    """Lab record store double that records every save and can be held or failed."""

    def __init__(self, *labs: Lab):
        self.labs = {lab.id: lab.model_copy(deep=True) for lab in labs}
        self.saved: list[Lab] = []
        self.find_calls = 0
        self.gate: asyncio.Event | None = None
        self.fail_with: PersistenceError | None = None

    async def find(self, lab_id: str) -> Lab:
        self.find_calls += 1
        if lab_id not in self.labs:
            raise NotFound(f"Lab request {lab_id} not found")
        return self.labs[lab_id].model_copy(deep=True)

    async def save_or_update(self, lab: Lab) -> Lab:
        self.saved.append(lab.model_copy(deep=True))
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None:
            raise self.fail_with
        self.labs[lab.id] = lab.model_copy(deep=True)
        return lab.model_copy(deep=True)


class InMemoryPatients:
    def __init__(self, *patients: PatientSummary):
        self.patients = {p.id: p for p in patients}
        self.gate: asyncio.Event | None = None

    async def find(self, patient_id: str) -> PatientSummary:
        if self.gate is not None:
            await self.gate.wait()
        if patient_id not in self.patients:
            raise NotFound(f"Patient {patient_id} not found")
        return self.patients[patient_id]


@pytest.fixture()
def mock_lab() -> Lab:
    return Lab(
        id="12456",
        code="L-1234",
        status="requested",
        patient="1234",
        type="lab type",
        notes=["lab notes"],
        requested_on="2020-03-30T04:43:20.102Z",
    )


@pytest.fixture()
def mock_patient() -> PatientSummary:
    return PatientSummary(id="1234", full_name="test")


@pytest.fixture()
def patients(mock_patient) -> InMemoryPatients:
    return InMemoryPatients(mock_patient)


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def session_factory(engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture()
def db_session(session_factory) -> Generator:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def view_registry() -> Generator[LabViewRegistry, None, None]:
    registry = LabViewRegistry(max_open_views=10)
    yield registry
    registry.clear()


@pytest.fixture()
def client(db_session, session_factory, view_registry, monkeypatch) -> Generator[TestClient, None, None]:
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    monkeypatch.setattr(settings, "display_timezone", "UTC")
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_view_registry] = lambda: view_registry

    # Tests use an in-memory DB via dependency override; skip app startup side effects.
    original_startup = list(app.router.on_startup)
    app.router.on_startup.clear()
    with TestClient(app) as test_client:
        yield test_client
    app.router.on_startup[:] = original_startup
    app.dependency_overrides.clear()


@pytest.fixture()
def make_store():
    return InMemoryLabStore


@pytest.fixture()
def make_manager(patients):
    def _make(store, granted=(Capability.VIEW_LAB,), validator=validate_complete, lab_id="12456"):
        return LabLifecycleManager(
            lab_id,
            store,
            patients,
            GrantedPermissions(granted),
            validator=validator,
            clock=lambda: FIXED_NOW,
            tz=timezone.utc,
        )

    return _make
