"""Lifecycle manager for one open lab request view.

A manager exclusively owns the editable draft of a single lab request while a
view is mounted. Edit intents change the draft in memory only. Commit intents
run a pure transition over the draft and hand the resulting entity to the lab
record store in exactly one call; the entity the store returns becomes the new
draft. After every change the view state is re-projected and pushed to the
subscribed listeners.

Everything runs on one event loop. The only suspension points are the initial
fetches and the persistence call of a commit, so plain flags are enough to
serialize commits and to drop results that arrive after unmount.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, tzinfo
from enum import Enum
from typing import Callable

from lab_requests.errors import (
    CommitInProgress,
    LabLockedError,
    NotFound,
    PermissionDenied,
    PersistenceError,
    ViewNotReady,
)
from lab_requests.schemas.lab import FailureKind, Lab, LabStatus, ValidationFailure
from lab_requests.schemas.patient import PatientSummary
from lab_requests.schemas.view_state import LabAction, LabViewState, ViewPhase
from lab_requests.services.clock import Clock, to_iso, utc_now
from lab_requests.services.permissions import Capability, PermissionOracle, resolve_capabilities
from lab_requests.services.stores import LabRecordStore, PatientLookup
from lab_requests.services.validation import LabValidator, validate_complete
from lab_requests.services.view_state import project_view_state

logger = logging.getLogger(__name__)

LAB_LIST_ROUTE = "/labs"

ViewStateListener = Callable[[LabViewState], None]


def lab_detail_route(lab_id: str) -> str:
    return f"{LAB_LIST_ROUTE}/{lab_id}"


class CommitStatus(str, Enum):
    COMMITTED = "committed"
    REJECTED = "rejected"  # validation gate refused, nothing persisted
    FAILED = "failed"  # store refused, draft kept for retry
    IGNORED = "ignored"  # another commit was still in flight
    DISCARDED = "discarded"  # view unmounted before the store answered


@dataclass(frozen=True)
class CommitOutcome:
    status: CommitStatus
    navigate_to: str | None = None
    failure: ValidationFailure | None = None


def apply_update(draft: Lab, notes_buffer: str) -> Lab:
    if not notes_buffer:
        return draft.model_copy(deep=True)
    return draft.model_copy(update={"notes": [*draft.notes, notes_buffer]}, deep=True)


def apply_complete(draft: Lab, now: datetime) -> Lab:
    return draft.model_copy(update={"status": LabStatus.COMPLETED, "completed_on": to_iso(now)}, deep=True)


def apply_cancel(draft: Lab, now: datetime) -> Lab:
    return draft.model_copy(update={"status": LabStatus.CANCELED, "canceled_on": to_iso(now)}, deep=True)


class LabLifecycleManager:
    def __init__(
        self,
        lab_id: str,
        store: LabRecordStore,
        patients: PatientLookup,
        permissions: PermissionOracle,
        validator: LabValidator = validate_complete,
        clock: Clock = utc_now,
        tz: tzinfo | None = None,
    ):
        self.lab_id = lab_id
        self._store = store
        self._patients = patients
        self._permissions = permissions
        self._validator = validator
        self._clock = clock
        self._tz = tz

        self._granted: frozenset[Capability] = frozenset()
        self._phase = ViewPhase.LOADING
        self._draft: Lab | None = None
        self._patient: PatientSummary | None = None
        self._failure: ValidationFailure | None = None
        self._notes_buffer = ""
        self._mounted = True
        self._committing = False
        self._listeners: list[ViewStateListener] = []

    @property
    def phase(self) -> ViewPhase:
        return self._phase

    @property
    def mounted(self) -> bool:
        return self._mounted

    @property
    def busy(self) -> bool:
        return self._committing

    @property
    def draft(self) -> Lab | None:
        return self._draft.model_copy(deep=True) if self._draft else None

    @property
    def patient(self) -> PatientSummary | None:
        return self._patient

    @property
    def notes_buffer(self) -> str:
        return self._notes_buffer

    @property
    def validation_failure(self) -> ValidationFailure | None:
        return self._failure

    def subscribe(self, listener: ViewStateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def view_state(self) -> LabViewState:
        if self._phase is not ViewPhase.READY:
            return LabViewState.placeholder(self._phase)
        return project_view_state(
            self._draft,
            self._patient,
            self._granted,
            failure=self._failure,
            notes_buffer=self._notes_buffer,
            tz=self._tz,
            busy=self._committing,
        )

    def _publish(self) -> None:
        if not self._mounted:
            return
        state = self.view_state()
        for listener in list(self._listeners):
            listener(state)

    async def mount(self) -> LabViewState:
        """Fetch the lab and its patient; the view is ready only once both resolved."""
        if self._phase is not ViewPhase.LOADING:
            return self.view_state()

        self._granted = resolve_capabilities(self._permissions)
        if Capability.VIEW_LAB not in self._granted:
            raise PermissionDenied("You do not have permission to view lab requests")

        self._publish()
        try:
            lab = await self._store.find(self.lab_id)
            if not self._mounted:
                return self.view_state()
            patient = await self._patients.find(lab.patient)
        except NotFound:
            if not self._mounted:
                return self.view_state()
            self._fail_load(ViewPhase.NOT_FOUND)
            raise
        except Exception:
            if not self._mounted:
                logger.debug("Dropping failed fetch for unmounted lab view %s", self.lab_id)
                return self.view_state()
            logger.exception("Could not load lab request %s", self.lab_id)
            self._fail_load(ViewPhase.LOAD_FAILED)
            raise

        if not self._mounted:
            logger.debug("Dropping fetch result for unmounted lab view %s", self.lab_id)
            return self.view_state()

        self._draft = lab
        self._patient = patient
        self._phase = ViewPhase.READY
        self._publish()
        return self.view_state()

    def _fail_load(self, phase: ViewPhase) -> None:
        self._phase = phase
        self._publish()

    def unmount(self) -> None:
        self._mounted = False
        self._listeners.clear()
        self._draft = None
        self._patient = None
        self._failure = None
        self._notes_buffer = ""

    def _ready_draft(self) -> Lab:
        if not self._mounted:
            raise ViewNotReady(f"Lab view for {self.lab_id} has been closed")
        if self._phase is not ViewPhase.READY or self._draft is None:
            raise ViewNotReady(f"Lab request {self.lab_id} is not loaded")
        return self._draft

    def _editable_draft(self) -> Lab:
        draft = self._ready_draft()
        if draft.status.is_terminal:
            raise LabLockedError(f"Lab request {draft.code} is {draft.status.value} and can no longer be changed")
        if self._committing:
            raise CommitInProgress(f"Lab request {draft.code} is being saved; edit again once it finishes")
        return draft

    def _require(self, capability: Capability) -> None:
        if capability not in self._granted:
            raise PermissionDenied(f"Missing capability '{capability.value}'")

    def edit_result(self, text: str) -> None:
        draft = self._editable_draft()
        self._draft = draft.model_copy(update={"result": text})
        self._publish()

    def edit_notes_buffer(self, text: str) -> None:
        self._editable_draft()
        self._notes_buffer = text
        self._publish()

    def _ignored(self, action: LabAction) -> CommitOutcome:
        logger.debug("Ignoring %s on lab request %s: a commit is in flight", action.value, self.lab_id)
        return CommitOutcome(CommitStatus.IGNORED)

    async def commit_update(self) -> CommitOutcome:
        if self._committing:
            return self._ignored(LabAction.UPDATE)
        draft = self._editable_draft()
        self._require(Capability.VIEW_LAB)
        candidate = apply_update(draft, self._notes_buffer)
        return await self._persist(candidate, LabAction.UPDATE, lab_detail_route(draft.id))

    async def commit_complete(self) -> CommitOutcome:
        if self._committing:
            return self._ignored(LabAction.COMPLETE)
        draft = self._editable_draft()
        self._require(Capability.COMPLETE_LAB)

        failure = self._validator(draft)
        if failure is not None:
            self._failure = failure
            logger.warning("Lab request %s failed completion checks: %s", draft.id, failure.message)
            self._publish()
            return CommitOutcome(CommitStatus.REJECTED, failure=failure)
        self._failure = None

        candidate = apply_complete(draft, self._clock())
        return await self._persist(candidate, LabAction.COMPLETE, lab_detail_route(draft.id))

    async def commit_cancel(self) -> CommitOutcome:
        if self._committing:
            return self._ignored(LabAction.CANCEL)
        draft = self._editable_draft()
        self._require(Capability.CANCEL_LAB)
        candidate = apply_cancel(draft, self._clock())
        return await self._persist(candidate, LabAction.CANCEL, LAB_LIST_ROUTE)

    async def _persist(self, candidate: Lab, action: LabAction, destination: str) -> CommitOutcome:
        self._committing = True
        self._publish()
        try:
            saved = await self._store.save_or_update(candidate)
        except PersistenceError as exc:
            self._committing = False
            if not self._mounted:
                return CommitOutcome(CommitStatus.DISCARDED)
            self._failure = ValidationFailure(kind=FailureKind.PERSISTENCE, message=exc.message)
            logger.warning("Could not %s lab request %s: %s", action.value, candidate.id, exc.message)
            self._publish()
            return CommitOutcome(CommitStatus.FAILED, failure=self._failure)
        except BaseException:
            self._committing = False
            raise

        self._committing = False
        if not self._mounted:
            logger.debug("Lab view %s unmounted during %s; result dropped", candidate.id, action.value)
            return CommitOutcome(CommitStatus.DISCARDED)

        self._draft = saved
        self._notes_buffer = ""
        self._failure = None
        logger.info("Committed %s on lab request %s (status=%s)", action.value, saved.id, saved.status.value)
        self._publish()
        return CommitOutcome(CommitStatus.COMMITTED, navigate_to=destination)
