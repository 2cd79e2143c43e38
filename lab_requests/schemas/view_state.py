from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from lab_requests.schemas.lab import FailureKind, LabStatus


class ViewPhase(str, Enum):
    LOADING = "loading"
    READY = "ready"
    NOT_FOUND = "not_found"
    LOAD_FAILED = "load_failed"


class LabAction(str, Enum):
    UPDATE = "update"
    COMPLETE = "complete"
    CANCEL = "cancel"


class BadgeSeverity(str, Enum):
    WARNING = "warning"
    DANGER = "danger"
    PRIMARY = "primary"


class Alert(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: FailureKind
    title: str = "Error"
    message: str


class LabViewState(BaseModel):
    """Read-only snapshot of what the presentation shell may render and offer.

    Only `phase` is meaningful while the view is not `ready`; every other field
    keeps its empty default so nothing actionable leaks out of a loading view.
    """

    model_config = ConfigDict(frozen=True)

    phase: ViewPhase
    title: str | None = None
    lab_id: str | None = None
    code: str | None = None
    type: str | None = None
    status: LabStatus | None = None
    badge: BadgeSeverity | None = None
    patient_name: str | None = None

    result: str | None = None
    result_editable: bool = False
    result_invalid: bool = False
    result_feedback: str | None = None

    notes_history: list[str] = Field(default_factory=list)
    show_notes_history: bool = False
    notes_entry_visible: bool = False
    notes_buffer: str = ""

    requested_on: str | None = None
    completed_on: str | None = None
    canceled_on: str | None = None

    actions: list[LabAction] = Field(default_factory=list)
    alert: Alert | None = None
    busy: bool = False

    @classmethod
    def placeholder(cls, phase: ViewPhase) -> "LabViewState":
        return cls(phase=phase)
