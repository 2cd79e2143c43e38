from enum import Enum

from pydantic import BaseModel, Field, model_validator


class LabStatus(str, Enum):
    """Lifecycle status of a lab request. Forward-only once it leaves `requested`."""

    REQUESTED = "requested"
    COMPLETED = "completed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self is not LabStatus.REQUESTED


class Lab(BaseModel):
    """A single lab request as exchanged with the lab record store."""

    id: str
    code: str = Field(description="Display identifier, immutable after creation")
    patient: str = Field(description="Identifier of the patient the request is for")
    type: str = Field(description="Free-text test type")
    status: LabStatus = LabStatus.REQUESTED
    result: str | None = None
    notes: list[str] = Field(default_factory=list)
    requested_on: str = Field(description="ISO-8601 timestamp of the request")
    completed_on: str | None = None
    canceled_on: str | None = None

    @model_validator(mode="after")
    def _check_lifecycle_timestamps(self) -> "Lab":
        if self.completed_on and self.canceled_on:
            raise ValueError("completed_on and canceled_on cannot both be set")
        if self.completed_on and self.status is not LabStatus.COMPLETED:
            raise ValueError("completed_on is only allowed on a completed lab request")
        if self.canceled_on and self.status is not LabStatus.CANCELED:
            raise ValueError("canceled_on is only allowed on a canceled lab request")
        return self


class FailureKind(str, Enum):
    VALIDATION = "ValidationError"
    PERSISTENCE = "PersistenceError"


class ValidationFailure(BaseModel):
    """A failed commit attempt, surfaced as an alert for one render cycle."""

    kind: FailureKind = FailureKind.VALIDATION
    message: str
    fields: dict[str, str] = Field(default_factory=dict)
