"""Pure projection from a lab draft to what the presentation shell may show.

Nothing here touches a store; the lifecycle manager calls it after every state
change and the result can be tested against plain values.
"""

from datetime import tzinfo
from typing import AbstractSet

from lab_requests.schemas.lab import Lab, LabStatus, ValidationFailure
from lab_requests.schemas.patient import PatientSummary
from lab_requests.schemas.view_state import Alert, BadgeSeverity, LabAction, LabViewState, ViewPhase
from lab_requests.services.clock import format_display
from lab_requests.services.permissions import Capability

BADGE_BY_STATUS = {
    LabStatus.REQUESTED: BadgeSeverity.WARNING,
    LabStatus.CANCELED: BadgeSeverity.DANGER,
    LabStatus.COMPLETED: BadgeSeverity.PRIMARY,
}

# Ordered as the buttons are laid out.
ACTION_CAPABILITIES = (
    (LabAction.UPDATE, Capability.VIEW_LAB),
    (LabAction.COMPLETE, Capability.COMPLETE_LAB),
    (LabAction.CANCEL, Capability.CANCEL_LAB),
)


def allowed_actions(status: LabStatus, granted: AbstractSet[Capability]) -> list[LabAction]:
    if status is not LabStatus.REQUESTED:
        return []
    return [action for action, capability in ACTION_CAPABILITIES if capability in granted]


def project_view_state(
    draft: Lab | None,
    patient: PatientSummary | None,
    granted: AbstractSet[Capability],
    failure: ValidationFailure | None = None,
    notes_buffer: str = "",
    tz: tzinfo | None = None,
    busy: bool = False,
) -> LabViewState:
    if draft is None or patient is None:
        return LabViewState.placeholder(ViewPhase.LOADING)

    requested = draft.status is LabStatus.REQUESTED
    field_errors = failure.fields if failure else {}
    alert = Alert(kind=failure.kind, message=failure.message) if failure else None

    return LabViewState(
        phase=ViewPhase.READY,
        title=f"Lab {draft.code}",
        lab_id=draft.id,
        code=draft.code,
        type=draft.type,
        status=draft.status,
        badge=BADGE_BY_STATUS[draft.status],
        patient_name=patient.full_name,
        result=draft.result,
        result_editable=requested,
        result_invalid="result" in field_errors,
        result_feedback=field_errors.get("result"),
        notes_history=list(draft.notes),
        show_notes_history=bool(draft.notes),
        notes_entry_visible=requested,
        notes_buffer=notes_buffer if requested else "",
        requested_on=format_display(draft.requested_on, tz),
        completed_on=format_display(draft.completed_on, tz),
        canceled_on=format_display(draft.canceled_on, tz),
        actions=allowed_actions(draft.status, granted),
        alert=alert,
        busy=busy,
    )
