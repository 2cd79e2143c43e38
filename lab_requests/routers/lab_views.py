from fastapi import APIRouter, Depends, HTTPException

from lab_requests.config import settings
from lab_requests.models.user import User
from lab_requests.routers.deps import get_current_user, get_lab_store, get_patient_lookup, get_permissions
from lab_requests.schemas.lab_view import MountViewRequest, TextInput
from lab_requests.services.clock import display_zone
from lab_requests.services.lifecycle import CommitOutcome, CommitStatus, LabLifecycleManager
from lab_requests.services.permissions import GrantedPermissions
from lab_requests.services.stores import SqlLabRecordStore, SqlPatientLookup
from lab_requests.services.view_registry import LabViewRegistry, OpenView, get_view_registry

# Handlers stay async so every intent runs on the event loop that owns the managers.
router = APIRouter(prefix="/api/lab-views", tags=["lab-views"])

COMMITTED_MESSAGES = {
    "update": "Lab request updated",
    "complete": "Lab request completed",
    "cancel": "Lab request canceled",
}


def _view_payload(view: OpenView) -> dict:
    return {
        "view_id": view.view_id,
        "lab_id": view.manager.lab_id,
        "view_state": view.manager.view_state().model_dump(mode="json"),
    }


def _envelope(data: dict, message: str = "Success") -> dict:
    return {"statusCode": 200, "message": message, "data": data}


def _commit_response(view: OpenView, action: str, outcome: CommitOutcome) -> dict:
    if outcome.status is CommitStatus.IGNORED:
        raise HTTPException(status_code=409, detail="Another action on this lab request is still being saved")
    if outcome.status is CommitStatus.DISCARDED:
        raise HTTPException(status_code=410, detail="The lab view was closed before the action finished")

    message = outcome.failure.message if outcome.failure else COMMITTED_MESSAGES[action]
    data = _view_payload(view)
    data["outcome"] = outcome.status.value
    data["navigate_to"] = outcome.navigate_to
    return _envelope(data, message)


@router.post("")
async def open_view(
    payload: MountViewRequest,
    current_user: User = Depends(get_current_user),
    permissions: GrantedPermissions = Depends(get_permissions),
    registry: LabViewRegistry = Depends(get_view_registry),
    store: SqlLabRecordStore = Depends(get_lab_store),
    patients: SqlPatientLookup = Depends(get_patient_lookup),
):
    manager = LabLifecycleManager(
        payload.lab_id,
        store,
        patients,
        permissions,
        tz=display_zone(settings.display_timezone),
    )
    view = registry.open(current_user.id, manager)
    try:
        await manager.mount()
    except Exception:
        registry.discard(view.view_id)
        raise
    return _envelope(_view_payload(view), "Lab view opened")


@router.get("/{view_id}")
async def get_view(
    view_id: str,
    current_user: User = Depends(get_current_user),
    registry: LabViewRegistry = Depends(get_view_registry),
):
    return _envelope(_view_payload(registry.get(view_id, current_user.id)))


@router.put("/{view_id}/result")
async def edit_result(
    view_id: str,
    payload: TextInput,
    current_user: User = Depends(get_current_user),
    registry: LabViewRegistry = Depends(get_view_registry),
):
    view = registry.get(view_id, current_user.id)
    view.manager.edit_result(payload.text)
    return _envelope(_view_payload(view))


@router.put("/{view_id}/notes-buffer")
async def edit_notes_buffer(
    view_id: str,
    payload: TextInput,
    current_user: User = Depends(get_current_user),
    registry: LabViewRegistry = Depends(get_view_registry),
):
    view = registry.get(view_id, current_user.id)
    view.manager.edit_notes_buffer(payload.text)
    return _envelope(_view_payload(view))


@router.post("/{view_id}/update")
async def commit_update(
    view_id: str,
    current_user: User = Depends(get_current_user),
    registry: LabViewRegistry = Depends(get_view_registry),
):
    view = registry.get(view_id, current_user.id)
    outcome = await view.manager.commit_update()
    return _commit_response(view, "update", outcome)


@router.post("/{view_id}/complete")
async def commit_complete(
    view_id: str,
    current_user: User = Depends(get_current_user),
    registry: LabViewRegistry = Depends(get_view_registry),
):
    view = registry.get(view_id, current_user.id)
    outcome = await view.manager.commit_complete()
    return _commit_response(view, "complete", outcome)


@router.post("/{view_id}/cancel")
async def commit_cancel(
    view_id: str,
    current_user: User = Depends(get_current_user),
    registry: LabViewRegistry = Depends(get_view_registry),
):
    view = registry.get(view_id, current_user.id)
    outcome = await view.manager.commit_cancel()
    return _commit_response(view, "cancel", outcome)


@router.delete("/{view_id}")
async def close_view(
    view_id: str,
    current_user: User = Depends(get_current_user),
    registry: LabViewRegistry = Depends(get_view_registry),
):
    registry.close(view_id, current_user.id)
    return _envelope({"view_id": view_id}, "Lab view closed")
