import asyncio
from datetime import datetime, timezone

import pytest

from lab_requests.errors import (
    CommitInProgress,
    LabLockedError,
    NotFound,
    PermissionDenied,
    PersistenceError,
    ViewNotReady,
)
from lab_requests.schemas.lab import FailureKind, LabStatus, ValidationFailure
from lab_requests.schemas.view_state import LabAction, ViewPhase
from lab_requests.services.lifecycle import (
    LAB_LIST_ROUTE,
    CommitStatus,
    apply_cancel,
    apply_complete,
    apply_update,
    lab_detail_route,
)
from lab_requests.services.permissions import Capability
from lab_requests.services.validation import RESULT_REQUIRED_TO_COMPLETE, UNABLE_TO_COMPLETE

EXPECTED_NOW = "2020-03-30T04:45:20.102Z"
ALL = (Capability.VIEW_LAB, Capability.COMPLETE_LAB, Capability.CANCEL_LAB)


def test_apply_update_appends_buffer_without_touching_the_original(mock_lab):
    updated = apply_update(mock_lab, "expected notes")

    assert updated.notes == ["lab notes", "expected notes"]
    assert mock_lab.notes == ["lab notes"]
    assert updated.status is LabStatus.REQUESTED


def test_apply_update_with_empty_buffer_keeps_notes(mock_lab):
    assert apply_update(mock_lab, "").notes == ["lab notes"]


def test_apply_complete_and_cancel_stamp_their_own_timestamp(mock_lab):
    now = datetime(2020, 3, 30, 4, 45, 20, 102000, tzinfo=timezone.utc)

    completed = apply_complete(mock_lab, now)
    canceled = apply_cancel(mock_lab, now)

    assert (completed.status, completed.completed_on, completed.canceled_on) == (LabStatus.COMPLETED, EXPECTED_NOW, None)
    assert (canceled.status, canceled.canceled_on, canceled.completed_on) == (LabStatus.CANCELED, EXPECTED_NOW, None)
    assert mock_lab.status is LabStatus.REQUESTED


def test_routes():
    assert lab_detail_route("12456") == "/labs/12456"
    assert LAB_LIST_ROUTE == "/labs"


@pytest.mark.asyncio
async def test_mount_exposes_ready_view(make_store, make_manager, mock_lab):
    manager = make_manager(make_store(mock_lab))
    assert manager.view_state().phase is ViewPhase.LOADING

    state = await manager.mount()

    assert state.phase is ViewPhase.READY
    assert state.patient_name == "test"
    assert state.actions == [LabAction.UPDATE]


@pytest.mark.asyncio
async def test_view_stays_loading_until_patient_resolves(make_store, make_manager, mock_lab, patients):
    patients.gate = asyncio.Event()
    store = make_store(mock_lab)
    manager = make_manager(store, granted=ALL)

    mounting = asyncio.create_task(manager.mount())
    await asyncio.sleep(0)
    await asyncio.sleep(0)

    assert store.find_calls == 1
    state = manager.view_state()
    assert state.phase is ViewPhase.LOADING
    assert state.actions == []
    with pytest.raises(ViewNotReady):
        manager.edit_result("too early")

    patients.gate.set()
    await mounting
    assert manager.view_state().phase is ViewPhase.READY


@pytest.mark.asyncio
async def test_mount_without_view_permission_is_denied(make_store, make_manager, mock_lab):
    manager = make_manager(make_store(mock_lab), granted=())

    with pytest.raises(PermissionDenied):
        await manager.mount()


@pytest.mark.asyncio
async def test_unknown_lab_puts_view_in_not_found(make_store, make_manager):
    manager = make_manager(make_store(), lab_id="missing")

    with pytest.raises(NotFound):
        await manager.mount()

    assert manager.phase is ViewPhase.NOT_FOUND
    assert manager.view_state().actions == []


@pytest.mark.asyncio
async def test_unexpected_fetch_error_puts_view_in_load_failed(make_store, make_manager, mock_lab):
    store = make_store(mock_lab)

    async def broken_find(lab_id):
        raise RuntimeError("connection reset")

    store.find = broken_find
    manager = make_manager(store)

    with pytest.raises(RuntimeError):
        await manager.mount()
    assert manager.phase is ViewPhase.LOAD_FAILED


@pytest.mark.asyncio
async def test_unmount_during_fetch_discards_the_result(make_store, make_manager, mock_lab, patients):
    patients.gate = asyncio.Event()
    manager = make_manager(make_store(mock_lab))
    seen = []
    manager.subscribe(seen.append)

    mounting = asyncio.create_task(manager.mount())
    await asyncio.sleep(0)
    manager.unmount()
    patients.gate.set()
    await mounting

    assert manager.draft is None
    assert manager.phase is ViewPhase.LOADING
    assert all(state.phase is ViewPhase.LOADING for state in seen)


@pytest.mark.asyncio
async def test_scenario_a_complete_without_result_is_rejected(make_store, make_manager, mock_lab):
    store = make_store(mock_lab)
    manager = make_manager(store, granted=ALL)
    await manager.mount()

    outcome = await manager.commit_complete()

    assert outcome.status is CommitStatus.REJECTED
    assert outcome.navigate_to is None
    assert store.saved == []
    state = manager.view_state()
    assert state.alert.message == UNABLE_TO_COMPLETE
    assert state.alert.kind is FailureKind.VALIDATION
    assert state.result_invalid is True
    assert state.result_feedback == RESULT_REQUIRED_TO_COMPLETE
    assert state.status is LabStatus.REQUESTED


@pytest.mark.asyncio
async def test_injected_validator_replaces_default_rules(make_store, make_manager, mock_lab):
    expected = ValidationFailure(message="some message", fields={"result": "some result feedback"})
    store = make_store(mock_lab)
    manager = make_manager(store, granted=ALL, validator=lambda draft: expected)
    await manager.mount()
    manager.edit_result("a perfectly good result")

    outcome = await manager.commit_complete()

    assert outcome.failure == expected
    assert store.saved == []
    state = manager.view_state()
    assert state.alert.title == "Error"
    assert state.alert.message == "some message"
    assert state.result_invalid is True


@pytest.mark.asyncio
async def test_scenario_b_complete_with_result(make_store, make_manager, mock_lab):
    store = make_store(mock_lab)
    manager = make_manager(store, granted=ALL)
    await manager.mount()

    manager.edit_result("expected result")
    outcome = await manager.commit_complete()

    assert outcome.status is CommitStatus.COMMITTED
    assert outcome.navigate_to == "/labs/12456"
    assert len(store.saved) == 1
    assert store.saved[0].model_dump() == mock_lab.model_copy(
        update={"result": "expected result", "status": LabStatus.COMPLETED, "completed_on": EXPECTED_NOW}
    ).model_dump()
    state = manager.view_state()
    assert state.status is LabStatus.COMPLETED
    assert state.actions == []
    assert state.result_editable is False
    assert state.completed_on == "2020-03-30 04:45 AM"


@pytest.mark.asyncio
async def test_passing_gate_clears_stale_failure(make_store, make_manager, mock_lab):
    store = make_store(mock_lab)
    manager = make_manager(store, granted=ALL)
    await manager.mount()
    await manager.commit_complete()

    manager.edit_result("expected result")
    assert manager.validation_failure is not None

    await manager.commit_complete()
    assert manager.validation_failure is None
    assert manager.view_state().alert is None


@pytest.mark.asyncio
async def test_scenario_c_update_appends_notes(make_store, make_manager, mock_lab):
    store = make_store(mock_lab)
    manager = make_manager(store)
    await manager.mount()

    manager.edit_result("expected result")
    manager.edit_notes_buffer("expected notes")
    outcome = await manager.commit_update()

    assert outcome.status is CommitStatus.COMMITTED
    assert outcome.navigate_to == "/labs/12456"
    assert len(store.saved) == 1
    assert store.saved[0].model_dump() == mock_lab.model_copy(
        update={"result": "expected result", "notes": ["lab notes", "expected notes"]}
    ).model_dump()
    assert manager.notes_buffer == ""
    assert manager.view_state().status is LabStatus.REQUESTED


@pytest.mark.asyncio
async def test_update_twice_with_empty_buffer_appends_nothing_more(make_store, make_manager, mock_lab):
    store = make_store(mock_lab)
    manager = make_manager(store)
    await manager.mount()

    manager.edit_notes_buffer("expected notes")
    await manager.commit_update()
    await manager.commit_update()

    assert [len(saved.notes) for saved in store.saved] == [2, 2]
    assert manager.draft.notes == ["lab notes", "expected notes"]


@pytest.mark.asyncio
async def test_scenario_d_cancel_navigates_to_list(make_store, make_manager, mock_lab):
    store = make_store(mock_lab)
    manager = make_manager(store, granted=ALL)
    await manager.mount()

    manager.edit_result("expected result")
    outcome = await manager.commit_cancel()

    assert outcome.status is CommitStatus.COMMITTED
    assert outcome.navigate_to == "/labs"
    assert len(store.saved) == 1
    assert store.saved[0].model_dump() == mock_lab.model_copy(
        update={"result": "expected result", "status": LabStatus.CANCELED, "canceled_on": EXPECTED_NOW}
    ).model_dump()
    assert store.saved[0].completed_on is None


@pytest.mark.asyncio
async def test_cancel_skips_validation(make_store, make_manager, mock_lab):
    def refuse_everything(draft):
        raise AssertionError("validator must not run on cancel")

    store = make_store(mock_lab)
    manager = make_manager(store, granted=ALL, validator=refuse_everything)
    await manager.mount()

    outcome = await manager.commit_cancel()
    assert outcome.status is CommitStatus.COMMITTED


@pytest.mark.asyncio
async def test_scenario_e_completed_lab_is_terminal(make_store, make_manager, mock_lab):
    lab = mock_lab.model_copy(update={"status": LabStatus.COMPLETED, "result": "done"})
    store = make_store(lab)
    manager = make_manager(store, granted=ALL)
    state = await manager.mount()

    assert state.actions == []
    assert state.notes_entry_visible is False
    assert state.result_editable is False

    with pytest.raises(LabLockedError):
        manager.edit_result("changed")
    with pytest.raises(LabLockedError):
        manager.edit_notes_buffer("more")
    for commit in (manager.commit_update, manager.commit_complete, manager.commit_cancel):
        with pytest.raises(LabLockedError):
            await commit()
    assert store.saved == []


@pytest.mark.asyncio
async def test_no_transition_out_of_canceled(make_store, make_manager, mock_lab):
    store = make_store(mock_lab)
    manager = make_manager(store, granted=ALL)
    await manager.mount()
    await manager.commit_cancel()

    manager_draft = manager.draft
    assert manager_draft.canceled_on == EXPECTED_NOW
    with pytest.raises(LabLockedError):
        await manager.commit_complete()
    assert manager.draft.completed_on is None
    assert len(store.saved) == 1


@pytest.mark.asyncio
async def test_commit_without_capability_is_denied(make_store, make_manager, mock_lab):
    store = make_store(mock_lab)
    manager = make_manager(store, granted=(Capability.VIEW_LAB,))
    await manager.mount()
    manager.edit_result("expected result")

    with pytest.raises(PermissionDenied):
        await manager.commit_complete()
    with pytest.raises(PermissionDenied):
        await manager.commit_cancel()
    assert store.saved == []


@pytest.mark.asyncio
async def test_persistence_failure_keeps_edits_for_retry(make_store, make_manager, mock_lab):
    store = make_store(mock_lab)
    store.fail_with = PersistenceError("database is locked")
    manager = make_manager(store)
    await manager.mount()
    manager.edit_result("expected result")
    manager.edit_notes_buffer("expected notes")

    outcome = await manager.commit_update()

    assert outcome.status is CommitStatus.FAILED
    assert outcome.navigate_to is None
    state = manager.view_state()
    assert state.alert.kind is FailureKind.PERSISTENCE
    assert state.alert.message == "database is locked"
    assert state.result_invalid is False
    assert state.result == "expected result"
    assert state.notes_buffer == "expected notes"
    assert state.notes_history == ["lab notes"]
    assert state.busy is False

    store.fail_with = None
    retry = await manager.commit_update()

    assert retry.status is CommitStatus.COMMITTED
    assert store.saved[-1].notes == ["lab notes", "expected notes"]
    assert manager.view_state().alert is None


@pytest.mark.asyncio
async def test_failed_complete_leaves_lab_requested(make_store, make_manager, mock_lab):
    store = make_store(mock_lab)
    store.fail_with = PersistenceError("disk full")
    manager = make_manager(store, granted=ALL)
    await manager.mount()
    manager.edit_result("expected result")

    outcome = await manager.commit_complete()

    assert outcome.status is CommitStatus.FAILED
    state = manager.view_state()
    assert state.status is LabStatus.REQUESTED
    assert state.completed_on is None
    assert LabAction.COMPLETE in state.actions


@pytest.mark.asyncio
async def test_new_failure_replaces_previous_alert(make_store, make_manager, mock_lab):
    store = make_store(mock_lab)
    manager = make_manager(store, granted=ALL)
    await manager.mount()
    await manager.commit_complete()
    assert manager.view_state().alert.kind is FailureKind.VALIDATION

    store.fail_with = PersistenceError("store unavailable")
    await manager.commit_cancel()

    alert = manager.view_state().alert
    assert alert.kind is FailureKind.PERSISTENCE
    assert alert.message == "store unavailable"


@pytest.mark.asyncio
async def test_clicks_during_a_commit_are_ignored(make_store, make_manager, mock_lab):
    store = make_store(mock_lab)
    store.gate = asyncio.Event()
    manager = make_manager(store, granted=ALL)
    await manager.mount()
    manager.edit_result("expected result")

    first = asyncio.create_task(manager.commit_complete())
    await asyncio.sleep(0)
    assert manager.busy is True
    assert manager.view_state().busy is True

    assert (await manager.commit_complete()).status is CommitStatus.IGNORED
    assert (await manager.commit_update()).status is CommitStatus.IGNORED
    assert (await manager.commit_cancel()).status is CommitStatus.IGNORED

    store.gate.set()
    outcome = await first

    assert outcome.status is CommitStatus.COMMITTED
    assert len(store.saved) == 1
    assert manager.busy is False


@pytest.mark.asyncio
async def test_edits_during_a_commit_are_refused_and_nothing_is_lost(make_store, make_manager, mock_lab):
    store = make_store(mock_lab)
    store.gate = asyncio.Event()
    manager = make_manager(store)
    await manager.mount()
    manager.edit_notes_buffer("first note")

    commit = asyncio.create_task(manager.commit_update())
    await asyncio.sleep(0)

    with pytest.raises(CommitInProgress):
        manager.edit_result("typed while saving")
    with pytest.raises(CommitInProgress):
        manager.edit_notes_buffer("second note")
    assert manager.notes_buffer == "first note"

    store.gate.set()
    outcome = await commit

    assert outcome.status is CommitStatus.COMMITTED
    assert manager.draft.notes == ["lab notes", "first note"]
    assert manager.draft.result is None

    manager.edit_result("typed while saving")
    manager.edit_notes_buffer("second note")
    assert manager.draft.result == "typed while saving"
    assert manager.notes_buffer == "second note"


@pytest.mark.asyncio
async def test_unmount_during_commit_discards_the_result(make_store, make_manager, mock_lab):
    store = make_store(mock_lab)
    store.gate = asyncio.Event()
    manager = make_manager(store)
    await manager.mount()
    manager.edit_notes_buffer("expected notes")

    commit = asyncio.create_task(manager.commit_update())
    await asyncio.sleep(0)
    manager.unmount()
    store.gate.set()
    outcome = await commit

    assert outcome.status is CommitStatus.DISCARDED
    assert outcome.navigate_to is None
    assert manager.draft is None
    with pytest.raises(ViewNotReady):
        await manager.commit_update()


@pytest.mark.asyncio
async def test_listeners_receive_every_change(make_store, make_manager, mock_lab):
    store = make_store(mock_lab)
    manager = make_manager(store)
    seen = []
    unsubscribe = manager.subscribe(seen.append)

    await manager.mount()
    manager.edit_result("r")
    manager.edit_notes_buffer("n")

    assert [state.phase for state in seen] == [ViewPhase.LOADING, ViewPhase.READY, ViewPhase.READY, ViewPhase.READY]
    assert seen[-1].result == "r"
    assert seen[-1].notes_buffer == "n"

    unsubscribe()
    manager.edit_result("ignored by listener")
    assert len(seen) == 4


@pytest.mark.asyncio
async def test_completed_and_canceled_never_both_set(make_store, make_manager, mock_lab):
    store = make_store(mock_lab)
    manager = make_manager(store, granted=ALL)
    await manager.mount()
    manager.edit_result("expected result")
    await manager.commit_complete()

    for saved in store.saved:
        assert not (saved.completed_on and saved.canceled_on)
