from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from flowtrack.exceptions import TrackerValidationError
from flowtrack.models import (
    RunFilter,
    RunPatch,
    RunStatus,
    StepPatch,
    TrackerUpdate,
    UpsertResult,
)

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


def test_run_patch_changes_only_include_supplied_fields():
    patch = RunPatch(id="run-1", status="Completed", output_result={"x": 1})
    assert patch.changes() == {"status": "Completed", "output_result": {"x": 1}}


def test_run_patch_rejects_unknown_status():
    with pytest.raises(ValidationError):
        RunPatch(id="run-1", status="Exploded")


def test_run_patch_rejects_unknown_fields():
    with pytest.raises(ValidationError):
        RunPatch(id="run-1", colour="blue")


def test_run_insert_requires_workflow_and_status():
    with pytest.raises(TrackerValidationError, match="workflow_id"):
        RunPatch(id="run-1", status="Pending").insert_values(NOW)


def test_run_insert_defaults_timestamps():
    values = RunPatch(id="run-1", workflow_id=1, status=RunStatus.PENDING).insert_values(NOW)
    assert values["status"] == "Pending"
    assert values["created_at"] == NOW
    assert values["updated_at"] == NOW


def test_naive_datetimes_are_treated_as_utc():
    patch = RunPatch(id="run-1", sleep_until=datetime(2024, 1, 1, 9, 30))
    assert patch.sleep_until.tzinfo is not None
    assert patch.sleep_until.utcoffset() == timedelta(0)


def test_legacy_step_run_reference_is_mapped():
    patch = StepPatch.model_validate(
        {
            "workflow_instance_id": "run-1",
            "step_name": "charge",
            "status": "Running",
            "step_index": 0,
        }
    )
    assert patch.workflow_run_id == "run-1"
    assert "workflow_instance_id" not in patch.changes()


def test_running_step_insert_backfills_started_at():
    patch = StepPatch(workflow_run_id="run-1", step_name="a", status="Running", step_index=0)
    values = patch.insert_values(NOW)
    assert values["started_at"] == NOW
    assert "completed_at" not in values


def test_step_insert_requires_identity_fields():
    with pytest.raises(TrackerValidationError, match="step_index"):
        StepPatch(workflow_run_id="run-1", step_name="a", status="Running").insert_values(NOW)


def test_upsert_result_dict_names_branch():
    assert UpsertResult(id=4, inserted=True).as_dict() == {"inserted": True, "id": 4}
    assert UpsertResult(id="r", updated=True).as_dict() == {"updated": True, "id": "r"}


def test_run_filter_accepts_wire_alias_and_null_paging():
    run_filter = RunFilter.model_validate({"workflowId": "run-9", "limit": None})
    assert run_filter.run_id == "run-9"
    assert run_filter.limit == 20
    assert run_filter.offset == 0


def test_tracker_update_requires_matching_payload():
    with pytest.raises(ValidationError):
        TrackerUpdate.model_validate({"type": "run_update", "step_update": {"id": 1}})


def test_tracker_update_rejects_unknown_type():
    with pytest.raises(ValidationError):
        TrackerUpdate.model_validate({"type": "delete_everything"})


def test_tracker_update_event_keeps_supplied_fields():
    update = TrackerUpdate.model_validate(
        {"type": "run_update", "run_update": {"id": "run-1", "status": "Running"}}
    )
    assert update.to_event() == {
        "type": "run_update",
        "run_update": {"id": "run-1", "status": "Running"},
    }
