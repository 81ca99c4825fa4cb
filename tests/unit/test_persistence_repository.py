import uuid
from datetime import datetime, timedelta, timezone

import pytest

import flowtrack.persistence as persistence
from flowtrack.exceptions import StorageError, WorkflowConflictError
from flowtrack.models import (
    RetryCreate,
    RunFilter,
    RunPatch,
    StepPatch,
    WorkflowCreate,
)
from flowtrack.persistence import (
    InMemoryTrackerRepository,
    SQLiteTrackerRepository,
    get_repository,
)

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture(params=["memory", "sqlite"])
def repo(request, tmp_path):
    if request.param == "memory":
        return InMemoryTrackerRepository()
    return SQLiteTrackerRepository(tmp_path / "track.db")


async def _new_run(repo, workflow_id, **fields):
    run_id = str(uuid.uuid4())
    await repo.upsert_run(
        RunPatch(id=run_id, workflow_id=workflow_id, status="Pending", **fields)
    )
    return run_id


@pytest.mark.asyncio
async def test_run_upsert_inserts_then_updates(repo):
    wf_id = await repo.insert_workflow(WorkflowCreate(name="orders"))
    run_id = str(uuid.uuid4())

    first = await repo.upsert_run(
        RunPatch(id=run_id, workflow_id=wf_id, status="Pending", input_params={"a": 1})
    )
    second = await repo.upsert_run(RunPatch(id=run_id, status="Running"))

    assert first.inserted and first.id == run_id
    assert second.updated and second.id == run_id
    run = await repo.get_run(run_id)
    assert run.status == "Running"
    # Fields not supplied by the update are left alone.
    assert run.input_params == {"a": 1}
    assert run.workflow_id == wf_id


@pytest.mark.asyncio
async def test_run_update_can_clear_a_field(repo):
    wf_id = await repo.insert_workflow(WorkflowCreate(name="orders"))
    run_id = await _new_run(repo, wf_id, sleep_until=T0)

    await repo.upsert_run(RunPatch(id=run_id, sleep_until=None))

    run = await repo.get_run(run_id)
    assert run.sleep_until is None


@pytest.mark.asyncio
async def test_step_upsert_inserts_with_generated_id_and_updates(repo):
    wf_id = await repo.insert_workflow(WorkflowCreate(name="orders"))
    run_id = await _new_run(repo, wf_id)

    created = await repo.upsert_step(
        StepPatch(workflow_run_id=run_id, step_name="charge", status="Running", step_index=0)
    )
    assert created.inserted
    updated = await repo.upsert_step(
        StepPatch(id=created.id, status="Completed", state={"ok": True})
    )
    assert updated.updated

    (step,) = await repo.list_steps(run_id)
    assert step.id == created.id
    assert step.status == "Completed"
    assert step.state == {"ok": True}
    assert step.step_name == "charge"
    assert step.started_at is not None


@pytest.mark.asyncio
async def test_step_update_for_unknown_id_is_a_noop(repo):
    result = await repo.upsert_step(StepPatch(id=999, status="Failed"))
    assert result.updated
    assert result.id == 999


@pytest.mark.asyncio
async def test_retries_are_listed_in_retry_order(repo):
    wf_id = await repo.insert_workflow(WorkflowCreate(name="orders"))
    run_id = await _new_run(repo, wf_id)
    step = await repo.upsert_step(
        StepPatch(workflow_run_id=run_id, step_name="charge", status="Retrying", step_index=0)
    )

    for count in (2, 1):
        await repo.append_retry(
            RetryCreate(
                workflow_step_id=step.id,
                retry_count=count,
                retry_at=T0 + timedelta(seconds=count),
                last_error="boom",
            )
        )

    retries = await repo.list_retries(step.id)
    assert [r.retry_count for r in retries] == [1, 2]
    assert retries[0].last_error == "boom"
    assert retries[0].created_at is not None


@pytest.mark.asyncio
async def test_same_retry_appended_twice_is_kept_twice(repo):
    wf_id = await repo.insert_workflow(WorkflowCreate(name="orders"))
    run_id = await _new_run(repo, wf_id)
    step = await repo.upsert_step(
        StepPatch(workflow_run_id=run_id, step_name="charge", status="Retrying", step_index=0)
    )
    record = RetryCreate(
        workflow_step_id=step.id, retry_count=1, retry_at=T0, last_error="boom"
    )

    first = await repo.append_retry(record)
    second = await repo.append_retry(record)

    assert first.inserted and second.inserted
    assert second.id > first.id
    retries = await repo.list_retries(step.id)
    assert sorted(r.id for r in retries) == [first.id, second.id]
    assert {r.retry_count for r in retries} == {1}


@pytest.mark.asyncio
async def test_list_runs_filters_and_orders_newest_first(repo):
    wf_id = await repo.insert_workflow(WorkflowCreate(name="orders"))
    old = await _new_run(repo, wf_id, ref_type="order", created_at=T0)
    new = await _new_run(repo, wf_id, ref_type="order", created_at=T0 + timedelta(hours=1))
    await _new_run(repo, wf_id, ref_type="invoice", created_at=T0 + timedelta(hours=2))

    runs = await repo.list_runs(RunFilter(ref_type="order"))
    assert [r.id for r in runs] == [new, old]

    paged = await repo.list_runs(RunFilter(ref_type="order", limit=1, offset=1))
    assert [r.id for r in paged] == [old]


@pytest.mark.asyncio
async def test_find_workflow_null_refs_match_anything(repo):
    wf_id = await repo.insert_workflow(WorkflowCreate(name="nightly"))

    found = await repo.find_workflow("nightly", "42", "order")
    assert found is not None and found.id == wf_id
    assert await repo.find_workflow("other", None, None) is None


@pytest.mark.asyncio
async def test_find_workflow_prefers_exact_reference(repo):
    await repo.insert_workflow(WorkflowCreate(name="orders"))
    exact = await repo.insert_workflow(
        WorkflowCreate(name="orders", ref_id="42", ref_type="order")
    )

    found = await repo.find_workflow("orders", "42", "order")
    assert found.id == exact


@pytest.mark.asyncio
async def test_duplicate_workflow_identity_conflicts(repo):
    await repo.insert_workflow(WorkflowCreate(name="orders", ref_type="order"))
    with pytest.raises(WorkflowConflictError):
        await repo.insert_workflow(WorkflowCreate(name="orders", ref_type="order"))


@pytest.mark.asyncio
async def test_record_workflow_run_bumps_counter(repo):
    wf_id = await repo.insert_workflow(WorkflowCreate(name="orders", last_run_id="a"))

    await repo.record_workflow_run(wf_id, "b")
    await repo.record_workflow_run(wf_id, "c")

    wf = await repo.get_workflow(wf_id)
    assert wf.runs_count == 3
    assert wf.last_run_id == "c"
    assert wf.status == "Running"


@pytest.mark.asyncio
async def test_sqlite_rejects_run_for_unknown_workflow(tmp_path):
    repo = SQLiteTrackerRepository(tmp_path / "track.db")
    with pytest.raises(StorageError):
        await repo.upsert_run(RunPatch(id="r", workflow_id=404, status="Pending"))
    await repo.close()


@pytest.mark.asyncio
async def test_sqlite_state_survives_reopen(tmp_path):
    db_path = tmp_path / "track.db"
    repo = SQLiteTrackerRepository(db_path)
    wf_id = await repo.insert_workflow(WorkflowCreate(name="orders"))
    run_id = await _new_run(repo, wf_id, metadata={"source": "test"})
    await repo.close()

    reopened = SQLiteTrackerRepository(db_path)
    run = await reopened.get_run(run_id)
    assert run is not None
    assert run.metadata == {"source": "test"}
    await reopened.close()


def test_get_repository_defaults_to_memory(monkeypatch, tmp_path):
    monkeypatch.delenv("FLOWTRACK_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("FLOWTRACK_CONFIG", str(tmp_path / "missing.yaml"))
    persistence.reset_repository()

    repo = get_repository()
    assert isinstance(repo, InMemoryTrackerRepository)
    assert get_repository() is repo
    persistence.reset_repository()


def test_get_repository_uses_sqlite_url(monkeypatch, tmp_path):
    monkeypatch.setenv("FLOWTRACK_DATABASE_URL", f"sqlite://{tmp_path / 'env.db'}")
    persistence.reset_repository()

    repo = get_repository()
    assert isinstance(repo, SQLiteTrackerRepository)
    assert repo.db_path.endswith("env.db")
    persistence.reset_repository()


def test_get_repository_rejects_unknown_scheme():
    with pytest.raises(ValueError):
        get_repository("mysql://localhost/db")
    persistence.reset_repository()


def test_get_repository_reads_url_from_given_config(monkeypatch, tmp_path):
    from flowtrack.config import FlowtrackConfig

    monkeypatch.delenv("FLOWTRACK_DATABASE_URL", raising=False)
    persistence.reset_repository()
    config = FlowtrackConfig(database_url=f"sqlite://{tmp_path / 'cfg.db'}")

    repo = get_repository(config=config)
    assert isinstance(repo, SQLiteTrackerRepository)
    assert repo.db_path.endswith("cfg.db")
    assert get_repository() is repo
    persistence.reset_repository()
