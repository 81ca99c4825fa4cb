"""In-memory implementation of the tracker repository."""

from __future__ import annotations

from typing import Any, Dict

from ..exceptions import WorkflowConflictError
from ..models import (
    RetryCreate,
    RunFilter,
    RunPatch,
    StepPatch,
    StepRetry,
    UpsertResult,
    Workflow,
    WorkflowCreate,
    WorkflowRun,
    WorkflowStep,
    utcnow,
)
from .repository import TrackerRepository


def identity_matches(
    workflow: Workflow, name: str, ref_id: str | None, ref_type: str | None
) -> bool:
    """Loose identity match: a stored null ref half matches any lookup value."""
    return (
        workflow.name == name
        and (workflow.ref_id is None or workflow.ref_id == ref_id)
        and (workflow.ref_type is None or workflow.ref_type == ref_type)
    )


class InMemoryTrackerRepository(TrackerRepository):
    """Store tracking state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. No method awaits between reading
    and writing, so each call is atomic on the event loop.
    """

    def __init__(self) -> None:
        self._workflows: Dict[int, Workflow] = {}
        self._runs: Dict[str, WorkflowRun] = {}
        self._steps: Dict[int, WorkflowStep] = {}
        self._retries: Dict[int, StepRetry] = {}
        self._workflow_id = 0
        self._step_id = 0
        self._retry_id = 0

    # ------------------------------------------------------------------
    async def upsert_run(self, patch: RunPatch) -> UpsertResult:
        now = utcnow()
        existing = self._runs.get(patch.id)
        if existing is not None:
            data = existing.model_dump(exclude={"steps"})
            data.update(patch.changes())
            data["updated_at"] = now
            self._runs[patch.id] = WorkflowRun.model_validate(data)
            return UpsertResult(id=patch.id, updated=True)

        self._runs[patch.id] = WorkflowRun.model_validate(patch.insert_values(now))
        return UpsertResult(id=patch.id, inserted=True)

    async def upsert_step(self, patch: StepPatch) -> UpsertResult:
        if patch.id is not None:
            existing = self._steps.get(patch.id)
            if existing is not None:
                data = existing.model_dump(exclude={"retries"})
                data.update(patch.changes())
                self._steps[patch.id] = WorkflowStep.model_validate(data)
            return UpsertResult(id=patch.id, updated=True)

        values = patch.insert_values(utcnow())
        self._step_id += 1
        self._steps[self._step_id] = WorkflowStep(id=self._step_id, **values)
        return UpsertResult(id=self._step_id, inserted=True)

    async def append_retry(self, record: RetryCreate) -> UpsertResult:
        values = record.insert_values(utcnow())
        self._retry_id += 1
        self._retries[self._retry_id] = StepRetry(id=self._retry_id, **values)
        return UpsertResult(id=self._retry_id, inserted=True)

    # ------------------------------------------------------------------
    async def get_run(self, run_id: str) -> WorkflowRun | None:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def list_runs(self, run_filter: RunFilter) -> list[WorkflowRun]:
        runs = [
            run
            for run in self._runs.values()
            if (run_filter.ref_id is None or run.ref_id == run_filter.ref_id)
            and (run_filter.ref_type is None or run.ref_type == run_filter.ref_type)
            and (run_filter.status is None or run.status == run_filter.status)
        ]
        runs.sort(key=lambda r: r.created_at, reverse=True)
        page = runs[run_filter.offset : run_filter.offset + run_filter.limit]
        return [run.model_copy(deep=True) for run in page]

    async def list_steps(self, run_id: str) -> list[WorkflowStep]:
        steps = [s for s in self._steps.values() if s.workflow_run_id == run_id]
        steps.sort(key=lambda s: s.step_index)
        return [step.model_copy(deep=True) for step in steps]

    async def list_retries(self, step_id: int) -> list[StepRetry]:
        retries = [r for r in self._retries.values() if r.workflow_step_id == step_id]
        retries.sort(key=lambda r: r.retry_count)
        return [retry.model_copy() for retry in retries]

    # ------------------------------------------------------------------
    async def get_workflow(self, workflow_id: int) -> Workflow | None:
        wf = self._workflows.get(workflow_id)
        return wf.model_copy(deep=True) if wf else None

    async def find_workflow(
        self, name: str, ref_id: str | None, ref_type: str | None
    ) -> Workflow | None:
        matches = [
            wf
            for wf in self._workflows.values()
            if identity_matches(wf, name, ref_id, ref_type)
        ]
        if not matches:
            return None
        matches.sort(key=lambda wf: (wf.ref_id is None, wf.ref_type is None, wf.id))
        return matches[0].model_copy(deep=True)

    async def insert_workflow(self, record: WorkflowCreate) -> int:
        for wf in self._workflows.values():
            if (wf.name, wf.ref_id, wf.ref_type) == (
                record.name,
                record.ref_id,
                record.ref_type,
            ):
                raise WorkflowConflictError(
                    f"Workflow {record.name!r} already exists for "
                    f"ref_id={record.ref_id!r} ref_type={record.ref_type!r}"
                )
        now = utcnow()
        self._workflow_id += 1
        self._workflows[self._workflow_id] = Workflow(
            id=self._workflow_id,
            created_at=now,
            updated_at=now,
            **record.model_dump(),
        )
        return self._workflow_id

    async def record_workflow_run(self, workflow_id: int, run_id: str) -> None:
        wf = self._workflows.get(workflow_id)
        if wf is None:
            return
        await self.update_workflow(
            workflow_id,
            {
                "status": "Running",
                "last_run_id": run_id,
                "runs_count": wf.runs_count + 1,
                "updated_at": utcnow(),
            },
        )

    async def update_workflow(self, workflow_id: int, fields: dict[str, Any]) -> None:
        wf = self._workflows.get(workflow_id)
        if wf is None:
            return
        data = wf.model_dump()
        data.update(fields)
        self._workflows[workflow_id] = Workflow.model_validate(data)

    async def list_workflows(self) -> list[Workflow]:
        return [wf.model_copy(deep=True) for wf in self._workflows.values()]

    async def close(self) -> None:
        return None
