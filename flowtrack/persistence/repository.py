"""Repository abstraction for tracked workflow state."""

from __future__ import annotations

from typing import Any, Protocol

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
)


class TrackerRepository(Protocol):
    """Protocol for workflow tracking persistence backends.

    Every method is a single atomic operation against the record it
    targets. Backend failures surface as ``StorageError``.
    """

    async def upsert_run(self, patch: RunPatch) -> UpsertResult:
        """Update the run with ``patch.id`` if it exists, otherwise insert it."""

    async def upsert_step(self, patch: StepPatch) -> UpsertResult:
        """Update by ``patch.id`` when given, otherwise insert a new step."""

    async def append_retry(self, record: RetryCreate) -> UpsertResult:
        """Insert a retry record. Never updates."""

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        """Return the bare run record (no steps)."""

    async def list_runs(self, run_filter: RunFilter) -> list[WorkflowRun]:
        """Return bare runs matching the filter, newest first."""

    async def list_steps(self, run_id: str) -> list[WorkflowStep]:
        """Return the run's steps ordered by ``step_index``."""

    async def list_retries(self, step_id: int) -> list[StepRetry]:
        """Return the step's retries ordered by ``retry_count``."""

    async def get_workflow(self, workflow_id: int) -> Workflow | None:
        """Retrieve a workflow by id."""

    async def find_workflow(
        self, name: str, ref_id: str | None, ref_type: str | None
    ) -> Workflow | None:
        """Find a workflow by identity key; stored nulls match any value."""

    async def insert_workflow(self, record: WorkflowCreate) -> int:
        """Insert a workflow and return its id.

        Raises ``WorkflowConflictError`` when the identity key is taken.
        """

    async def record_workflow_run(self, workflow_id: int, run_id: str) -> None:
        """Increment the run counter, mark Running and point at ``run_id``."""

    async def update_workflow(self, workflow_id: int, fields: dict[str, Any]) -> None:
        """Apply a partial update to a workflow."""

    async def list_workflows(self) -> list[Workflow]:
        """Return all workflows."""

    async def close(self) -> None:
        """Release backend resources."""
