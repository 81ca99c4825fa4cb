"""Mirror settled run statuses onto the parent workflow."""

from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel

from .models import SETTLED_STATUSES, RunPatch, RunStatus, utcnow
from .persistence import TrackerRepository

logger = logging.getLogger(__name__)


class PropagationResult(BaseModel):
    updated: bool = False
    skipped: bool = False
    workflow_id: int | None = None
    reason: str | None = None


class StatusPropagator:
    """Copy a run's settled status (and final result) up to its workflow.

    Pending and Running are not mirrored, so ordinary step progress does
    not flap the workflow's displayed status.
    """

    def __init__(self, repository: TrackerRepository) -> None:
        self._repository = repository

    async def propagate(self, patch: RunPatch) -> PropagationResult:
        if patch.status not in SETTLED_STATUSES:
            return PropagationResult(skipped=True, reason="status not settled")

        run = await self._repository.get_run(patch.id)
        if run is None or run.workflow_id is None:
            logger.warning(
                f"Skipping status propagation for run {patch.id}: run not found"
            )
            return PropagationResult(skipped=True, reason="run not found")

        now = utcnow()
        fields: dict[str, Any] = {"status": patch.status, "updated_at": now}
        if patch.status == RunStatus.COMPLETED.value:
            output = patch.output_result
            if output is None:
                output = run.output_result
            # Neither carries a result: the workflow keeps its current one.
            if output is not None:
                fields["output_result"] = output
            fields["completed_at"] = patch.completed_at or now

        await self._repository.update_workflow(run.workflow_id, fields)
        return PropagationResult(updated=True, workflow_id=run.workflow_id)
