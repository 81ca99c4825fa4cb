"""Assemble runs together with their steps and retries."""

from __future__ import annotations

import asyncio
from typing import Optional

from .exceptions import TrackerValidationError
from .models import RunFilter, WorkflowRun
from .persistence import TrackerRepository


class QueryAggregator:
    """Read side: returns runs hydrated with ordered steps and retries."""

    def __init__(self, repository: TrackerRepository) -> None:
        self._repository = repository

    async def _hydrate(self, run: WorkflowRun) -> WorkflowRun:
        steps = await self._repository.list_steps(run.id)
        retries = await asyncio.gather(
            *(self._repository.list_retries(step.id) for step in steps)
        )
        for step, step_retries in zip(steps, retries):
            step.retries = list(step_retries)
        run.steps = steps
        return run

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        """Return one assembled run, or ``None`` when it does not exist."""
        run = await self._repository.get_run(run_id)
        if run is None:
            return None
        return await self._hydrate(run)

    async def list_runs(self, run_filter: RunFilter) -> list[WorkflowRun]:
        runs = await self._repository.list_runs(run_filter)
        return list(await asyncio.gather(*(self._hydrate(run) for run in runs)))

    async def query(self, run_filter: RunFilter) -> list[WorkflowRun]:
        """Single entry point used by live channels.

        A ``run_id`` selects exactly one run (empty list when absent);
        otherwise the filter applies.
        """
        if run_filter.run_id:
            run = await self.get_run(run_filter.run_id)
            return [run] if run else []
        return await self.list_runs(run_filter)

    async def get_runs_by_ref(
        self,
        ref_id: Optional[str] = None,
        ref_type: Optional[str] = None,
        status: Optional[str] = None,
        limit: Optional[int] = 20,
        offset: Optional[int] = 0,
    ) -> list[WorkflowRun]:
        """Runs for an external reference. One of ``ref_id``/``ref_type`` is required."""
        if not ref_id and not ref_type:
            raise TrackerValidationError("Either ref_id or ref_type must be provided")
        return await self.list_runs(
            RunFilter(
                ref_id=ref_id or None,
                ref_type=ref_type or None,
                status=status or None,
                limit=limit,
                offset=offset,
            )
        )
