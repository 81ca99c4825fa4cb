"""In-process tracker service: the mutation, query and live surfaces."""

from __future__ import annotations

import logging
import uuid
from typing import Any, Optional

from pydantic import ValidationError

from .broadcast import BroadcastHub, HubRegistry
from .config import FlowtrackConfig, load_config
from .exceptions import StorageError, TrackerValidationError
from .models import (
    RetryCreate,
    RunFilter,
    RunPatch,
    RunStatus,
    StepPatch,
    TrackerUpdate,
    UpsertResult,
    WorkflowRun,
)
from .persistence import TrackerRepository, get_repository
from .propagation import StatusPropagator
from .query import QueryAggregator
from .resolver import WorkflowResolver
from .utils.retry import RetryPolicy

logger = logging.getLogger(__name__)


def _validate(model: type, data: Any):
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise TrackerValidationError(str(exc)) from exc


class TrackerService:
    """Composes storage, resolution, propagation, queries and broadcast.

    Mutations are durable first; the matching broadcast is best effort and
    never fails or rolls back a write.
    """

    def __init__(
        self,
        repository: TrackerRepository | None = None,
        config: FlowtrackConfig | None = None,
        hubs: HubRegistry | None = None,
    ) -> None:
        if repository is None:
            repository = get_repository(config=config) if config else get_repository()
        self.config = config or load_config()
        self.repository = repository
        self.resolver = WorkflowResolver(self.repository)
        self.propagator = StatusPropagator(self.repository)
        self.queries = QueryAggregator(self.repository)
        self.hubs = hubs or HubRegistry(
            self.queries,
            send_timeout=self.config.broadcast.send_timeout,
            idle_timeout=self.config.broadcast.idle_timeout,
        )
        self.partition = self.config.broadcast.partition

    def hub(self, partition: Optional[str] = None) -> BroadcastHub:
        return self.hubs.get(partition or self.partition)

    def retry_policy(self, current_retry: int = 0) -> RetryPolicy:
        """Retry policy for tracked steps, built from the configured defaults."""
        return RetryPolicy(**self.config.retry.model_dump(), current_retry=current_retry)

    # ------------------------------------------------------------------
    # Mutations
    async def upsert_run(self, patch: RunPatch | dict[str, Any]) -> UpsertResult:
        patch = _validate(RunPatch, patch)
        try:
            result = await self.repository.upsert_run(patch)
        except StorageError:
            logger.exception(f"Failed to upsert run {patch.id}")
            raise
        if patch.status is not None:
            await self.propagator.propagate(patch)
        return result

    async def upsert_step(self, patch: StepPatch | dict[str, Any]) -> UpsertResult:
        patch = _validate(StepPatch, patch)
        try:
            return await self.repository.upsert_step(patch)
        except StorageError:
            logger.exception(f"Failed to upsert step {patch.step_name!r}")
            raise

    async def append_retry(self, record: RetryCreate | dict[str, Any]) -> UpsertResult:
        record = _validate(RetryCreate, record)
        try:
            return await self.repository.append_retry(record)
        except StorageError:
            logger.exception(f"Failed to record retry for step {record.workflow_step_id}")
            raise

    async def start_workflow(
        self,
        name: str,
        params: Any = None,
        ref_id: Optional[str] = None,
        ref_type: Optional[str] = None,
        metadata: Any = None,
    ) -> dict[str, Any]:
        """Register a new run of ``name`` and return its generated run id."""
        run_id = str(uuid.uuid4())
        params = params if params is not None else {}
        metadata = metadata if metadata is not None else {}
        workflow_id = await self.resolver.resolve(
            name,
            run_id,
            ref_id=ref_id,
            ref_type=ref_type,
            input_params=params,
            metadata=metadata,
        )
        await self.upsert_run(
            RunPatch(
                id=run_id,
                workflow_id=workflow_id,
                status=RunStatus.PENDING,
                ref_id=ref_id or None,
                ref_type=ref_type or None,
                input_params=params,
                output_result={},
                metadata=metadata,
            )
        )
        logger.info(f"Started workflow {name!r} run {run_id}")
        return {"workflowId": run_id, "ref_id": ref_id, "ref_type": ref_type}

    async def apply_update(self, update: TrackerUpdate | dict[str, Any]) -> UpsertResult:
        """Apply a tracker update envelope, then broadcast it."""
        update = _validate(TrackerUpdate, update)
        payload = update.payload
        if isinstance(payload, RunPatch):
            result = await self.upsert_run(payload)
        elif isinstance(payload, StepPatch):
            result = await self.upsert_step(payload)
        else:
            result = await self.append_retry(payload)
        await self.notify(update.to_event())
        return result

    async def notify(self, event: Any, partition: Optional[str] = None) -> int:
        """Broadcast ``event`` to live observers; failures are only logged."""
        try:
            return await self.hubs.broadcast(partition or self.partition, event)
        except Exception:
            logger.exception("Broadcast of tracker update failed")
            return 0

    # ------------------------------------------------------------------
    # Queries
    async def get_workflow_run(self, run_id: str) -> WorkflowRun | None:
        return await self.queries.get_run(run_id)

    async def list_runs(
        self,
        status: Optional[str] = None,
        limit: Optional[int] = 20,
        offset: Optional[int] = 0,
    ) -> list[WorkflowRun]:
        run_filter = _validate(
            RunFilter, {"status": status or None, "limit": limit, "offset": offset}
        )
        return await self.queries.list_runs(run_filter)

    async def get_runs_by_ref(
        self,
        ref_id: Optional[str] = None,
        ref_type: Optional[str] = None,
        status: Optional[str] = None,
        limit: Optional[int] = 20,
        offset: Optional[int] = 0,
    ) -> list[WorkflowRun]:
        _validate(RunFilter, {"status": status or None, "limit": limit, "offset": offset})
        return await self.queries.get_runs_by_ref(ref_id, ref_type, status, limit, offset)

    async def query(self, params: RunFilter | dict[str, Any]) -> list[WorkflowRun]:
        return await self.queries.query(_validate(RunFilter, params))

    # ------------------------------------------------------------------
    # Step tracking reporter interface
    async def report_step(self, patch: StepPatch) -> UpsertResult:
        return await self.apply_update({"type": "step_update", "step_update": patch})

    async def report_retry(self, record: RetryCreate) -> UpsertResult:
        return await self.apply_update({"type": "retry_update", "retry_update": record})

    async def close(self) -> None:
        await self.hubs.close()
        await self.repository.close()
