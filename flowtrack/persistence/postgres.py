"""PostgreSQL implementation of the tracker repository."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import asyncpg

from ..exceptions import StorageError, WorkflowConflictError
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
from ._sql import (
    FIND_WORKFLOW_ORDER,
    IDENTITY_INDEX,
    decode_row,
    encode_values,
    run_filter_clause,
)
from .repository import TrackerRepository

logger = logging.getLogger(__name__)

SCHEMA = f"""
CREATE TABLE IF NOT EXISTS workflow (
    id SERIAL PRIMARY KEY,
    name TEXT NOT NULL,
    status TEXT,
    input_params JSONB NOT NULL DEFAULT '{{}}',
    output_result JSONB NOT NULL DEFAULT '{{}}',
    metadata JSONB NOT NULL DEFAULT '{{}}',
    last_run_id TEXT,
    ref_id TEXT,
    ref_type TEXT,
    runs_count INTEGER DEFAULT 0,
    created_at TIMESTAMPTZ DEFAULT now(),
    updated_at TIMESTAMPTZ DEFAULT now(),
    completed_at TIMESTAMPTZ
);
CREATE UNIQUE INDEX IF NOT EXISTS {IDENTITY_INDEX}
    ON workflow (name, COALESCE(ref_id, ''), COALESCE(ref_type, ''));

CREATE TABLE IF NOT EXISTS workflow_runs (
    id TEXT PRIMARY KEY,
    workflow_id INTEGER NOT NULL REFERENCES workflow (id),
    status TEXT NOT NULL,
    ref_id TEXT,
    ref_type TEXT,
    input_params JSONB NOT NULL DEFAULT '{{}}',
    output_result JSONB NOT NULL DEFAULT '{{}}',
    metadata JSONB NOT NULL DEFAULT '{{}}',
    created_at TIMESTAMPTZ DEFAULT now(),
    updated_at TIMESTAMPTZ DEFAULT now(),
    completed_at TIMESTAMPTZ,
    sleep_until TIMESTAMPTZ
);

CREATE TABLE IF NOT EXISTS workflow_steps (
    id SERIAL PRIMARY KEY,
    workflow_run_id TEXT NOT NULL REFERENCES workflow_runs (id),
    step_name TEXT NOT NULL,
    status TEXT NOT NULL,
    step_index INTEGER NOT NULL,
    state JSONB,
    started_at TIMESTAMPTZ,
    completed_at TIMESTAMPTZ
);

CREATE TABLE IF NOT EXISTS workflow_step_retries (
    id SERIAL PRIMARY KEY,
    workflow_step_id INTEGER NOT NULL REFERENCES workflow_steps (id),
    retry_count INTEGER NOT NULL DEFAULT 0,
    retry_at TIMESTAMPTZ NOT NULL,
    last_error TEXT,
    created_at TIMESTAMPTZ DEFAULT now()
);

CREATE INDEX IF NOT EXISTS idx_workflow_runs_status ON workflow_runs (status);
CREATE INDEX IF NOT EXISTS idx_workflow_runs_ref_id ON workflow_runs (ref_id);
CREATE INDEX IF NOT EXISTS idx_workflow_runs_ref_type ON workflow_runs (ref_type);
CREATE INDEX IF NOT EXISTS idx_workflow_runs_workflow_id ON workflow_runs (workflow_id);
CREATE INDEX IF NOT EXISTS idx_workflow_steps_run_id ON workflow_steps (workflow_run_id);
CREATE INDEX IF NOT EXISTS idx_workflow_steps_status ON workflow_steps (status);
CREATE INDEX IF NOT EXISTS idx_step_retries_step_id ON workflow_step_retries (workflow_step_id);
CREATE INDEX IF NOT EXISTS idx_step_retries_retry_at ON workflow_step_retries (retry_at);
"""


def _dollar(position: int) -> str:
    return f"${position}"


class PostgresTrackerRepository(TrackerRepository):
    """Persist tracking state using PostgreSQL."""

    def __init__(self, dsn: str, min_size: int = 1, max_size: int = 10):
        self._dsn = dsn
        self._min_size = min_size
        self._max_size = max_size
        self._pool: asyncpg.Pool | None = None

    async def _ensure_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            pool = await asyncpg.create_pool(
                self._dsn, min_size=self._min_size, max_size=self._max_size
            )
            async with pool.acquire() as conn:
                await conn.execute(SCHEMA)
            self._pool = pool
        return self._pool

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[asyncpg.Connection]:
        try:
            pool = await self._ensure_pool()
            async with pool.acquire() as conn:
                yield conn
        except asyncpg.PostgresError as exc:
            raise StorageError(f"PostgreSQL operation failed: {exc}") from exc
        except OSError as exc:
            raise StorageError(f"PostgreSQL unavailable: {exc}") from exc

    # ------------------------------------------------------------------
    # Helper methods
    @staticmethod
    async def _insert(
        conn: asyncpg.Connection, table: str, values: dict[str, Any]
    ) -> Any:
        encoded = encode_values(values, iso_datetimes=False)
        columns = ", ".join(encoded)
        placeholders = ", ".join(_dollar(i) for i in range(1, len(encoded) + 1))
        return await conn.fetchval(
            f"INSERT INTO {table} ({columns}) VALUES ({placeholders}) RETURNING id",
            *encoded.values(),
        )

    @staticmethod
    async def _update(
        conn: asyncpg.Connection, table: str, key: Any, values: dict[str, Any]
    ) -> None:
        if not values:
            return
        encoded = encode_values(values, iso_datetimes=False)
        set_clause = ", ".join(
            f"{column} = {_dollar(i)}" for i, column in enumerate(encoded, start=1)
        )
        await conn.execute(
            f"UPDATE {table} SET {set_clause} WHERE id = {_dollar(len(encoded) + 1)}",
            *encoded.values(),
            key,
        )

    # ------------------------------------------------------------------
    # Mutations
    async def upsert_run(self, patch: RunPatch) -> UpsertResult:
        now = utcnow()
        async with self._connect() as conn:
            async with conn.transaction():
                exists = await conn.fetchval(
                    "SELECT id FROM workflow_runs WHERE id = $1 FOR UPDATE", patch.id
                )
                if not exists:
                    # FOR UPDATE locks nothing when the row is missing, so a
                    # concurrent first write can win the insert.
                    try:
                        async with conn.transaction():
                            await self._insert(
                                conn, "workflow_runs", patch.insert_values(now)
                            )
                        return UpsertResult(id=patch.id, inserted=True)
                    except asyncpg.UniqueViolationError:
                        logger.info(f"Run {patch.id} was inserted concurrently; updating it")
                await self._update(
                    conn, "workflow_runs", patch.id, {**patch.changes(), "updated_at": now}
                )
                return UpsertResult(id=patch.id, updated=True)

    async def upsert_step(self, patch: StepPatch) -> UpsertResult:
        async with self._connect() as conn:
            if patch.id is not None:
                await self._update(conn, "workflow_steps", patch.id, patch.changes())
                return UpsertResult(id=patch.id, updated=True)
            step_id = await self._insert(
                conn, "workflow_steps", patch.insert_values(utcnow())
            )
            return UpsertResult(id=step_id, inserted=True)

    async def append_retry(self, record: RetryCreate) -> UpsertResult:
        async with self._connect() as conn:
            retry_id = await self._insert(
                conn, "workflow_step_retries", record.insert_values(utcnow())
            )
            return UpsertResult(id=retry_id, inserted=True)

    # ------------------------------------------------------------------
    # Queries
    async def get_run(self, run_id: str) -> WorkflowRun | None:
        async with self._connect() as conn:
            row = await conn.fetchrow("SELECT * FROM workflow_runs WHERE id = $1", run_id)
        return WorkflowRun.model_validate(decode_row(row)) if row else None

    async def list_runs(self, run_filter: RunFilter) -> list[WorkflowRun]:
        tail, params = run_filter_clause(run_filter, _dollar)
        async with self._connect() as conn:
            rows = await conn.fetch(f"SELECT * FROM workflow_runs {tail}", *params)
        return [WorkflowRun.model_validate(decode_row(r)) for r in rows]

    async def list_steps(self, run_id: str) -> list[WorkflowStep]:
        async with self._connect() as conn:
            rows = await conn.fetch(
                "SELECT * FROM workflow_steps WHERE workflow_run_id = $1 ORDER BY step_index ASC",
                run_id,
            )
        return [WorkflowStep.model_validate(decode_row(r)) for r in rows]

    async def list_retries(self, step_id: int) -> list[StepRetry]:
        async with self._connect() as conn:
            rows = await conn.fetch(
                "SELECT * FROM workflow_step_retries WHERE workflow_step_id = $1 ORDER BY retry_count ASC",
                step_id,
            )
        return [StepRetry.model_validate(dict(r)) for r in rows]

    # ------------------------------------------------------------------
    # Workflows
    async def get_workflow(self, workflow_id: int) -> Workflow | None:
        async with self._connect() as conn:
            row = await conn.fetchrow("SELECT * FROM workflow WHERE id = $1", workflow_id)
        return Workflow.model_validate(decode_row(row)) if row else None

    async def find_workflow(
        self, name: str, ref_id: str | None, ref_type: str | None
    ) -> Workflow | None:
        async with self._connect() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM workflow WHERE name = $1 "
                "AND (ref_id = $2 OR ref_id IS NULL) AND (ref_type = $3 OR ref_type IS NULL) "
                + FIND_WORKFLOW_ORDER,
                name,
                ref_id,
                ref_type,
            )
        return Workflow.model_validate(decode_row(row)) if row else None

    async def insert_workflow(self, record: WorkflowCreate) -> int:
        now = utcnow()
        values = {**record.model_dump(), "created_at": now, "updated_at": now}
        try:
            async with self._connect() as conn:
                return await self._insert(conn, "workflow", values)
        except StorageError as exc:
            if isinstance(exc.__cause__, asyncpg.UniqueViolationError):
                raise WorkflowConflictError(
                    f"Workflow {record.name!r} already exists for "
                    f"ref_id={record.ref_id!r} ref_type={record.ref_type!r}"
                ) from exc.__cause__
            raise

    async def record_workflow_run(self, workflow_id: int, run_id: str) -> None:
        async with self._connect() as conn:
            await conn.execute(
                "UPDATE workflow SET status = 'Running', last_run_id = $1, "
                "runs_count = COALESCE(runs_count, 0) + 1, updated_at = $2 WHERE id = $3",
                run_id,
                utcnow(),
                workflow_id,
            )

    async def update_workflow(self, workflow_id: int, fields: dict[str, Any]) -> None:
        async with self._connect() as conn:
            await self._update(conn, "workflow", workflow_id, fields)

    async def list_workflows(self) -> list[Workflow]:
        async with self._connect() as conn:
            rows = await conn.fetch("SELECT * FROM workflow ORDER BY id")
        return [Workflow.model_validate(decode_row(r)) for r in rows]

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
