"""SQLite implementation of the tracker repository."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from pathlib import Path
from typing import Any, Callable, TypeVar

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

T = TypeVar("T")

SCHEMA = f"""
CREATE TABLE IF NOT EXISTS workflow (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    status TEXT,
    input_params TEXT NOT NULL DEFAULT '{{}}',
    output_result TEXT NOT NULL DEFAULT '{{}}',
    metadata TEXT NOT NULL DEFAULT '{{}}',
    last_run_id TEXT,
    ref_id TEXT,
    ref_type TEXT,
    runs_count INTEGER DEFAULT 0,
    created_at TEXT,
    updated_at TEXT,
    completed_at TEXT
);
CREATE UNIQUE INDEX IF NOT EXISTS {IDENTITY_INDEX}
    ON workflow (name, COALESCE(ref_id, ''), COALESCE(ref_type, ''));

CREATE TABLE IF NOT EXISTS workflow_runs (
    id TEXT PRIMARY KEY,
    workflow_id INTEGER NOT NULL REFERENCES workflow (id),
    status TEXT NOT NULL,
    ref_id TEXT,
    ref_type TEXT,
    input_params TEXT NOT NULL DEFAULT '{{}}',
    output_result TEXT NOT NULL DEFAULT '{{}}',
    metadata TEXT NOT NULL DEFAULT '{{}}',
    created_at TEXT,
    updated_at TEXT,
    completed_at TEXT,
    sleep_until TEXT
);

CREATE TABLE IF NOT EXISTS workflow_steps (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    workflow_run_id TEXT NOT NULL REFERENCES workflow_runs (id),
    step_name TEXT NOT NULL,
    status TEXT NOT NULL,
    step_index INTEGER NOT NULL,
    state TEXT,
    started_at TEXT,
    completed_at TEXT
);

CREATE TABLE IF NOT EXISTS workflow_step_retries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    workflow_step_id INTEGER NOT NULL REFERENCES workflow_steps (id),
    retry_count INTEGER NOT NULL DEFAULT 0,
    retry_at TEXT NOT NULL,
    last_error TEXT,
    created_at TEXT
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


def _qmark(_: int) -> str:
    return "?"


class SQLiteTrackerRepository(TrackerRepository):
    """Persist tracking state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        # Calls arrive from worker threads; one statement sequence at a time.
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        self._conn.executescript(SCHEMA)
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        return await asyncio.to_thread(self._locked, fn, *args)

    def _locked(self, fn: Callable[..., T], *args: Any) -> T:
        with self._lock:
            try:
                with self._conn:
                    return fn(*args)
            except sqlite3.Error as exc:
                raise StorageError(f"SQLite operation failed: {exc}") from exc

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        return self._conn.execute(query, params).fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        return self._conn.execute(query, params).fetchall()

    def _insert(self, table: str, values: dict[str, Any]) -> int:
        encoded = encode_values(values, iso_datetimes=True)
        columns = ", ".join(encoded)
        placeholders = ", ".join("?" for _ in encoded)
        cur = self._conn.execute(
            f"INSERT INTO {table} ({columns}) VALUES ({placeholders})",
            tuple(encoded.values()),
        )
        return cur.lastrowid

    def _update(self, table: str, key: Any, values: dict[str, Any]) -> None:
        if not values:
            return
        encoded = encode_values(values, iso_datetimes=True)
        set_clause = ", ".join(f"{column} = ?" for column in encoded)
        self._conn.execute(
            f"UPDATE {table} SET {set_clause} WHERE id = ?",
            (*encoded.values(), key),
        )

    # ------------------------------------------------------------------
    # Mutations
    def _upsert_run(self, patch: RunPatch) -> UpsertResult:
        now = utcnow()
        if self._fetchone("SELECT id FROM workflow_runs WHERE id = ?", patch.id):
            self._update("workflow_runs", patch.id, {**patch.changes(), "updated_at": now})
            return UpsertResult(id=patch.id, updated=True)
        self._insert("workflow_runs", patch.insert_values(now))
        return UpsertResult(id=patch.id, inserted=True)

    def _upsert_step(self, patch: StepPatch) -> UpsertResult:
        if patch.id is not None:
            self._update("workflow_steps", patch.id, patch.changes())
            return UpsertResult(id=patch.id, updated=True)
        step_id = self._insert("workflow_steps", patch.insert_values(utcnow()))
        return UpsertResult(id=step_id, inserted=True)

    def _append_retry(self, record: RetryCreate) -> UpsertResult:
        retry_id = self._insert("workflow_step_retries", record.insert_values(utcnow()))
        return UpsertResult(id=retry_id, inserted=True)

    async def upsert_run(self, patch: RunPatch) -> UpsertResult:
        return await self._run(self._upsert_run, patch)

    async def upsert_step(self, patch: StepPatch) -> UpsertResult:
        return await self._run(self._upsert_step, patch)

    async def append_retry(self, record: RetryCreate) -> UpsertResult:
        return await self._run(self._append_retry, record)

    # ------------------------------------------------------------------
    # Queries
    async def get_run(self, run_id: str) -> WorkflowRun | None:
        row = await self._run(
            self._fetchone, "SELECT * FROM workflow_runs WHERE id = ?", run_id
        )
        return WorkflowRun.model_validate(decode_row(row)) if row else None

    async def list_runs(self, run_filter: RunFilter) -> list[WorkflowRun]:
        tail, params = run_filter_clause(run_filter, _qmark)
        rows = await self._run(
            self._fetchall, f"SELECT * FROM workflow_runs {tail}", *params
        )
        return [WorkflowRun.model_validate(decode_row(r)) for r in rows]

    async def list_steps(self, run_id: str) -> list[WorkflowStep]:
        rows = await self._run(
            self._fetchall,
            "SELECT * FROM workflow_steps WHERE workflow_run_id = ? ORDER BY step_index ASC",
            run_id,
        )
        return [WorkflowStep.model_validate(decode_row(r)) for r in rows]

    async def list_retries(self, step_id: int) -> list[StepRetry]:
        rows = await self._run(
            self._fetchall,
            "SELECT * FROM workflow_step_retries WHERE workflow_step_id = ? ORDER BY retry_count ASC",
            step_id,
        )
        return [StepRetry.model_validate(dict(r)) for r in rows]

    # ------------------------------------------------------------------
    # Workflows
    async def get_workflow(self, workflow_id: int) -> Workflow | None:
        row = await self._run(
            self._fetchone, "SELECT * FROM workflow WHERE id = ?", workflow_id
        )
        return Workflow.model_validate(decode_row(row)) if row else None

    async def find_workflow(
        self, name: str, ref_id: str | None, ref_type: str | None
    ) -> Workflow | None:
        row = await self._run(
            self._fetchone,
            "SELECT * FROM workflow WHERE name = ? "
            "AND (ref_id = ? OR ref_id IS NULL) AND (ref_type = ? OR ref_type IS NULL) "
            + FIND_WORKFLOW_ORDER,
            name,
            ref_id,
            ref_type,
        )
        return Workflow.model_validate(decode_row(row)) if row else None

    def _insert_workflow(self, record: WorkflowCreate) -> int:
        now = utcnow()
        values = {**record.model_dump(), "created_at": now, "updated_at": now}
        try:
            return self._insert("workflow", values)
        except sqlite3.IntegrityError as exc:
            if "UNIQUE" in str(exc) or IDENTITY_INDEX in str(exc):
                raise WorkflowConflictError(
                    f"Workflow {record.name!r} already exists for "
                    f"ref_id={record.ref_id!r} ref_type={record.ref_type!r}"
                ) from exc
            raise

    async def insert_workflow(self, record: WorkflowCreate) -> int:
        return await self._run(self._insert_workflow, record)

    async def record_workflow_run(self, workflow_id: int, run_id: str) -> None:
        await self._run(
            self._conn.execute,
            "UPDATE workflow SET status = 'Running', last_run_id = ?, "
            "runs_count = COALESCE(runs_count, 0) + 1, updated_at = ? WHERE id = ?",
            (run_id, utcnow().isoformat(), workflow_id),
        )

    async def update_workflow(self, workflow_id: int, fields: dict[str, Any]) -> None:
        await self._run(self._update, "workflow", workflow_id, fields)

    async def list_workflows(self) -> list[Workflow]:
        rows = await self._run(self._fetchall, "SELECT * FROM workflow ORDER BY id")
        return [Workflow.model_validate(decode_row(r)) for r in rows]

    async def close(self) -> None:
        await asyncio.to_thread(self._conn.close)
