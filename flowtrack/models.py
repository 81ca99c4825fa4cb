"""Data models for tracked workflows, runs, steps and retries."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)

from .exceptions import TrackerValidationError


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes; aware values are converted to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class RunStatus(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    SLEEPING = "Sleeping"
    COMPLETED = "Completed"
    ERRORED = "Errored"


class StepStatus(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"
    RETRYING = "Retrying"


# Run statuses mirrored onto the parent workflow.
SETTLED_STATUSES = frozenset(
    s.value for s in (RunStatus.COMPLETED, RunStatus.ERRORED, RunStatus.SLEEPING)
)


# ----------------------------------------------------------------------
# Stored records


class StepRetry(BaseModel):
    """One scheduled retry attempt of a failed step."""

    id: int
    workflow_step_id: int
    retry_count: int = 0
    retry_at: datetime
    last_error: Optional[str] = None
    created_at: Optional[datetime] = None


class WorkflowStep(BaseModel):
    """A unit of work within a run, ordered by ``step_index``."""

    id: int
    workflow_run_id: str
    step_name: str
    status: StepStatus
    step_index: int
    state: Any = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    retries: list[StepRetry] = Field(default_factory=list)


class WorkflowRun(BaseModel):
    """One execution instance of a workflow.

    ``steps`` is only populated by the query layer.
    """

    id: str
    workflow_id: int
    status: RunStatus
    ref_id: Optional[str] = None
    ref_type: Optional[str] = None
    input_params: Any = Field(default_factory=dict)
    output_result: Any = Field(default_factory=dict)
    metadata: Any = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    sleep_until: Optional[datetime] = None
    steps: list[WorkflowStep] = Field(default_factory=list)


class Workflow(BaseModel):
    """Aggregate identity of a named workflow plus its latest-run snapshot."""

    id: int
    name: str
    status: Optional[RunStatus] = None
    input_params: Any = Field(default_factory=dict)
    output_result: Any = Field(default_factory=dict)
    metadata: Any = Field(default_factory=dict)
    last_run_id: Optional[str] = None
    ref_id: Optional[str] = None
    ref_type: Optional[str] = None
    runs_count: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


# ----------------------------------------------------------------------
# Mutation payloads
#
# Only fields the caller explicitly set are written; see ``changes()``.


class _Patch(BaseModel):
    model_config = ConfigDict(extra="forbid", use_enum_values=True)

    @field_validator("*", mode="after")
    @classmethod
    def _normalize_datetimes(cls, value: Any) -> Any:
        if isinstance(value, datetime):
            return as_utc(value)
        return value

    def changes(self) -> dict[str, Any]:
        """Return the explicitly supplied fields, excluding the record id."""
        return self.model_dump(exclude_unset=True, exclude={"id"})

    def _require(self, values: dict[str, Any], *names: str) -> None:
        missing = [name for name in names if values.get(name) is None]
        if missing:
            raise TrackerValidationError(
                f"{type(self).__name__} is missing required fields for insert: "
                + ", ".join(missing)
            )


class RunPatch(_Patch):
    """Partial run record keyed by the caller-supplied run id."""

    id: str
    workflow_id: Optional[int] = None
    status: Optional[RunStatus] = None
    ref_id: Optional[str] = None
    ref_type: Optional[str] = None
    input_params: Any = None
    output_result: Any = None
    metadata: Any = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    sleep_until: Optional[datetime] = None

    def insert_values(self, now: datetime) -> dict[str, Any]:
        values = self.changes()
        self._require(values, "workflow_id", "status")
        if values.get("created_at") is None:
            values["created_at"] = now
        values["updated_at"] = now
        values["id"] = self.id
        return values


def migrate_legacy_step_fields(data: Any) -> Any:
    """Map the legacy ``workflow_instance_id`` key onto ``workflow_run_id``.

    Older executors report steps under the legacy name. Remove this once
    they all send ``workflow_run_id``.
    """
    if isinstance(data, dict) and "workflow_instance_id" in data:
        data = dict(data)
        legacy = data.pop("workflow_instance_id")
        if data.get("workflow_run_id") is None:
            data["workflow_run_id"] = legacy
    return data


class StepPatch(_Patch):
    """Partial step record. Without ``id`` it describes a new step."""

    id: Optional[int] = None
    workflow_run_id: Optional[str] = None
    step_name: Optional[str] = None
    status: Optional[StepStatus] = None
    step_index: Optional[int] = None
    state: Any = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @model_validator(mode="before")
    @classmethod
    def _migrate_legacy(cls, data: Any) -> Any:
        return migrate_legacy_step_fields(data)

    def insert_values(self, now: datetime) -> dict[str, Any]:
        values = self.changes()
        self._require(values, "workflow_run_id", "step_name", "status", "step_index")
        status = values["status"]
        if status == StepStatus.RUNNING.value and values.get("started_at") is None:
            values["started_at"] = now
        if status == StepStatus.COMPLETED.value and values.get("completed_at") is None:
            values["completed_at"] = now
        return values


class RetryCreate(_Patch):
    """Append-only retry log entry for a step."""

    workflow_step_id: int
    retry_count: int = 0
    retry_at: datetime
    last_error: Optional[str] = None
    created_at: Optional[datetime] = None

    def insert_values(self, now: datetime) -> dict[str, Any]:
        values = self.model_dump()
        if values.get("created_at") is None:
            values["created_at"] = now
        return values


class WorkflowCreate(_Patch):
    """Values for a first-time workflow registration."""

    name: str
    ref_id: Optional[str] = None
    ref_type: Optional[str] = None
    status: RunStatus = Field(default=RunStatus.RUNNING, validate_default=True)
    input_params: Any = Field(default_factory=dict)
    metadata: Any = Field(default_factory=dict)
    last_run_id: Optional[str] = None
    runs_count: int = 1


class UpsertResult(BaseModel):
    """Outcome of a mutation: which branch ran and the record id."""

    id: str | int | None
    inserted: bool = False
    updated: bool = False

    def as_dict(self) -> dict[str, Any]:
        key = "inserted" if self.inserted else "updated"
        return {key: True, "id": self.id}


# ----------------------------------------------------------------------
# Queries and update envelopes


class RunFilter(BaseModel):
    """Filter and paging for run lookups.

    ``run_id`` (``workflowId`` on the wire) selects a single run and
    ignores every other field.
    """

    model_config = ConfigDict(populate_by_name=True, use_enum_values=True)

    run_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("run_id", "workflowId")
    )
    ref_id: Optional[str] = None
    ref_type: Optional[str] = None
    status: Optional[RunStatus] = None
    limit: int = Field(default=20, ge=0)
    offset: int = Field(default=0, ge=0)

    @field_validator("limit", "offset", mode="before")
    @classmethod
    def _null_means_default(cls, value: Any, info: ValidationInfo) -> Any:
        if value is None:
            return cls.model_fields[info.field_name].default
        return value


UpdateType = Literal["run_update", "step_update", "retry_update"]


class TrackerUpdate(BaseModel):
    """Mutation envelope: ``type`` names the key that carries the payload."""

    type: UpdateType
    run_update: Optional[RunPatch] = None
    step_update: Optional[StepPatch] = None
    retry_update: Optional[RetryCreate] = None

    @model_validator(mode="after")
    def _payload_present(self) -> "TrackerUpdate":
        if getattr(self, self.type) is None:
            raise ValueError(f"update of type {self.type!r} has no {self.type!r} payload")
        return self

    @property
    def payload(self) -> RunPatch | StepPatch | RetryCreate:
        return getattr(self, self.type)

    def to_event(self) -> dict[str, Any]:
        """Serialize the envelope as it was supplied, for broadcast."""
        return {
            "type": self.type,
            self.type: self.payload.model_dump(mode="json", exclude_unset=True),
        }
