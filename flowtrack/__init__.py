"""flowtrack: durable tracking and live observation of workflow runs."""

from .client import WorkflowClient
from .exceptions import (
    StorageError,
    TrackerClientError,
    TrackerError,
    TrackerValidationError,
    WorkflowConflictError,
)
from .models import RunFilter, RunPatch, RunStatus, StepPatch, StepStatus, WorkflowRun
from .persistence import get_repository
from .service import TrackerService
from .tracking import track_step
from .utils.retry import RetryPolicy, compute_backoff, plan_retry

__version__ = "0.1.0"
__all__ = [
    "WorkflowClient",
    "TrackerService",
    "track_step",
    "get_repository",
    "RetryPolicy",
    "compute_backoff",
    "plan_retry",
    "RunFilter",
    "RunPatch",
    "RunStatus",
    "StepPatch",
    "StepStatus",
    "WorkflowRun",
    "TrackerError",
    "TrackerValidationError",
    "StorageError",
    "WorkflowConflictError",
    "TrackerClientError",
]
