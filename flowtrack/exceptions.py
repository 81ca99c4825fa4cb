"""Error types raised by flowtrack."""

from __future__ import annotations


class TrackerError(Exception):
    """Base class for all flowtrack errors."""


class TrackerValidationError(TrackerError, ValueError):
    """A request or mutation payload failed validation. Nothing was written."""


class StorageError(TrackerError):
    """A durable-store operation failed."""


class WorkflowConflictError(StorageError):
    """A workflow with the same identity key was inserted concurrently."""


class TrackerClientError(TrackerError):
    """The remote tracker service answered with a failure."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
