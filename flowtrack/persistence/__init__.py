"""Persistence layer for tracked workflows."""

from __future__ import annotations

from typing import Optional

from ..config import FlowtrackConfig, load_config
from .inmemory import InMemoryTrackerRepository
from .postgres import PostgresTrackerRepository
from .repository import TrackerRepository
from .sqlite import SQLiteTrackerRepository

_repository_instance: TrackerRepository | None = None


def open_repository(database_url: Optional[str]) -> TrackerRepository:
    """Open the backend named by the URL scheme; no URL means in-memory.

    ``sqlite://<path>`` and ``postgres(ql)://...`` are understood.
    """
    if not database_url:
        return InMemoryTrackerRepository()
    scheme, _, location = database_url.partition("://")
    if scheme == "sqlite":
        return SQLiteTrackerRepository(location)
    if scheme in ("postgres", "postgresql"):
        return PostgresTrackerRepository(database_url)
    raise ValueError(f"Unsupported database backend: {database_url}")


def get_repository(
    database_url: Optional[str] = None, config: Optional[FlowtrackConfig] = None
) -> TrackerRepository:
    """Return the process-wide tracker store.

    With no arguments the store opened by an earlier call is reused. An
    explicit ``database_url`` wins; otherwise the URL comes from ``config``,
    or from ``load_config()`` which already applies the environment
    overrides. The store opened here becomes the process-wide one.
    """
    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    if database_url is None:
        database_url = (config or load_config()).database_url
    _repository_instance = open_repository(database_url)
    return _repository_instance


def reset_repository() -> None:
    """Forget the cached repository so the next call rebuilds it."""
    global _repository_instance
    _repository_instance = None


__all__ = [
    "TrackerRepository",
    "InMemoryTrackerRepository",
    "SQLiteTrackerRepository",
    "PostgresTrackerRepository",
    "get_repository",
    "open_repository",
    "reset_repository",
]
