"""Resolve or register the workflow aggregate behind a new run."""

from __future__ import annotations

import logging
from typing import Any, Optional

from .exceptions import TrackerValidationError, WorkflowConflictError
from .models import WorkflowCreate
from .persistence import TrackerRepository

logger = logging.getLogger(__name__)


class WorkflowResolver:
    """Get-or-create for workflows keyed by ``(name, ref_id, ref_type)``.

    Unknown workflow names are registered on first use. A stored null
    ``ref_id`` or ``ref_type`` matches any lookup value.
    """

    def __init__(self, repository: TrackerRepository) -> None:
        self._repository = repository

    async def resolve(
        self,
        name: str,
        run_id: str,
        ref_id: Optional[str] = None,
        ref_type: Optional[str] = None,
        input_params: Any = None,
        metadata: Any = None,
    ) -> int:
        """Return the workflow id for ``run_id``, creating the workflow if needed.

        An existing workflow gets its run counter bumped and is marked
        Running; its input params are left untouched.
        """
        if not name:
            raise TrackerValidationError("Workflow name is required")
        ref_id = ref_id or None
        ref_type = ref_type or None

        existing = await self._repository.find_workflow(name, ref_id, ref_type)
        if existing is None:
            try:
                workflow_id = await self._repository.insert_workflow(
                    WorkflowCreate(
                        name=name,
                        ref_id=ref_id,
                        ref_type=ref_type,
                        input_params=input_params if input_params is not None else {},
                        metadata=metadata if metadata is not None else {},
                        last_run_id=run_id,
                    )
                )
                logger.info(f"Registered workflow {name!r} as id={workflow_id}")
                return workflow_id
            except WorkflowConflictError:
                logger.info(
                    f"Workflow {name!r} was registered concurrently; reusing it"
                )
                existing = await self._repository.find_workflow(name, ref_id, ref_type)
                if existing is None:
                    raise

        await self._repository.record_workflow_run(existing.id, run_id)
        return existing.id
