"""HTTP client for a remote flowtrack service."""

from __future__ import annotations

from typing import Any, Optional

import httpx

from .exceptions import TrackerClientError, TrackerValidationError
from .models import RetryCreate, RunPatch, StepPatch, UpsertResult, WorkflowRun


class WorkflowClient:
    """Talks to the service endpoints exposed by ``flowtrack.server``.

    Also usable as the reporter for ``track_step`` from executor processes.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["X-API-Key"] = api_key
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "WorkflowClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self._client.post(path, json=payload)
        except httpx.HTTPError as exc:
            raise TrackerClientError(f"Request to {path} failed: {exc}") from exc
        try:
            body = response.json()
        except ValueError:
            body = {"success": False, "error": response.text}
        if response.is_error or not body.get("success", False):
            raise TrackerClientError(
                body.get("error") or f"{path} returned {response.status_code}",
                status_code=response.status_code,
            )
        return body

    # ------------------------------------------------------------------
    # Service endpoints
    async def start_workflow(
        self,
        workflow_type: str,
        params: Optional[dict[str, Any]] = None,
        ref_id: Optional[str] = None,
        ref_type: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        return await self._post(
            "/service/start-workflow",
            {
                "workflowType": workflow_type,
                "params": params or {},
                "ref_id": ref_id,
                "ref_type": ref_type,
                "metadata": metadata,
            },
        )

    async def get_workflow(self, run_id: str) -> WorkflowRun | None:
        body = await self._post("/service/get-workflow", {"workflowId": run_id})
        workflow = body.get("workflow")
        return WorkflowRun.model_validate(workflow) if workflow else None

    async def list_workflows(
        self, status: Optional[str] = None, limit: int = 20, offset: int = 0
    ) -> list[WorkflowRun]:
        body = await self._post(
            "/service/list-workflows", {"status": status, "limit": limit, "offset": offset}
        )
        return [WorkflowRun.model_validate(w) for w in body.get("workflows", [])]

    async def get_workflows_by_ref(
        self,
        ref_id: Optional[str] = None,
        ref_type: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[WorkflowRun]:
        if not ref_id and not ref_type:
            raise TrackerValidationError("Either ref_id or ref_type must be provided")
        body = await self._post(
            "/service/get-workflows-by-ref",
            {
                "ref_id": ref_id,
                "ref_type": ref_type,
                "status": status,
                "limit": limit,
                "offset": offset,
            },
        )
        return [WorkflowRun.model_validate(w) for w in body.get("workflows", [])]

    # ------------------------------------------------------------------
    # Tracker updates
    async def _update(self, update_type: str, record: Any) -> UpsertResult:
        body = await self._post(
            "/api/workflows/update",
            {
                "type": update_type,
                update_type: record.model_dump(mode="json", exclude_unset=True),
            },
        )
        return UpsertResult.model_validate(body.get("result") or {"id": None})

    async def update_run(self, patch: RunPatch) -> UpsertResult:
        return await self._update("run_update", patch)

    async def update_step(self, patch: StepPatch) -> UpsertResult:
        return await self._update("step_update", patch)

    async def record_retry(self, record: RetryCreate) -> UpsertResult:
        return await self._update("retry_update", record)

    report_step = update_step
    report_retry = record_retry
