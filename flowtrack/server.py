"""FastAPI app factory.

Routes are thin wrappers over ``TrackerService``; every JSON response uses
the ``{"success": bool, ...}`` envelope.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import Any, Optional

from fastapi import Body, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from .exceptions import StorageError, TrackerError, TrackerValidationError
from .models import WorkflowRun
from .service import TrackerService

logger = logging.getLogger(__name__)


class WebSocketObserver:
    """Hashable hub observer around a Starlette ``WebSocket``."""

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket

    async def send_text(self, data: str) -> None:
        await self.websocket.send_text(data)


def _dump(runs: list[WorkflowRun]) -> list[dict[str, Any]]:
    return [run.model_dump(mode="json") for run in runs]


def _failure(status_code: int, error: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": error})


def create_app(service: Optional[TrackerService] = None) -> FastAPI:
    tracker = service or TrackerService()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        pruner = asyncio.create_task(
            tracker.hubs.prune_forever(tracker.config.broadcast.prune_interval)
        )
        app.state.hub_pruner = pruner
        yield
        pruner.cancel()
        with suppress(asyncio.CancelledError):
            await pruner
        await tracker.close()

    app = FastAPI(
        title="flowtrack",
        version="0.1.0",
        description="Workflow run tracking with a live update channel.",
        lifespan=lifespan,
    )
    app.state.tracker = tracker

    @app.exception_handler(TrackerValidationError)
    async def _validation_error(request: Request, exc: TrackerValidationError) -> JSONResponse:
        return _failure(400, str(exc))

    @app.exception_handler(StorageError)
    async def _storage_error(request: Request, exc: StorageError) -> JSONResponse:
        logger.error(f"{request.url.path} failed: {exc}")
        return _failure(500, str(exc))

    @app.exception_handler(TrackerError)
    async def _tracker_error(request: Request, exc: TrackerError) -> JSONResponse:
        return _failure(500, str(exc))

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    # ------------------------------------------------------------------
    # Tracker API
    @app.post("/api/workflows/update")
    async def workflow_update(update: dict[str, Any] = Body(...)) -> dict[str, Any]:
        result = await tracker.apply_update(update)
        return {"success": True, "result": result.as_dict()}

    @app.post("/api/workflows/query")
    async def workflow_query(params: dict[str, Any] = Body(default={})) -> dict[str, Any]:
        runs = await tracker.query(params)
        return {"success": True, "workflows": _dump(runs)}

    @app.websocket("/api/tracker-websocket")
    async def tracker_websocket(websocket: WebSocket) -> None:
        await websocket.accept()
        hub = tracker.hub()
        observer = WebSocketObserver(websocket)
        try:
            subscribed = await hub.subscribe(observer)
        except TrackerError as exc:
            logger.warning(f"Could not subscribe observer to {hub.partition!r}: {exc}")
            await websocket.close(code=1011)
            return
        if not subscribed:
            await websocket.close()
            return
        try:
            while True:
                raw = await websocket.receive_text()
                await hub.handle_message(observer, raw)
        except WebSocketDisconnect:
            logger.debug(f"Observer left partition {hub.partition!r}")
        finally:
            await hub.unsubscribe(observer)

    # ------------------------------------------------------------------
    # Service endpoints
    @app.post("/service/start-workflow")
    async def start_workflow(body: dict[str, Any] = Body(...)) -> dict[str, Any]:
        name = body.get("workflowType") or body.get("name")
        if not name:
            raise TrackerValidationError("workflowType is required")
        started = await tracker.start_workflow(
            name,
            params=body.get("params"),
            ref_id=body.get("ref_id"),
            ref_type=body.get("ref_type"),
            metadata=body.get("metadata"),
        )
        return {"success": True, **started}

    @app.post("/service/get-workflow")
    async def get_workflow(body: dict[str, Any] = Body(...)) -> dict[str, Any]:
        run_id = body.get("workflowId")
        if not run_id:
            raise TrackerValidationError("workflowId is required")
        run = await tracker.get_workflow_run(run_id)
        return {"success": True, "workflow": run.model_dump(mode="json") if run else None}

    @app.post("/service/list-workflows")
    async def list_workflows(body: dict[str, Any] = Body(default={})) -> dict[str, Any]:
        runs = await tracker.list_runs(
            status=body.get("status"),
            limit=body.get("limit"),
            offset=body.get("offset"),
        )
        return {"success": True, "workflows": _dump(runs)}

    @app.post("/service/get-workflows-by-ref")
    async def get_workflows_by_ref(body: dict[str, Any] = Body(default={})) -> dict[str, Any]:
        runs = await tracker.get_runs_by_ref(
            ref_id=body.get("ref_id"),
            ref_type=body.get("ref_type"),
            status=body.get("status"),
            limit=body.get("limit"),
            offset=body.get("offset"),
        )
        return {"success": True, "workflows": _dump(runs)}

    return app
