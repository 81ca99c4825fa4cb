"""Command line interface for the flowtrack service."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Optional

import typer

from flowtrack.config import load_config
from flowtrack.exceptions import TrackerError
from flowtrack.models import WorkflowRun
from flowtrack.persistence import get_repository
from flowtrack.service import TrackerService

app = typer.Typer(help="CLI for flowtrack workflow tracking")

# Command groups
runs_app = typer.Typer(help="Commands for inspecting workflow runs")

app.add_typer(runs_app, name="runs")


@app.callback()
def main() -> None:
    """flowtrack CLI entry point."""
    pass


def _run_with_service(operation) -> Any:
    async def _call() -> Any:
        service = TrackerService()
        try:
            return await operation(service)
        finally:
            await service.close()

    try:
        return asyncio.run(_call())
    except TrackerError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _echo_runs(runs: list[WorkflowRun]) -> None:
    if not runs:
        typer.echo("No workflow runs found")
        return
    for run in runs:
        ref = f"{run.ref_type or '-'}:{run.ref_id or '-'}"
        typer.echo(f"{run.id}\t{run.status.value}\t{ref}\t{run.created_at}")


@app.command("serve")
def serve(
    host: Optional[str] = None,
    port: Optional[int] = None,
) -> None:
    """
    Run the HTTP and WebSocket server.

    Host, port and log level default to the loaded configuration.

    Example:
        flowtrack serve --port 9000
    """
    import uvicorn

    from flowtrack.server import create_app

    config = load_config()
    logging.basicConfig(level=config.log_level.upper())
    app_instance = create_app(TrackerService(config=config))
    uvicorn.run(
        app_instance,
        host=host or config.server.host,
        port=port or config.server.port,
        log_level=config.log_level.lower(),
    )


@app.command("init-db")
def init_db() -> None:
    """Create the tracking tables in the configured database."""
    repo = get_repository()

    async def _init() -> None:
        try:
            await repo.list_workflows()
        finally:
            await repo.close()

    try:
        asyncio.run(_init())
    except TrackerError as exc:
        typer.secho(f"Database initialisation failed: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo("Database ready")


@app.command("start")
def start(
    name: str,
    params: str = typer.Option("{}", help="Workflow input parameters as JSON"),
    ref_id: Optional[str] = None,
    ref_type: Optional[str] = None,
) -> None:
    """
    Register a new run of a workflow and print its run id.

    Example:
        flowtrack start order-processing --params '{"orderId": 42}' --ref-type order
    """
    try:
        input_params = json.loads(params)
    except json.JSONDecodeError as exc:
        typer.secho(f"Invalid --params JSON: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    started = _run_with_service(
        lambda service: service.start_workflow(
            name, params=input_params, ref_id=ref_id, ref_type=ref_type
        )
    )
    typer.echo(started["workflowId"])


@runs_app.command("list")
def runs_list(
    status: Optional[str] = None,
    limit: int = 20,
    offset: int = 0,
) -> None:
    """
    List recent workflow runs, newest first.

    Example:
        flowtrack runs list --status Errored
        # Output: 6f1c...    Errored    order:42    2024-01-01 10:00:00+00:00
    """
    runs = _run_with_service(
        lambda service: service.list_runs(status=status, limit=limit, offset=offset)
    )
    _echo_runs(runs)


@runs_app.command("by-ref")
def runs_by_ref(
    ref_id: Optional[str] = None,
    ref_type: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 20,
) -> None:
    """List runs attached to an external reference."""
    runs = _run_with_service(
        lambda service: service.get_runs_by_ref(
            ref_id=ref_id, ref_type=ref_type, status=status, limit=limit
        )
    )
    _echo_runs(runs)


@runs_app.command("show")
def runs_show(run_id: str) -> None:
    """
    Show a run with its steps and retry history.

    Example:
        flowtrack runs show 6f1c...
        # Output: Run 6f1c...: Running
        #         - [0] validate: Completed
        #         - [1] charge: Retrying (1 retries)
    """
    run = _run_with_service(lambda service: service.get_workflow_run(run_id))
    if run is None:
        typer.echo("Run not found")
        raise typer.Exit(code=1)
    typer.echo(f"Run {run.id}: {run.status.value}")
    typer.echo(f"Input: {json.dumps(run.input_params)}")
    if run.output_result:
        typer.echo(f"Output: {json.dumps(run.output_result)}")
    for step in run.steps:
        line = f"- [{step.step_index}] {step.step_name}: {step.status.value}"
        if step.retries:
            line += f" ({len(step.retries)} retries)"
        typer.echo(line)
