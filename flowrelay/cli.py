"""Command line interface for inspecting and resuming flowrelay executions."""

from __future__ import annotations

import asyncio
import json
import sys
from importlib import import_module
from importlib.util import module_from_spec, spec_from_file_location
from pathlib import Path
from typing import Any, List, Optional

import typer

from flowrelay.chain import Chain
from flowrelay.config import configure_logging, load_config
from flowrelay.persistence import get_store
from flowrelay.registry import ChainRegistry
from flowrelay.runtime import WorkflowRuntime
from flowrelay.scheduler import SleepScheduler

app = typer.Typer(help="CLI for flowrelay workflows")

# Command groups
execution_app = typer.Typer(help="Commands for inspecting and resuming executions")
scheduler_app = typer.Typer(help="Commands for the sleep scheduler")

app.add_typer(execution_app, name="execution")
app.add_typer(scheduler_app, name="scheduler")


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(None, help="Logging level, e.g. DEBUG"),
) -> None:
    """flowrelay CLI entry point."""
    configure_logging(log_level, load_config())


def _import_chains_module(target: str) -> Any:
    path = Path(target)
    if path.suffix == ".py" and path.exists():
        spec = spec_from_file_location(path.stem, path)
        if spec is None or spec.loader is None:
            raise ImportError(f"Cannot import {path}")
        module = module_from_spec(spec)
        sys.modules[path.stem] = module
        spec.loader.exec_module(module)
        return module
    return import_module(target)


def _load_chains(target: str) -> List[Chain]:
    """Import ``target`` (module path or .py file) and collect its chains."""
    module = _import_chains_module(target)
    return [value for value in vars(module).values() if isinstance(value, Chain)]


def _build_runtime(chains: Optional[str]) -> WorkflowRuntime:
    registry = ChainRegistry()
    if chains:
        try:
            loaded = _load_chains(chains)
        except ImportError as exc:
            typer.secho(f"Cannot load chains from {chains}: {exc}", fg=typer.colors.RED)
            raise typer.Exit(code=1)
        for chain in loaded:
            registry.register(chain, replace=True)
    config = load_config()
    return WorkflowRuntime(store=get_store(config=config), registry=registry, config=config)


@execution_app.command("list")
def execution_list() -> None:
    """
    List all executions with their current status.

    Example:
        flowrelay execution list
        # Output: 3f0c...    expense-approval    suspended
    """
    store = get_store()
    statuses = asyncio.run(store.list_executions())
    if not statuses:
        typer.echo("No executions found")
        return
    for status in statuses:
        typer.echo(f"{status.execution_id}\t{status.chain_id}\t{status.status}")


@execution_app.command("show")
def execution_show(execution_id: str) -> None:
    """Show status and pending suspension details for one execution."""
    store = get_store()
    status = asyncio.run(store.get_status(execution_id))
    if status is None:
        typer.echo("Execution not found")
        raise typer.Exit(code=1)
    typer.echo(f"Execution {status.execution_id}: {status.status}")
    typer.echo(f"Chain: {status.chain_id}")
    if status.last_step_id:
        typer.echo(f"Last step: {status.last_step_id}")
    if status.error is not None:
        typer.echo(f"Error ({status.error.kind}): {status.error.message}")
    if status.result is not None:
        typer.echo(f"Result: {json.dumps(status.result, default=str)}")

    record = asyncio.run(store.peek(execution_id))
    if record is not None and not record.is_consumed:
        typer.echo(f"Suspended at: {record.suspended_step_id} ({record.reason})")
        if record.wake_at is not None:
            typer.echo(f"Wakes at: {record.wake_at.isoformat()}")
        if record.suspend_data is not None:
            typer.echo(f"Suspend data: {json.dumps(record.suspend_data, default=str)}")


@execution_app.command("resume")
def execution_resume(
    execution_id: str,
    payload: Optional[str] = typer.Option(None, help="JSON resume payload"),
    chains: str = typer.Option(..., help="Module or .py file defining the chains"),
) -> None:
    """
    Resume a suspended execution with a JSON payload.

    Example:
        flowrelay execution resume 3f0c... --chains ./chains.py \\
            --payload '{"approved": true, "managerId": "m1"}'
    """
    try:
        data = json.loads(payload) if payload else None
    except json.JSONDecodeError as exc:
        typer.secho(f"Invalid JSON payload: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    runtime = _build_runtime(chains)
    result = asyncio.run(runtime.resume(execution_id, data))
    typer.echo(f"Execution {result.execution_id}: {result.status}")
    if result.status == "suspended":
        typer.echo(f"Reason: {result.reason}")
    elif result.status == "completed":
        typer.echo(f"Result: {json.dumps(result.result, default=str)}")
    elif result.error is not None:
        typer.secho(f"{result.error.kind}: {result.error.message}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


@scheduler_app.command("run")
def scheduler_run(
    chains: str = typer.Option(..., help="Module or .py file defining the chains"),
    lifespan: Optional[float] = typer.Option(None, help="Stop after N seconds"),
    poll_interval: Optional[float] = typer.Option(None, help="Seconds between polls"),
) -> None:
    """
    Run the sleep scheduler, resuming timers as they become due.

    Example:
        flowrelay scheduler run --chains myapp.chains --lifespan 300
    """
    runtime = _build_runtime(chains)
    scheduler = SleepScheduler(runtime, poll_interval=poll_interval)
    typer.echo(f"Starting scheduler for {len(runtime.registry)} chain(s)")
    asyncio.run(scheduler.run(lifespan=lifespan))


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
