"""Command line interface for durableflow workers and runs."""

from __future__ import annotations

import asyncio
import importlib
import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import typer

from .config import load_config
from .errors import DurableflowError
from .executor import FunctionRPCInvoker
from .orchestrator import WorkflowOrchestrator
from .persistence import get_state_store
from .registry import WorkflowRegistry
from .transports import get_transport
from .worker import WorkflowWorker

app = typer.Typer(help="CLI for durableflow workflows")

# Command groups
runs_app = typer.Typer(help="Commands for inspecting and controlling runs")
workflows_app = typer.Typer(help="Commands for managing workflow definitions")

app.add_typer(runs_app, name="runs")
app.add_typer(workflows_app, name="workflows")

MetadataOption = typer.Option(..., "--metadata", "-m", help="Workflow metadata file (YAML or JSON)")
FunctionsOption = typer.Option(
    None, "--functions", "-f", help="module:attribute holding a name -> callable mapping"
)


@app.callback()
def main() -> None:
    """durableflow CLI entry point."""
    config = load_config()
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_functions(target: Optional[str]) -> Dict[str, Callable[..., Any]]:
    if not target:
        return {}
    module_name, _, attr = target.partition(":")
    if not attr:
        typer.secho("--functions must look like 'module:attribute'", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    module = importlib.import_module(module_name)
    return dict(getattr(module, attr))


def _build_orchestrator(
    metadata: Optional[Path] = None,
    functions: Optional[str] = None,
    with_transport: bool = True,
) -> WorkflowOrchestrator:
    config = load_config()
    registry = WorkflowRegistry.from_file(metadata) if metadata else WorkflowRegistry()
    callables = _load_functions(functions)
    for name, fn in callables.items():
        registry.register_function(name, fn)
    transport = get_transport(config.transport) if with_transport else None
    return WorkflowOrchestrator(
        registry,
        get_state_store(),
        FunctionRPCInvoker(callables),
        transport=transport,
        config=config,
    )


@app.command("worker")
def worker(
    metadata: Path = MetadataOption,
    functions: Optional[str] = FunctionsOption,
    lifespan: Optional[float] = typer.Option(None, help="Stop after this many seconds"),
) -> None:
    """
    Run a worker process consuming the orchestrator, step and sleeper queues.

    Args:
        metadata: Workflow metadata produced at build time
        functions: Import path of the rpc/inline callables the steps invoke
        lifespan: Worker timeout in seconds (default: run indefinitely)

    Example:
        durableflow worker --metadata workflows.yaml --functions app.functions:FUNCTIONS
        durableflow worker -m workflows.yaml -f app.functions:FUNCTIONS --lifespan 300
    """
    orchestrator = _build_orchestrator(metadata, functions)
    worker = WorkflowWorker(orchestrator, orchestrator.dispatcher.transport)
    typer.echo(f"Starting worker for {len(orchestrator.registry)} workflow(s)")
    asyncio.run(worker.start(lifespan=lifespan))


@runs_app.command("list")
def runs_list(
    workflow: Optional[str] = typer.Option(None, help="Only runs of this workflow"),
    status: Optional[str] = typer.Option(None, help="Only runs with this status"),
) -> None:
    """
    List workflow runs with their current status.

    Example:
        durableflow runs list --status suspended
        # Output: 3f2c...    onboarding    suspended
    """
    store = get_state_store()
    runs = asyncio.run(store.list_runs(workflow=workflow, status=status))
    if not runs:
        typer.echo("No runs found")
        return
    for run in runs:
        typer.echo(f"{run.id}\t{run.workflow}\t{run.status}")


@runs_app.command("show")
def runs_show(run_id: str) -> None:
    """
    Show a run with the current attempt of every step.

    Example:
        durableflow runs show 3f2c...
        # Output: Run 3f2c... (onboarding): suspended
        #         Error: Needs approval [WORKFLOW_SUSPENDED]
        #         - createOrg: succeeded (attempt 1)
        #         - approve: suspended (attempt 1)
    """
    store = get_state_store()
    run = asyncio.run(store.get_run(run_id))
    if run is None:
        typer.echo("Run not found")
        raise typer.Exit(code=1)
    typer.echo(f"Run {run.id} ({run.workflow}): {run.status}")
    typer.echo(f"Graph hash: {run.graph_hash}")
    if run.input is not None:
        typer.echo(f"Input: {json.dumps(run.input, default=str)}")
    if run.output is not None:
        typer.echo(f"Output: {json.dumps(run.output, default=str)}")
    if run.error is not None:
        typer.echo(f"Error: {run.error.message} [{run.error.code}]")
    for step in asyncio.run(store.list_step_states(run_id)):
        typer.echo(f"- {step.step_name}: {step.status} (attempt {step.attempt_count})")


@runs_app.command("history")
def runs_history(run_id: str) -> None:
    """Print every recorded step transition of a run in order."""
    store = get_state_store()
    entries = asyncio.run(store.get_run_history(run_id))
    if not entries:
        typer.echo("No history found")
        return
    for entry in entries:
        line = f"{entry.recorded_at.isoformat()}\t{entry.step_name}\t{entry.status}\t#{entry.attempt_count}"
        if entry.error is not None:
            line += f"\t{entry.error.message}"
        typer.echo(line)


@runs_app.command("resume")
def runs_resume(
    run_id: str,
    metadata: Path = MetadataOption,
    functions: Optional[str] = FunctionsOption,
) -> None:
    """
    Resume a suspended run.

    Queued runs are handed back to the workers; inline runs continue in this
    process, which therefore needs ``--functions``.

    Example:
        durableflow runs resume 3f2c... --metadata workflows.yaml
    """
    orchestrator = _build_orchestrator(metadata, functions)
    try:
        resumed = asyncio.run(orchestrator.resume_workflow(run_id))
    except DurableflowError as e:
        typer.secho(str(e), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if not resumed:
        typer.echo(f"Run {run_id} is not suspended")
        raise typer.Exit(code=1)
    typer.echo(f"Resumed run {run_id}")


@runs_app.command("cancel")
def runs_cancel(
    run_id: str,
    reason: str = typer.Option("Workflow cancelled", help="Reason stored on the run"),
) -> None:
    """Cancel a run that has not finished yet."""
    orchestrator = _build_orchestrator(with_transport=False)
    try:
        cancelled = asyncio.run(orchestrator.cancel_run(run_id, reason))
    except DurableflowError as e:
        typer.secho(str(e), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if not cancelled:
        typer.echo(f"Run {run_id} has already finished")
        raise typer.Exit(code=1)
    typer.echo(f"Cancelled run {run_id}")


@runs_app.command("delete")
def runs_delete(run_id: str) -> None:
    """Delete a run together with its steps and history."""
    store = get_state_store()
    if not asyncio.run(store.delete_run(run_id)):
        typer.echo("Run not found")
        raise typer.Exit(code=1)
    typer.echo(f"Deleted run {run_id}")


@workflows_app.command("list")
def workflows_list(metadata: Path = MetadataOption) -> None:
    """
    List the workflows defined in a metadata file with their topology hash.

    Example:
        durableflow workflows list --metadata workflows.yaml
        # Output: onboarding    dsl    9c1f0e5a2b7d4e61
    """
    try:
        registry = WorkflowRegistry.from_file(metadata)
    except (OSError, DurableflowError) as e:
        typer.secho(str(e), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if not len(registry):
        typer.echo("No workflows found")
        return
    for meta in registry:
        typer.echo(f"{meta.name}\t{meta.source}\t{meta.graph_hash}")


@workflows_app.command("register-versions")
def workflows_register_versions(metadata: Path = MetadataOption) -> None:
    """
    Store the topology of every workflow so in-flight runs survive redeploys.

    Example:
        durableflow workflows register-versions --metadata workflows.yaml
    """
    orchestrator = _build_orchestrator(metadata, with_transport=False)
    for name, graph_hash in asyncio.run(orchestrator.register_workflow_versions()):
        typer.echo(f"{name}\t{graph_hash}")


@workflows_app.command("start")
def workflows_start(
    name: str,
    metadata: Path = MetadataOption,
    functions: Optional[str] = FunctionsOption,
    input: Optional[str] = typer.Option(None, "--input", help="Run input as JSON"),
    inline: bool = typer.Option(False, help="Execute in this process instead of queueing"),
) -> None:
    """
    Start a run of a workflow.

    Example:
        durableflow workflows start onboarding -m workflows.yaml --input '{"email": "a@b.c"}'
        durableflow workflows start onboarding -m workflows.yaml -f app.functions:FUNCTIONS --inline
    """
    orchestrator = _build_orchestrator(metadata, functions, with_transport=not inline)
    payload = json.loads(input) if input else None
    try:
        run_id = asyncio.run(orchestrator.start_workflow(name, payload, inline=inline))
    except DurableflowError as e:
        typer.secho(str(e), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(run_id)
