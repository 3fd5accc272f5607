"""Command line interface for flowgate."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import List, Optional

import typer

from flowgate.approvals import ApprovalDecision, publish_decision
from flowgate.bus import EventBus
from flowgate.cli_utils.fs import _iter_definition_files
from flowgate.cli_utils.workflow import _format_path, describe_definition, describe_run
from flowgate.config import FlowgateConfig, load_config
from flowgate.contracts import RunStatus
from flowgate.engine import WorkflowEngine
from flowgate.errors import DefinitionValidationError
from flowgate.persistence import RunFilter, get_run_store
from flowgate.registry import WorkflowRegistry
from flowgate.transports import get_transport
from flowgate.utils.logs import configure_logging

app = typer.Typer(help="CLI for flowgate workflows")

# Command groups
workflow_app = typer.Typer(help="Commands for workflow definitions")
run_app = typer.Typer(help="Commands for workflow runs")

app.add_typer(workflow_app, name="workflow")
app.add_typer(run_app, name="run")


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(
        None, "--config", help="Path to a flowgate YAML config file"
    ),
    log_level: Optional[str] = typer.Option(
        None, "--log-level", help="Override the configured log level"
    ),
) -> None:
    """Flowgate CLI entry point."""
    settings = load_config(str(config) if config else None)
    configure_logging(log_level, settings.logging)
    ctx.obj = settings


def _settings(ctx: typer.Context) -> FlowgateConfig:
    return ctx.obj if isinstance(ctx.obj, FlowgateConfig) else load_config()


def _load_registry(path: Path) -> WorkflowRegistry:
    search_path = path.expanduser().resolve()
    if not search_path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    registry = WorkflowRegistry()
    try:
        registry.load_path(search_path)
    except DefinitionValidationError as exc:
        for error in exc.errors:
            typer.secho(error, fg=typer.colors.RED)
        raise typer.Exit(code=1)
    return registry


# ----------------------------------------------------------------------
# workflow
# ----------------------------------------------------------------------


@workflow_app.command("validate")
def workflow_validate(path: Path) -> None:
    """
    Validate workflow definition files.

    Loads every JSON/YAML file under PATH and reports each problem found
    (duplicate step ids, overlapping outputs, bad cron expressions, ...).

    Example:
        flowgate workflow validate ./workflows
    """
    search_path = path.expanduser().resolve()
    registry = _load_registry(path)
    files = list(_iter_definition_files(search_path))
    for file in files:
        typer.echo(f"checked {_format_path(file, search_path)}")
    typer.secho(
        f"{len(registry)} workflow(s) valid in {len(files)} file(s)",
        fg=typer.colors.GREEN,
    )


@workflow_app.command("list")
def workflow_list(path: Path) -> None:
    """
    List workflow definitions found under PATH.

    Example:
        flowgate workflow list ./workflows
        # Output: grid-outage v1.0.0 - Grid outage response (5 steps, critical)
        #           Triggers: event:grid.outage.detected
        #           Agents: grid-monitor, field-ops
    """
    registry = _load_registry(path)
    definitions = registry.latest()
    if not definitions:
        typer.echo("No workflows found")
        return
    for definition in definitions:
        for line in describe_definition(definition):
            typer.echo(line)


# ----------------------------------------------------------------------
# run
# ----------------------------------------------------------------------


@run_app.command("list")
def run_list(
    ctx: typer.Context,
    status: Optional[List[RunStatus]] = typer.Option(
        None, "--status", help="Only show runs in this status (repeatable)"
    ),
    workflow: Optional[str] = typer.Option(
        None, "--workflow", help="Only show runs of this use case id"
    ),
) -> None:
    """
    List runs from the configured run store.

    Example:
        flowgate run list --status running --status waiting_approval
    """
    settings = _settings(ctx)
    store = get_run_store(settings.database_url)
    runs = asyncio.run(
        store.list_runs(RunFilter(status=status or None, use_case_id=workflow))
    )
    if not runs:
        typer.echo("No runs found")
        return
    for run in runs:
        typer.echo(f"{run.run_id}\t{run.use_case_id}\t{run.status.value}")


@run_app.command("show")
def run_show(ctx: typer.Context, run_id: str) -> None:
    """
    Show status, context and step history of a run.

    Example:
        flowgate run show 3f2c...
        # Output: Run 3f2c...: waiting_approval
        #         - detect-outages #1: succeeded (...)
        #         - dispatch-crews #1: gated (...)
    """
    settings = _settings(ctx)
    store = get_run_store(settings.database_url)
    run = asyncio.run(store.get_run(run_id))
    if run is None:
        typer.echo("Run not found")
        raise typer.Exit(code=1)
    for line in describe_run(run):
        typer.echo(line)


def _publish(settings: FlowgateConfig, decision: ApprovalDecision) -> None:
    try:
        transport = get_transport(config=settings)
    except ValueError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if not transport.shared:
        typer.secho(
            f"The {transport.name} transport only reaches engines in this process, "
            "so the decision would never arrive. Configure the redis or rabbitmq "
            "transport (transport.backend or FLOWGATE_TRANSPORT) to approve runs "
            "of a running engine.",
            fg=typer.colors.RED,
        )
        raise typer.Exit(code=1)

    async def _send() -> None:
        async with transport:
            await publish_decision(EventBus(transport), decision)

    asyncio.run(_send())


@run_app.command("approve")
def run_approve(
    ctx: typer.Context,
    run_id: str,
    step_id: str,
    approver: str = typer.Option(..., "--approver", help="Who approves the step"),
) -> None:
    """
    Approve a gated step. The decision is published on the event bus so the
    engine process that owns the run picks it up.
    """
    decision = ApprovalDecision(
        run_id=run_id, step_id=step_id, approved=True, approver_id=approver
    )
    _publish(_settings(ctx), decision)
    typer.echo(f"Approval for run {run_id} step {step_id} sent")


@run_app.command("reject")
def run_reject(
    ctx: typer.Context,
    run_id: str,
    step_id: str,
    approver: str = typer.Option(..., "--approver", help="Who rejects the step"),
    reason: Optional[str] = typer.Option(None, "--reason"),
) -> None:
    """Reject a gated step; the run is aborted."""
    decision = ApprovalDecision(
        run_id=run_id,
        step_id=step_id,
        approved=False,
        approver_id=approver,
        reason=reason,
    )
    _publish(_settings(ctx), decision)
    typer.echo(f"Rejection for run {run_id} step {step_id} sent")


# ----------------------------------------------------------------------
# serve
# ----------------------------------------------------------------------


@app.command("serve")
def serve(
    ctx: typer.Context,
    path: Path,
    lifespan: Optional[float] = typer.Option(
        None, help="Stop after this many seconds (default: run until interrupted)"
    ),
) -> None:
    """
    Run the engine: load definitions from PATH, recover unfinished runs and
    start triggers.

    Example:
        flowgate serve ./workflows
        flowgate --config prod.yaml serve ./workflows --lifespan 300
    """
    settings = _settings(ctx)

    async def _serve() -> None:
        engine = WorkflowEngine.from_config(settings)
        loaded = engine.load_path(path.expanduser().resolve())
        typer.echo(f"Loaded {len(loaded)} workflow(s); engine starting")
        await engine.serve(lifespan)

    try:
        asyncio.run(_serve())
    except (DefinitionValidationError, ValueError) as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    except KeyboardInterrupt:  # pragma: no cover - interactive stop
        typer.echo("Stopped")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
