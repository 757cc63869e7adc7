"""
DevRunner CLI

Click-based command-line interface for DevRunner.
Provides commands for managing projects, development runs and quality gates.
"""

import json
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Callable, Optional

import click
import yaml
from rich.console import Console
from rich.table import Table

from devrunner import __version__
from devrunner.errors import ConfigError, DevRunnerError, ValidationError
from devrunner.logging import (
    EXIT_CONFIG_ERROR,
    EXIT_RUNTIME_ERROR,
    get_logger,
    init_cli_logging,
    json_logging_from_env,
)

logger = get_logger(__name__)
console = Console()


def get_service_context():
    """Create a ServiceContext for CLI operations."""
    from devrunner.config import load_config
    from devrunner.services.base import ServiceContext

    try:
        return ServiceContext(config=load_config())
    except ConfigError as exc:
        fail(click.get_current_context(), exc, EXIT_CONFIG_ERROR)


def get_db(context=None):
    """Open the configured SQLite database, creating the schema if needed."""
    from devrunner.db.database import get_database

    context = context or get_service_context()
    db = get_database(context.config.db_path)
    db.init_schema()
    return db


def wants_json(ctx) -> bool:
    return bool(ctx.obj and ctx.obj.get("JSON"))


def echo_json(data: Any) -> None:
    click.echo(json.dumps(data, default=str, indent=2))


def fail(ctx, error: Exception, code: int = EXIT_RUNTIME_ERROR) -> None:
    """Report an error in the selected output mode and exit."""
    if wants_json(ctx):
        payload = {"success": False, "error": str(error)}
        if isinstance(error, DevRunnerError):
            payload["category"] = error.category
            payload["metadata"] = error.metadata
        echo_json(payload)
    else:
        click.echo(f"✗ Error: {error}", err=True)
    sys.exit(code)


def load_document(path: str) -> Any:
    """Read a YAML or JSON document (JSON is valid YAML)."""
    with open(path, "r", encoding="utf-8") as handle:
        return yaml.safe_load(handle)


# =============================================================================
# Main CLI Group
# =============================================================================

@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_context
def cli(ctx, verbose, json_output):
    """DevRunner - iterative development run orchestrator."""
    ctx.ensure_object(dict)
    ctx.obj["VERBOSE"] = verbose
    ctx.obj["JSON"] = json_output
    init_cli_logging(level="DEBUG" if verbose else None, json_output=json_logging_from_env())


from devrunner.cli.projects import project  # noqa: E402

cli.add_command(project)


@cli.command()
def version():
    """Show version information."""
    click.echo(f"DevRunner v{__version__}")


@cli.command("secrets-key")
def secrets_key():
    """Print a new random value for DEVRUNNER_SECRETS_KEY."""
    from devrunner.crypto import generate_secrets_key

    click.echo(generate_secrets_key())


# =============================================================================
# Run Commands
# =============================================================================

def build_run_control(context, db, *, wait: bool):
    """
    RunControlService whose enqueue either processes inline (--wait) or
    leaves the run queued for a later `devrunner run process`.

    A CLI process exits when the command returns, so background worker
    threads would be killed mid-run.
    """
    from devrunner.services.orchestrator import OrchestratorService
    from devrunner.services.run_control import RunControlService

    orchestrator = OrchestratorService(context, db)

    def _leave_queued(run_id: str) -> None:
        logger.info("run_left_queued", extra={"run_id": run_id})

    enqueue: Callable[[str], None] = orchestrator.process_run if wait else _leave_queued
    return RunControlService(
        context,
        db,
        events=orchestrator.events,
        workspace=orchestrator.workspace,
        registry=orchestrator.registry,
        enqueue=enqueue,
    )


def render_run(ctx, details) -> None:
    if wants_json(ctx):
        echo_json(
            {
                "run": details.summary,
                "iterations": [
                    {
                        "index": it.iteration.index,
                        "name": it.iteration.name,
                        "status": it.iteration.status,
                        "attemptCount": it.iteration.attempt_count,
                        "branchName": it.iteration.branch_name,
                        "qualityGates": [
                            {"gateType": g.gate_type, "passed": g.passed, "durationMs": g.duration_ms}
                            for g in it.quality_gates
                        ],
                    }
                    for it in details.iterations
                ],
            }
        )
        return

    run = details.run
    console.print(f"[bold]Run {run.id}[/bold] [{run.status}]")
    console.print(f"Iteration: {run.current_iteration}/{run.total_iterations}")
    if run.error_summary:
        console.print(f"[red]Error:[/red] {run.error_summary}")

    table = Table(title="Iterations")
    table.add_column("#", justify="right", style="cyan")
    table.add_column("Name", style="magenta")
    table.add_column("Status", style="green")
    table.add_column("Attempts", justify="right")
    table.add_column("Gates")
    for it in details.iterations:
        gates = " ".join(
            f"[green]{g.gate_type}[/green]" if g.passed else f"[red]{g.gate_type}[/red]"
            for g in it.quality_gates
        )
        table.add_row(
            str(it.iteration.index),
            it.iteration.name,
            it.iteration.status,
            str(it.iteration.attempt_count),
            gates or "-",
        )
    console.print(table)


def render_run_status(ctx, run, message: str) -> None:
    if wants_json(ctx):
        echo_json({"success": True, "message": message, "run": asdict(run)})
    else:
        click.echo(f"✓ {message}")
        click.echo(f"  Run: {run.id} [{run.status}]")


@cli.group()
def run():
    """Development run commands."""
    pass


@run.command("create")
@click.argument("project_id")
@click.option("--plan", "plan_path", type=click.Path(exists=True, dir_okay=False),
              help="Approved plan file (YAML or JSON) with assessment and iterations")
@click.option("--wait", is_flag=True, help="Process the run in this process until it stops")
@click.pass_context
def run_create(ctx, project_id, plan_path, wait):
    """Create a development run for a project."""
    from devrunner.plan import parse_approved_plan

    context = get_service_context()
    db = get_db(context)
    try:
        approved = parse_approved_plan(load_document(plan_path)) if plan_path else None
    except (OSError, yaml.YAMLError, ValidationError) as exc:
        fail(ctx, exc, EXIT_CONFIG_ERROR)
        return

    try:
        control = build_run_control(context, db, wait=wait)
        result = control.create_run(project_id, approved)
        run_model = db.get_run(result.run.id)
    except DevRunnerError as exc:
        fail(ctx, exc)
        return

    if result.already_active:
        message = "Project already has an active run"
    elif wait:
        message = f"Run stopped with status {run_model.status}"
    else:
        message = "Run queued; process it with `devrunner run process`"
    render_run_status(ctx, run_model, message)


@run.command("show")
@click.argument("project_id")
@click.argument("run_id")
@click.pass_context
def run_show(ctx, project_id, run_id):
    """Show a run with its iterations and gate results."""
    context = get_service_context()
    db = get_db(context)
    try:
        details = build_run_control(context, db, wait=False).get_run(project_id, run_id)
    except DevRunnerError as exc:
        fail(ctx, exc)
        return
    render_run(ctx, details)


@run.command("events")
@click.argument("run_id")
@click.option("--after", "after_sequence", type=int, default=0, help="Only events after this sequence")
@click.option("--limit", "-n", type=int, default=200, help="Max events")
@click.pass_context
def run_events(ctx, run_id, after_sequence, limit):
    """List run events in sequence order."""
    from devrunner.services.events import RunEventLog

    context = get_service_context()
    db = get_db(context)
    log = RunEventLog(context, db)
    events = log.list_events(run_id, after_sequence, limit=limit)

    if wants_json(ctx):
        echo_json({"events": events, "retryBoundary": log.get_retry_boundary(run_id)})
        return

    table = Table(title=f"Events for {run_id}")
    table.add_column("Seq", justify="right", style="cyan")
    table.add_column("Type", style="magenta")
    table.add_column("Message")
    table.add_column("Created")
    for event in events:
        table.add_row(str(event["sequence"]), event["eventType"], event["message"], str(event["createdAt"]))
    console.print(table)


@run.command("cancel")
@click.argument("project_id")
@click.argument("run_id")
@click.pass_context
def run_cancel(ctx, project_id, run_id):
    """Cancel a run. Terminal runs are returned unchanged."""
    context = get_service_context()
    db = get_db(context)
    try:
        updated = build_run_control(context, db, wait=False).cancel_run(project_id, run_id)
    except DevRunnerError as exc:
        fail(ctx, exc)
        return
    render_run_status(ctx, updated, f"Run status: {updated.status}")


@run.command("retry")
@click.argument("project_id")
@click.argument("run_id")
@click.option("--wait", is_flag=True, help="Process the run in this process until it stops")
@click.pass_context
def run_retry(ctx, project_id, run_id, wait):
    """Retry a failed or parked run from its failed iteration."""
    context = get_service_context()
    db = get_db(context)
    try:
        build_run_control(context, db, wait=wait).retry_run(project_id, run_id)
        updated = db.get_run(run_id)
    except DevRunnerError as exc:
        fail(ctx, exc)
        return
    render_run_status(ctx, updated, "Run retry requested")


@run.command("recover")
@click.argument("project_id")
@click.argument("run_id")
@click.option("--wait", is_flag=True, help="Process the run in this process until it stops")
@click.pass_context
def run_recover(ctx, project_id, run_id, wait):
    """Resume a QUEUED or RUNNING run that has no live worker."""
    context = get_service_context()
    db = get_db(context)
    try:
        result = build_run_control(context, db, wait=wait).recover_run(project_id, run_id)
        updated = db.get_run(run_id)
    except DevRunnerError as exc:
        fail(ctx, exc)
        return
    message = "Run is already processing" if result.already_processing else "Run manually resumed"
    render_run_status(ctx, updated, message)


@run.command("checkpoint")
@click.argument("project_id")
@click.argument("run_id")
@click.argument("iteration_index", type=int)
@click.argument("action", type=click.Choice(["pause", "resume", "approve"]))
@click.option("--wait", is_flag=True, help="Process the run in this process until it stops")
@click.pass_context
def run_checkpoint(ctx, project_id, run_id, iteration_index, action, wait):
    """Pause, resume or approve a run at an iteration."""
    context = get_service_context()
    db = get_db(context)
    try:
        build_run_control(context, db, wait=wait).checkpoint_action(project_id, run_id, iteration_index, action)
        updated = db.get_run(run_id)
    except DevRunnerError as exc:
        fail(ctx, exc)
        return
    render_run_status(ctx, updated, f"Checkpoint action applied: {action}")


@run.command("process")
@click.argument("run_id")
@click.pass_context
def run_process(ctx, run_id):
    """Process a run inline until it finishes or parks."""
    from devrunner.services.orchestrator import OrchestratorService

    context = get_service_context()
    db = get_db(context)
    try:
        db.get_run(run_id)
    except KeyError:
        fail(ctx, ValidationError(f"Run {run_id} not found", metadata={"run_id": run_id}))
        return

    OrchestratorService(context, db).process_run(run_id)
    updated = db.get_run(run_id)
    render_run_status(ctx, updated, f"Run stopped with status {updated.status}")
    if updated.status == "FAILED":
        sys.exit(EXIT_RUNTIME_ERROR)


# =============================================================================
# Quality Gate Commands
# =============================================================================

@cli.group()
def gates():
    """Quality gate commands."""
    pass


@gates.command("run")
@click.argument("path", type=click.Path(exists=True, file_okay=False))
@click.option("--tag", "feature_tags", multiple=True, help="Feature tag for the BDD gate (repeatable)")
@click.pass_context
def gates_run(ctx, path, feature_tags):
    """Run the gate chain against a workspace directory."""
    from devrunner.qa.diagnostics import build_failed_gate_summary
    from devrunner.qa.gates.interface import GateContext
    from devrunner.services.quality import QualityGateRunner

    context = get_service_context()
    runner = QualityGateRunner(context)
    results = runner.run_quality_gates(
        GateContext(workspace_root=str(Path(path).resolve()), feature_tags=list(feature_tags))
    )
    failed = [r for r in results if not r.passed]
    summary: Optional[str] = build_failed_gate_summary(results) if failed else None

    if wants_json(ctx):
        echo_json({"passed": not failed, "summary": summary, "results": [r.to_dict() for r in results]})
    else:
        table = Table(title=f"Quality gates for {path}")
        table.add_column("Gate", style="cyan")
        table.add_column("Result")
        table.add_column("Duration", justify="right")
        table.add_column("Reason")
        for result in results:
            table.add_row(
                result.gate_type,
                "[green]passed[/green]" if result.passed else "[red]failed[/red]",
                f"{result.duration_ms}ms",
                str(result.report.get("reason") or result.report.get("mode") or ""),
            )
        console.print(table)
        if summary:
            console.print(f"[red]{summary}[/red]")

    if failed:
        sys.exit(EXIT_RUNTIME_ERROR)


if __name__ == "__main__":
    cli()
