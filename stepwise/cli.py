"""Command line interface for inspecting workflows and answering escalations."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Optional

import typer

from stepwise.config import StepwiseConfig, load_config
from stepwise.contracts import EscalationStatus
from stepwise.errors import (
    AlreadyResolvedError,
    CorruptEscalationError,
    CorruptStateError,
    EscalationNotFoundError,
)
from stepwise.escalation import EscalationQueue
from stepwise.persistence import get_state_store

app = typer.Typer(help="CLI for stepwise workflows")

# Command groups
escalation_app = typer.Typer(help="Commands for answering escalations")
workflow_app = typer.Typer(help="Commands for inspecting workflows")

app.add_typer(escalation_app, name="escalation")
app.add_typer(workflow_app, name="workflow")


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(None, help="Path to stepwise.yaml"),
    log_level: str = typer.Option("WARNING", help="Logging level"),
) -> None:
    """stepwise CLI entry point."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = load_config(config)


def _config(ctx: typer.Context) -> StepwiseConfig:
    return ctx.obj if isinstance(ctx.obj, StepwiseConfig) else load_config()


def _queue(ctx: typer.Context) -> EscalationQueue:
    return EscalationQueue(_config(ctx).storage.escalations_dir)


def _parse_response(raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


@escalation_app.command("list")
def escalation_list(
    ctx: typer.Context,
    status: Optional[EscalationStatus] = typer.Option(None, help="Filter by status"),
    workflow_id: Optional[str] = typer.Option(None, help="Filter by workflow"),
) -> None:
    """
    List escalations, oldest first.

    Example:
        stepwise escalation list --status pending
        # Output: esc-1f0c...    pending    wf-42    step 2    Which database?
    """
    records = asyncio.run(_queue(ctx).list(status=status, workflow_id=workflow_id))
    if not records:
        typer.echo("No escalations found")
        return
    for record in records:
        typer.echo(
            f"{record.id}\t{record.status.value}\t{record.workflow_id}\t"
            f"step {record.step_index}\t{record.question}"
        )


@escalation_app.command("show")
def escalation_show(ctx: typer.Context, escalation_id: str) -> None:
    """Show one escalation with its context and response."""
    try:
        record = asyncio.run(_queue(ctx).get_by_id(escalation_id))
    except EscalationNotFoundError:
        typer.secho("Escalation not found", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    except (CorruptEscalationError, ValueError) as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Escalation {record.id}: {record.status.value}")
    typer.echo(f"Workflow: {record.workflow_id} (step {record.step_index})")
    typer.echo(f"Question: {record.question}")
    if record.confidence is not None:
        typer.echo(f"Confidence: {record.confidence:.2f}")
    if record.context:
        typer.echo(f"Context: {json.dumps(record.context, default=str)}")
    if record.status != EscalationStatus.PENDING:
        typer.echo(f"Response: {json.dumps(record.response, default=str)}")
        typer.echo(f"Resolved at: {record.resolved_at}")


@escalation_app.command("respond")
def escalation_respond(ctx: typer.Context, escalation_id: str, response: str) -> None:
    """
    Answer a pending escalation.

    ``response`` is parsed as JSON when possible, otherwise kept as text. The
    owning process picks the answer up and resumes the paused workflow.

    Example:
        stepwise escalation respond esc-1f0c... approve
        stepwise escalation respond esc-1f0c... '{"database": "postgres"}'
    """
    try:
        record = asyncio.run(_queue(ctx).respond(escalation_id, _parse_response(response)))
    except EscalationNotFoundError:
        typer.secho("Escalation not found", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    except (AlreadyResolvedError, CorruptEscalationError, ValueError) as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(
        f"Escalation {record.id} resolved after {record.resolution_time_ms}ms; "
        f"workflow {record.workflow_id} will resume at step {record.step_index}"
    )


@escalation_app.command("metrics")
def escalation_metrics(ctx: typer.Context) -> None:
    """Show escalation counts and average resolution time."""
    metrics = asyncio.run(_queue(ctx).get_metrics())
    typer.echo(f"Pending: {metrics.pending_count}")
    typer.echo(f"Resolved: {metrics.resolved_count}")
    typer.echo(f"Cancelled: {metrics.cancelled_count}")
    typer.echo(f"Average resolution time: {metrics.avg_resolution_time_ms:.0f}ms")
    for workflow_id, count in sorted(metrics.by_workflow.items()):
        typer.echo(f"  {workflow_id}: {count}")


@workflow_app.command("list")
def workflow_list(ctx: typer.Context) -> None:
    """
    List all persisted workflows with their current status.

    Example:
        stepwise workflow list
        # Output: wf-42    paused    step 2
    """
    store = get_state_store(_config(ctx))

    async def _collect() -> list[str]:
        lines = []
        for workflow_id in await store.list_ids():
            try:
                state = await store.load(workflow_id)
            except CorruptStateError:
                lines.append(f"{workflow_id}\tcorrupt")
                continue
            if state is not None:
                lines.append(f"{state.id}\t{state.status.value}\tstep {state.current_step_index}")
        return lines

    lines = asyncio.run(_collect())
    if not lines:
        typer.echo("No workflows found")
        return
    for line in lines:
        typer.echo(line)


@workflow_app.command("show")
def workflow_show(ctx: typer.Context, workflow_id: str) -> None:
    """Show workflow status, variables and the step log."""
    store = get_state_store(_config(ctx))
    try:
        state = asyncio.run(store.load(workflow_id))
    except CorruptStateError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=2)
    if state is None:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    typer.echo(f"Workflow {state.id}: {state.status.value} (step {state.current_step_index})")
    if state.variables:
        typer.echo(f"Variables: {json.dumps(state.variables, default=str)}")
    if state.pending_escalation_id:
        typer.echo(f"Pending escalation: {state.pending_escalation_id}")
    if state.last_error:
        typer.echo(f"Last error: {state.last_error}")
    for entry in state.step_log:
        outcome = entry.outcome.value if entry.outcome else "running"
        typer.echo(
            f"- [{entry.step_index}] {entry.step_name}: {outcome} "
            f"(attempts {entry.attempts}, retries {entry.retries}, {entry.duration_ms}ms)"
        )


if __name__ == "__main__":
    app()
