"""Command line interface for signoff workflows and workers."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, TypeVar

import typer
import yaml

from .errors import SignoffError
from .orchestrator import Orchestrator

T = TypeVar("T")

app = typer.Typer(help="CLI for signoff approval workflows")

# Command groups
definition_app = typer.Typer(help="Commands for managing workflow definitions")
workflow_app = typer.Typer(help="Commands for managing workflows")
approval_app = typer.Typer(help="Commands for approvals")
worker_app = typer.Typer(help="Commands for running background workers")

app.add_typer(definition_app, name="definition")
app.add_typer(workflow_app, name="workflow")
app.add_typer(approval_app, name="approval")
app.add_typer(worker_app, name="worker")


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", "--log-level", help="Python logging level"),
) -> None:
    """signoff CLI entry point."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _run(operation: Callable[[Orchestrator], Awaitable[T]], drain: bool = True) -> T:
    """Run ``operation`` against a fresh orchestrator and report engine errors.

    With the in-memory queue nothing outside this process can consume the
    jobs an operation enqueues, so they are processed before returning.
    """

    async def runner() -> T:
        orchestrator = Orchestrator.from_config()
        await orchestrator.connect()
        try:
            result = await operation(orchestrator)
            if drain and orchestrator.runs_in_process:
                await orchestrator.process_pending()
            return result
        finally:
            await orchestrator.close()

    try:
        return asyncio.run(runner())
    except SignoffError as exc:
        typer.secho(f"Error ({exc.code}): {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _parse_metadata(raw: Optional[str]) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        typer.secho(f"Invalid metadata JSON: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if not isinstance(data, dict):
        typer.secho("Metadata must be a JSON object", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    return data


# ---------------------------------------------------------------------------
# Definitions


@definition_app.command("create")
def definition_create(
    path: Path,
    name: Optional[str] = typer.Option(None, help="Override the name in the file"),
) -> None:
    """
    Create a new version of a workflow definition from a YAML or JSON file.

    The file holds ``name``, an optional ``description`` and the list of
    ``steps``. Each new definition for an existing name gets the next
    version number.

    Example:
        signoff definition create ./expense_approval.yaml
    """
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    data = yaml.safe_load(path.read_text()) or {}
    definition_name = name or data.get("name")
    if not definition_name:
        typer.secho("Definition name is required", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    definition = _run(
        lambda o: o.create_definition(
            definition_name, data.get("steps") or [], data.get("description")
        )
    )
    typer.echo(f"Created {definition.name} v{definition.version} ({len(definition.steps)} steps)")


@definition_app.command("list")
def definition_list() -> None:
    """List workflow definitions, newest version first per name."""
    definitions = _run(lambda o: o.list_definitions())
    if not definitions:
        typer.echo("No definitions found")
        return
    for definition in definitions:
        status = "active" if definition.is_active else "inactive"
        typer.echo(
            f"{definition.name}\tv{definition.version}\t{status}\t{len(definition.steps)} steps"
        )


@definition_app.command("deactivate")
def definition_deactivate(name: str) -> None:
    """Deactivate every version of a definition."""
    count = _run(lambda o: o.deactivate_definition(name))
    typer.echo(f"Deactivated {count} version(s) of {name}")


# ---------------------------------------------------------------------------
# Workflows


@workflow_app.command("create")
def workflow_create(
    workflow_type: str,
    metadata: Optional[str] = typer.Option(None, help="Workflow metadata as a JSON object"),
    start: bool = typer.Option(True, help="Run the workflow right away"),
) -> None:
    """
    Create a workflow from the active definition of WORKFLOW_TYPE.

    Example:
        signoff workflow create expense_approval --metadata '{"amount": 500, "description": "Team lunch"}'
    """
    data = _parse_metadata(metadata)
    workflow = _run(lambda o: o.create_workflow(workflow_type, data, start=start))
    typer.echo(f"Workflow {workflow.id}: {workflow.state.value}")


@workflow_app.command("execute")
def workflow_execute(workflow_id: str) -> None:
    """Resume a workflow from its first unfinished step."""
    workflow = _run(lambda o: o.execute_workflow(workflow_id))
    typer.echo(f"Workflow {workflow.id}: {workflow.state.value}")


@workflow_app.command("list")
def workflow_list() -> None:
    """
    List all workflows with their current state.

    Example:
        signoff workflow list
        # Output: 3f0c...    expense_approval    WAITING_APPROVAL
    """
    workflows = _run(lambda o: o.list_workflows())
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        typer.echo(f"{wf.id}\t{wf.type}\t{wf.state.value}")


@workflow_app.command("show")
def workflow_show(
    workflow_id: str,
    events: int = typer.Option(20, help="Number of recent events to show"),
) -> None:
    """Show a workflow with its steps, approvals and recent events."""
    details = _run(lambda o: o.get_workflow_details(workflow_id, event_limit=events))
    wf = details.workflow
    typer.echo(f"Workflow {wf.id}: {wf.state.value}")
    typer.echo(f"Type: {wf.type} v{wf.definition_version}")
    if wf.metadata:
        typer.echo(f"Metadata: {json.dumps(wf.metadata)}")
    for step in wf.ordered_steps():
        marker = ">" if step.idx == wf.current_step_index else "-"
        label = step.config.action or step.config.title or step.config.channel or ""
        typer.echo(
            f"{marker} [{step.idx}] {step.kind.value} {label}: {step.state.value}"
            + (f" (replayed {step.replay_count}x)" if step.replay_count else "")
            + f"  id={step.id}"
        )
    if details.approvals:
        typer.echo("Approvals:")
        for approval in details.approvals:
            typer.echo(
                f"  {approval.id} {approval.status.value} via {approval.channel}"
                f" expires {approval.expires_at.isoformat()}"
            )
    if details.events:
        typer.echo("Events:")
        for event in details.events:
            typer.echo(f"  {event.created_at.isoformat()} {event.type.value}")


@workflow_app.command("replay")
def workflow_replay(
    workflow_id: str,
    step_id: str,
    reason: Optional[str] = typer.Option(None, help="Why the step is replayed"),
    actor: str = typer.Option("system", help="Who requested the replay"),
) -> None:
    """Replay a step and reset every later step to PENDING."""
    result = _run(lambda o: o.replay_step(workflow_id, step_id, reason, actor=actor))
    typer.echo(result.message)


@workflow_app.command("step")
def workflow_step(
    workflow_id: str,
    step_id: str,
    reason: Optional[str] = typer.Option(None, help="Why the step is run"),
    actor: str = typer.Option("system", help="Who requested the run"),
) -> None:
    """Run a step: replay it if already passed, otherwise execute it now."""
    result = _run(
        lambda o: o.execute_or_replay_step(workflow_id, step_id, reason, actor=actor)
    )
    typer.echo(f"[{result.mode}] {result.message}")


@workflow_app.command("restart")
def workflow_restart(
    workflow_id: str,
    actor: str = typer.Option("system", help="Who requested the restart"),
    reason: Optional[str] = typer.Option(None, help="Why the workflow is restarted"),
) -> None:
    """Reset all steps and run the workflow from the beginning."""
    workflow = _run(lambda o: o.restart_workflow(workflow_id, actor=actor, reason=reason))
    typer.echo(f"Workflow {workflow.id}: {workflow.state.value}")


@workflow_app.command("retry")
def workflow_retry(step_id: str) -> None:
    """Retry a failed step and continue its workflow."""
    workflow = _run(lambda o: o.retry_step(step_id))
    typer.echo(f"Workflow {workflow.id}: {workflow.state.value}")


@workflow_app.command("delete")
def workflow_delete(workflow_id: str) -> None:
    """Delete a workflow with its steps, approvals and history."""
    _run(lambda o: o.delete_workflow(workflow_id))
    typer.echo(f"Deleted workflow {workflow_id}")


# ---------------------------------------------------------------------------
# Approvals


@approval_app.command("decide")
def approval_decide(
    token: str,
    decision: str = typer.Argument(..., help="approved or rejected"),
    feedback: Optional[str] = typer.Option(None, help="Comment for the record"),
    by: str = typer.Option("system", "--by", help="Who made the decision"),
) -> None:
    """Submit an approve/reject decision for an approval token."""
    receipt = _run(lambda o: o.submit_approval_decision(token, decision, feedback, by))
    if receipt.queued:
        typer.echo(f"Decision {receipt.decision} queued as {receipt.job_id}")
    else:
        typer.echo(f"Decision already queued as {receipt.job_id}")


@approval_app.command("resend")
def approval_resend(approval_id: str) -> None:
    """Reissue an expired approval with a new token."""
    result = _run(lambda o: o.resend_approval(approval_id))
    typer.echo(f"Approval {result.approval_id} resent, expires {result.new_expiry.isoformat()}")
    typer.echo(f"Token: {result.new_token}")


@approval_app.command("sweep")
def approval_sweep() -> None:
    """Expire every pending approval past its deadline."""
    count = _run(lambda o: o.run_expiry_sweep())
    typer.echo(f"Expired {count} approval(s)")


# ---------------------------------------------------------------------------
# Workers


@worker_app.command("approvals")
def worker_approvals(
    lifespan: Optional[float] = typer.Option(None, help="Seconds to run (default: forever)"),
) -> None:
    """Run the worker that applies queued approval decisions."""
    typer.echo("Starting approval worker")
    _run(lambda o: o.approval_worker().start(lifespan=lifespan), drain=False)


@worker_app.command("notifications")
def worker_notifications(
    lifespan: Optional[float] = typer.Option(None, help="Seconds to run (default: forever)"),
) -> None:
    """Run the worker that delivers approval notifications."""
    typer.echo("Starting notification worker")
    _run(lambda o: o.notification_worker().start(lifespan=lifespan), drain=False)


@worker_app.command("sweeper")
def worker_sweeper(
    interval: Optional[float] = typer.Option(None, help="Seconds between sweeps"),
    lifespan: Optional[float] = typer.Option(None, help="Seconds to run (default: forever)"),
) -> None:
    """Periodically expire overdue approvals."""
    typer.echo("Starting expiry sweeper")
    _run(
        lambda o: o.sweeper.run_periodically(
            interval=interval or o.config.workers.sweep_interval, lifespan=lifespan
        ),
        drain=False,
    )


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
