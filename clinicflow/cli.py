"""Command line interface for operating clinicflow executions."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Optional, TypeVar

import typer

from clinicflow.cli_utils.flows import (
    format_execution,
    format_steps,
    format_summary,
    format_task,
    load_flow_file,
)
from clinicflow.config import load_config
from clinicflow.engine import FlowEngine
from clinicflow.errors import ClinicflowError
from clinicflow.form_end import ContentAccessFormEndHandler
from clinicflow.graph import linearize
from clinicflow.notifications import get_dispatcher
from clinicflow.persistence import get_repository
from clinicflow.scheduler import DelayTaskProcessor

T = TypeVar("T")

app = typer.Typer(help="CLI for clinicflow executions")

# Command groups
flow_app = typer.Typer(help="Commands for inspecting flow definitions")
execution_app = typer.Typer(help="Commands for managing patient executions")
delay_app = typer.Typer(help="Commands for the delay task queue")
scheduler_app = typer.Typer(help="Commands for the periodic delay processor")

app.add_typer(flow_app, name="flow")
app.add_typer(execution_app, name="execution")
app.add_typer(delay_app, name="delay")
app.add_typer(scheduler_app, name="scheduler")


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", help="Logging level (DEBUG, INFO, ...)"),
) -> None:
    """clinicflow CLI entry point."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s - %(levelname)s - [%(name)s] - %(message)s",
    )


def _run(coro: Awaitable[T]) -> T:
    try:
        return asyncio.run(coro)
    except ClinicflowError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _engine() -> FlowEngine:
    config = load_config()
    repository = get_repository()
    return FlowEngine(
        repository,
        form_end_handler=ContentAccessFormEndHandler(
            repository, access_days=config.form_end.content_access_days
        ),
    )


def _processor() -> DelayTaskProcessor:
    config = load_config()
    return DelayTaskProcessor(
        _engine(),
        get_dispatcher(config=config),
        reclaim_after_minutes=config.scheduler.reclaim_after_minutes,
        batch_size=config.scheduler.batch_size,
    )


async def _process_once(
    processor: DelayTaskProcessor, forced: bool, execution_id: Optional[str]
):
    await processor.dispatcher.connect()
    try:
        return await processor.process(forced=forced, execution_id=execution_id)
    finally:
        await processor.dispatcher.disconnect()


# ----------------------------------------------------------------------
# flow
@flow_app.command("linearize")
def flow_linearize(flow_json: Path) -> None:
    """
    Print the step list a flow would be assigned with.

    Branching steps list every outgoing branch; the default branch is the one
    inlined after them.

    Example:
        clinicflow flow linearize ./flows/anamnese.json
    """
    try:
        flow = load_flow_file(flow_json)
        steps = linearize(flow)
    except ClinicflowError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Flow {flow.name} ({flow.id}): {len(steps)} steps")
    for line in format_steps(steps):
        typer.echo(line)


# ----------------------------------------------------------------------
# execution
@execution_app.command("assign")
def execution_assign(flow_json: Path, patient_id: str) -> None:
    """
    Assign a flow to a patient and print the new execution.

    Example:
        clinicflow execution assign ./flows/anamnese.json patient-42
    """
    try:
        flow = load_flow_file(flow_json)
    except ClinicflowError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    record = _run(_engine().assign_flow(flow, patient_id))
    typer.echo(f"Execution created: {record.id}")
    for line in format_execution(record):
        typer.echo(line)


@execution_app.command("list")
def execution_list(
    patient: Optional[str] = typer.Option(None, help="Only this patient's executions"),
) -> None:
    """List executions with their status and progress."""
    records = _run(get_repository().list_executions(patient_id=patient))
    if not records:
        typer.echo("No executions found")
        return
    for record in records:
        typer.echo(
            f"{record.id}\t{record.patient_id}\t{record.flow_name}\t"
            f"{record.status}\t{record.progress}%"
        )


@execution_app.command("show")
def execution_show(execution_id: str) -> None:
    """Show an execution and its step list."""
    record = _run(get_repository().get_execution(execution_id))
    if record is None:
        typer.echo("Execution not found")
        raise typer.Exit(code=1)
    for line in format_execution(record):
        typer.echo(line)


@execution_app.command("complete")
def execution_complete(
    execution_id: str,
    step_id: str,
    response: Optional[str] = typer.Option(None, help="Step response as JSON"),
) -> None:
    """
    Complete a step on behalf of the patient.

    Example:
        clinicflow execution complete <id> question-1 --response '{"value": "Sim"}'
    """
    payload: Any = None
    if response:
        try:
            payload = json.loads(response)
        except ValueError as exc:
            typer.secho(f"Invalid --response JSON: {exc}", fg=typer.colors.RED)
            raise typer.Exit(code=1)
    result = _run(_engine().complete_step(execution_id, step_id, payload))
    if not result.changed:
        typer.echo("Nothing to do: step already completed")
    typer.echo(
        f"Execution {result.execution_id}: {result.status} "
        f"{result.progress}% ({result.completed_steps}/{result.total_steps})"
    )
    if result.current_step is not None:
        typer.echo(f"Current step: {result.current_step.title} ({result.current_step.node_id})")
    if result.next_step_available_at is not None:
        typer.echo(f"Next step available at: {result.next_step_available_at.isoformat()}")
    if result.form_end_processed is False:
        typer.secho("FormEnd processing failed; retry with 'execution form-end'", fg=typer.colors.YELLOW)


@execution_app.command("form-end")
def execution_form_end(execution_id: str) -> None:
    """Retry the FormEnd handler of an execution stuck on a formEnd step."""
    result = _run(_engine().process_form_end(execution_id))
    if not result.form_end_processed:
        typer.secho("FormEnd processing failed", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Execution {result.execution_id}: {result.status} {result.progress}%")


@execution_app.command("pause")
def execution_pause(execution_id: str) -> None:
    """Pause an in-progress execution; its delay tasks wait until resumed."""
    record = _run(_engine().pause_execution(execution_id))
    typer.echo(f"Execution {record.id}: {record.status}")


@execution_app.command("resume")
def execution_resume(execution_id: str) -> None:
    """Resume a paused execution."""
    record = _run(_engine().resume_execution(execution_id))
    typer.echo(f"Execution {record.id}: {record.status}")


@execution_app.command("fail")
def execution_fail(execution_id: str) -> None:
    """Mark an execution as failed."""
    record = _run(_engine().fail_execution(execution_id))
    typer.echo(f"Execution {record.id}: {record.status}")


# ----------------------------------------------------------------------
# delay
@delay_app.command("status")
def delay_status(limit: int = typer.Option(10, help="Tasks to show per section")) -> None:
    """Show pending and recently processed delay tasks."""
    status = _run(_processor().queue_status(limit=limit))
    typer.echo(f"Pending: {status.pending_count} (due now: {status.due_count})")
    for task in status.pending:
        typer.echo(format_task(task))
    typer.echo(f"Recently processed: {len(status.recently_processed)}")
    for task in status.recently_processed:
        typer.echo(format_task(task))


@delay_app.command("process")
def delay_process(
    forced: bool = typer.Option(False, "--forced", help="Ignore trigger times"),
    execution_id: Optional[str] = typer.Option(None, help="Only this execution's tasks"),
) -> None:
    """
    Run the delay task processor once and print its summary.

    Example:
        clinicflow delay process --forced --execution-id <id>
    """
    summary = _run(_process_once(_processor(), forced, execution_id))
    typer.echo(format_summary(summary))
    if summary.errors:
        raise typer.Exit(code=1)


@delay_app.command("create-test")
def delay_create_test(
    execution_id: str,
    minutes: float = typer.Option(1.0, help="Minutes until the task is due"),
) -> None:
    """Queue a formStart delay task for an execution."""
    task = _run(_processor().create_test_task(execution_id, delay_minutes=minutes))
    typer.echo(f"Delay task created: {task.id} due {task.trigger_at.isoformat()}")


# ----------------------------------------------------------------------
# scheduler
@scheduler_app.command("run")
def scheduler_run(
    interval: Optional[float] = typer.Option(None, help="Seconds between cycles"),
    lifespan: Optional[float] = typer.Option(None, help="Stop after this many seconds"),
) -> None:
    """
    Process delay tasks periodically.

    Example:
        clinicflow scheduler run --interval 30
        clinicflow scheduler run --lifespan 300
    """
    config = load_config()
    interval_seconds = interval if interval is not None else config.scheduler.interval_seconds
    processor = _processor()
    typer.echo(f"Processing delay tasks every {interval_seconds}s")
    cycles = _run(processor.run_forever(interval_seconds=interval_seconds, lifespan=lifespan))
    typer.echo(f"Stopped after {cycles} cycle(s)")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
