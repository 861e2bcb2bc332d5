"""Helpers to load flow files and render executions for the CLI."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Iterator, List

from pydantic import ValidationError

from clinicflow.contracts import FlowDefinition, ProcessingSummary, StepDescriptor
from clinicflow.errors import InvalidFlowError
from clinicflow.persistence.models import DelayTask, ExecutionRecord


def load_flow_file(path: Path) -> FlowDefinition:
    """Read a flow definition exported by the flow builder.

    Accepts both ``{"id", "name", ...}`` and the database row shape that uses
    ``nome`` for the flow name.
    """

    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise InvalidFlowError(f"Cannot read flow file {path}: {exc}") from exc
    if isinstance(data, dict) and "name" not in data and "nome" in data:
        data = {**data, "name": data["nome"]}
    try:
        return FlowDefinition.model_validate(data)
    except ValidationError as exc:
        raise InvalidFlowError(f"Invalid flow file {path}: {exc}") from exc


def format_steps(steps: List[StepDescriptor], indent: int = 0) -> Iterator[str]:
    pad = "  " * indent
    for step in steps:
        mark = "x" if step.completed else " "
        yield f"{pad}{step.order:>2}. [{mark}] {step.node_type}: {step.title} ({step.node_id})"
        for branch in step.branches:
            label = branch.label or branch.handle or branch.edge_id
            yield f"{pad}    -> {label} ({branch.target})"


def format_execution(record: ExecutionRecord) -> Iterator[str]:
    yield f"Execution {record.id}: {record.status}"
    yield f"Flow: {record.flow_name} ({record.flow_id})"
    yield f"Patient: {record.patient_id}"
    yield (
        f"Progress: {record.progress}% "
        f"({record.completed_steps}/{record.total_steps} steps)"
    )
    current = record.current_step.current
    if current is not None:
        yield f"Current step: {current.title} ({current.node_id})"
    if record.next_step_available_at:
        yield f"Next step available at: {record.next_step_available_at.isoformat()}"
    yield from format_steps(record.current_step.steps)


def format_task(task: DelayTask) -> str:
    state = "processed" if task.processed else "claimed" if task.processing_started_at else "pending"
    return (
        f"{task.id}\t{task.execution_id}\t{task.next_node_type}\t"
        f"{task.trigger_at.isoformat()}\t{state}"
    )


def format_summary(summary: ProcessingSummary) -> str:
    fields = summary.model_dump()
    return ", ".join(f"{name}={value}" for name, value in fields.items())
