"""Execution state machine.

Every mutation of an execution goes through :meth:`FlowEngine._mutate`: load
the row, apply a pure transition to the loaded copy, and commit it only if
the stored version is still the one that was loaded. Losing writers reload
and retry, so concurrent patient submissions, delay processing and admin
actions never overwrite each other.
"""

from __future__ import annotations

import logging
import math
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, NamedTuple, Optional

from .constants import (
    BRANCH_NODE_TYPES,
    DEFAULT_DELAY_UNIT,
    DELAY_UNITS,
    FALLBACK_DELAY_SECONDS,
    MAX_COMMIT_ATTEMPTS,
    MAX_DELAY_SECONDS,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_IN_PROGRESS,
    STATUS_PAUSED,
    STATUS_PENDING,
    TERMINAL_STATUSES,
)
from .contracts import (
    FlowDefinition,
    StepCompletion,
    StepCursor,
    StepDescriptor,
)
from .errors import (
    ConcurrentUpdateError,
    ExecutionNotFoundError,
    InvalidFlowError,
    InvalidStatusTransitionError,
    StepNotAvailableError,
)
from .expressions import FieldValue, evaluate_formula, to_field_value
from .expressions.values import as_number, parse_number
from .form_end import ContentAccessFormEndHandler, FormEndHandler
from .graph import linearize, linearize_from, select_branch
from .persistence.models import DelayTask, ExecutionRecord
from .persistence.repository import ExecutionRepository

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

# Outcomes of checking a delay task against its execution.
DELAY_DUE = "due"
DELAY_MISSING = "missing"
DELAY_TERMINAL = "terminal"
DELAY_PAUSED = "paused"
DELAY_SUPERSEDED = "superseded"

_MAX_FORM_END_CHAIN = 10


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def compute_progress(completed_steps: int, total_steps: int) -> int:
    if total_steps <= 0:
        return 0
    return max(0, min(100, round_half_up(100 * completed_steps / total_steps)))


def delay_duration(config: Dict[str, Any]) -> timedelta:
    """Length of a ``delay`` step: ``quantidade`` times ``tipoIntervalo``."""

    amount = parse_number(config.get("quantidade"))
    if amount is None or amount <= 0:
        amount = 1
    unit = config.get("tipoIntervalo") or DEFAULT_DELAY_UNIT
    seconds = DELAY_UNITS.get(unit)
    if seconds is None:
        logger.warning(f"Unknown delay unit {unit!r}; waiting {FALLBACK_DELAY_SECONDS}s")
        return timedelta(seconds=FALLBACK_DELAY_SECONDS)
    total = amount * seconds
    if total > MAX_DELAY_SECONDS:
        logger.warning(f"Delay of {amount:g} {unit} is too long; waiting {MAX_DELAY_SECONDS}s")
        total = MAX_DELAY_SECONDS
    return timedelta(seconds=total)


def form_name(step: Optional[StepDescriptor]) -> str:
    if step is None:
        return ""
    return step.config.get("formName") or step.title


def field_responses(record: ExecutionRecord) -> Dict[str, FieldValue]:
    """Nomenclature-keyed values collected by the completed steps of ``record``."""

    responses: Dict[str, FieldValue] = {}
    for step in record.current_step.steps:
        if not step.completed or not isinstance(step.response, dict):
            continue
        nomenclatura = step.config.get("nomenclatura")
        if step.node_type == "calculator":
            for key in ("values", "answers"):
                for name, raw in (step.response.get(key) or {}).items():
                    value = to_field_value(raw)
                    if value is not None:
                        responses[name] = value
            result = to_field_value(step.response.get("result"))
            if nomenclatura and result is not None:
                responses[nomenclatura] = result
        elif nomenclatura:
            value = to_field_value(step.response.get("value"))
            if value is not None:
                responses[nomenclatura] = value
    return responses


def delay_task_state(record: Optional[ExecutionRecord], task: DelayTask) -> str:
    """Classify a delay task against the execution it belongs to."""

    if record is None:
        return DELAY_MISSING
    if record.status in TERMINAL_STATUSES:
        return DELAY_TERMINAL
    if record.status == STATUS_PAUSED:
        return DELAY_PAUSED
    cursor = record.current_step
    current = cursor.current
    if current is None or current.node_type != "delay" or current.completed:
        return DELAY_SUPERSEDED
    upcoming = cursor.upcoming
    if (upcoming.node_id if upcoming else "") != task.next_node_id:
        return DELAY_SUPERSEDED
    return DELAY_DUE


class _Outcome(NamedTuple):
    changed: bool
    delay_task: Optional[DelayTask] = None
    detail: Any = None


class DelayAdvance(NamedTuple):
    state: str
    record: Optional[ExecutionRecord]
    delay_task: Optional[DelayTask] = None


class FlowEngine:
    """Assigns flows to patients and moves executions through their steps."""

    def __init__(
        self,
        repository: ExecutionRepository,
        form_end_handler: Optional[FormEndHandler] = None,
        clock: Optional[Clock] = None,
        max_attempts: int = MAX_COMMIT_ATTEMPTS,
    ) -> None:
        self.repository = repository
        self.form_end_handler = form_end_handler or ContentAccessFormEndHandler(repository)
        self._clock = clock or utcnow
        self.max_attempts = max_attempts

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Pure transitions
    def _enter_current(self, record: ExecutionRecord, now: datetime) -> Optional[DelayTask]:
        """Prepare whatever step the cursor points at.

        Branch steps resolve immediately and the cursor moves on, so this
        stops at the first step that waits for the patient, a timer or a
        FormEnd handler. Returns the delay task to insert, if any.
        """

        cursor = record.current_step
        while True:
            step = cursor.current
            if step is None:
                return None
            record.current_node = step.node_id
            step.available_at = now

            if step.node_type == "delay":
                trigger_at = now + delay_duration(step.config)
                upcoming = cursor.upcoming
                if upcoming is not None:
                    upcoming.available_at = trigger_at
                record.next_step_available_at = trigger_at
                task = DelayTask(
                    id=str(uuid.uuid4()),
                    execution_id=record.id,
                    patient_id=record.patient_id,
                    next_node_id=upcoming.node_id if upcoming else "",
                    next_node_type=upcoming.node_type if upcoming else "end",
                    form_name=form_name(upcoming),
                    trigger_at=trigger_at,
                    created_at=now,
                )
                logger.info(
                    f"Execution {record.id} waiting until {trigger_at.isoformat()} "
                    f"(delay task {task.id})"
                )
                return task

            if step.node_type in BRANCH_NODE_TYPES:
                selection = select_branch(step, field_responses(record))
                if selection.branch is not None and cursor.flow is not None:
                    head = cursor.steps[: cursor.current_step_index + 1]
                    cursor.replace_tail(
                        linearize_from(
                            cursor.flow,
                            selection.branch.target,
                            visited=[s.node_id for s in head],
                            first_order=len(head) + 1,
                        )
                    )
                step.response = selection.describe()
                step.completed = True
                step.completed_at = now
                logger.info(
                    f"Execution {record.id} resolved {step.node_type} {step.node_id} "
                    f"to edge {selection.branch.edge_id if selection.branch else None}"
                )
                cursor.advance()
                continue

            return None

    def _refresh(self, record: ExecutionRecord, now: datetime) -> None:
        """Recompute counters and status from the cursor."""

        cursor = record.current_step
        record.total_steps = len(cursor.steps)
        done = sum(1 for step in cursor.steps if step.completed)
        record.completed_steps = min(done, record.total_steps)
        if cursor.is_finished():
            cursor.current_step_index = len(cursor.steps)
            record.completed_steps = record.total_steps
            record.status = STATUS_COMPLETED
            record.completed_at = record.completed_at or now
            record.next_step_available_at = None
            record.current_node = None
        elif record.status == STATUS_PENDING and record.completed_steps > 0:
            record.status = STATUS_IN_PROGRESS
        record.progress = compute_progress(record.completed_steps, record.total_steps)

    def _build_response(
        self, record: ExecutionRecord, step: StepDescriptor, response: Any
    ) -> Any:
        if step.node_type == "calculator":
            payload = dict(response) if isinstance(response, dict) else {}
            known: Dict[str, float] = {}
            for name, value in field_responses(record).items():
                number = as_number(value)
                if number is not None:
                    known[name] = number
            for name, raw in (payload.get("values") or {}).items():
                number = parse_number(raw)
                if number is not None:
                    known[name] = number
            payload["result"] = evaluate_formula(step.config.get("formula") or "", known)
            return payload
        if response is None or isinstance(response, dict):
            return response
        return {"value": response}

    # ------------------------------------------------------------------
    # Commit loop
    async def _load(self, execution_id: str) -> ExecutionRecord:
        record = await self.repository.get_execution(execution_id)
        if record is None:
            raise ExecutionNotFoundError(execution_id)
        return record

    async def _mutate(
        self,
        execution_id: str,
        transition: Callable[[ExecutionRecord, datetime], _Outcome],
    ) -> tuple[ExecutionRecord, _Outcome]:
        for attempt in range(1, self.max_attempts + 1):
            record = await self._load(execution_id)
            expected_version = record.version
            now = self.now()
            outcome = transition(record, now)
            if not outcome.changed:
                return record, outcome
            record.version = expected_version + 1
            record.updated_at = now
            if await self.repository.save_execution(
                record, expected_version, outcome.delay_task
            ):
                return record, outcome
            logger.debug(
                f"Execution {execution_id} changed concurrently (attempt {attempt}); retrying"
            )
        raise ConcurrentUpdateError(execution_id, self.max_attempts)

    # ------------------------------------------------------------------
    # Public API
    async def assign_flow(self, flow: FlowDefinition, patient_id: str) -> ExecutionRecord:
        """Create an execution of ``flow`` for ``patient_id``."""

        steps = linearize(flow)
        if not steps:
            raise InvalidFlowError(f"Flow {flow.id} has no executable steps")
        now = self.now()
        record = ExecutionRecord(
            id=str(uuid.uuid4()),
            flow_id=flow.id,
            flow_name=flow.name,
            patient_id=patient_id,
            status=STATUS_PENDING,
            current_step=StepCursor(steps=steps, flow=flow.model_copy(deep=True)),
            total_steps=len(steps),
            started_at=now,
            updated_at=now,
        )
        task = self._enter_current(record, now)
        self._refresh(record, now)
        await self.repository.create_execution(record, task)
        logger.info(
            f"Assigned flow {flow.id} to patient {patient_id} as execution {record.id} "
            f"({record.total_steps} steps)"
        )
        if self._needs_form_end(record):
            await self._run_form_end(record.id)
            return await self._load(record.id)
        return record

    async def get_execution(self, execution_id: str) -> ExecutionRecord:
        return await self._load(execution_id)

    async def complete_step(
        self,
        execution_id: str,
        step_id: Optional[str] = None,
        response: Any = None,
    ) -> StepCompletion:
        """Complete the patient's current step and move to the next one.

        Completing an already completed step is a no-op, as is any call on a
        finished execution.

        Raises:
            ExecutionNotFoundError: no such execution.
            StepNotAvailableError: the step is not the one the patient may
                complete right now.
        """

        def transition(record: ExecutionRecord, now: datetime) -> _Outcome:
            cursor = record.current_step
            current = cursor.current
            if current is None or record.status == STATUS_COMPLETED:
                return _Outcome(changed=False)
            if step_id is not None and step_id != current.node_id:
                target = cursor.find(step_id)
                if target is not None and target.completed:
                    return _Outcome(changed=False)
                raise StepNotAvailableError(
                    f"Step {step_id} is not the current step of execution {record.id}"
                )
            if record.status in (STATUS_PAUSED, STATUS_FAILED):
                raise StepNotAvailableError(f"Execution {record.id} is {record.status}")
            if current.is_automatic:
                raise StepNotAvailableError(
                    f"Step {current.node_id} ({current.node_type}) completes automatically"
                )
            if current.available_at is not None and current.available_at > now:
                raise StepNotAvailableError(
                    f"Step {current.node_id} is available at {current.available_at.isoformat()}"
                )

            current.response = self._build_response(record, current, response)
            current.completed = True
            current.completed_at = now
            if record.status == STATUS_PENDING:
                record.status = STATUS_IN_PROGRESS
            record.next_step_available_at = None
            cursor.advance()
            task = self._enter_current(record, now)
            self._refresh(record, now)
            return _Outcome(changed=True, delay_task=task, detail=current.node_id)

        record, outcome = await self._mutate(execution_id, transition)
        if outcome.changed:
            logger.info(
                f"Execution {record.id}: step {outcome.detail} completed "
                f"({record.completed_steps}/{record.total_steps}, {record.status})"
            )
        form_end_processed = None
        if outcome.changed and self._needs_form_end(record):
            form_end_processed = await self._run_form_end(record.id)
            record = await self._load(record.id)
        return self._completion(
            record,
            step_id=outcome.detail or step_id,
            changed=outcome.changed,
            delay_task=outcome.delay_task,
            form_end_processed=form_end_processed,
        )

    async def current_step_for_patient(self, execution_id: str) -> Optional[StepDescriptor]:
        record = await self._load(execution_id)
        return self._exposed_step(record, self.now())

    async def process_form_end(self, execution_id: str) -> StepCompletion:
        """Run the FormEnd handler for an execution whose current step is ``formEnd``."""

        record = await self._load(execution_id)
        if not self._needs_form_end(record):
            raise StepNotAvailableError(
                f"Execution {execution_id} is not waiting on a formEnd step"
            )
        processed = await self._run_form_end(execution_id)
        record = await self._load(execution_id)
        return self._completion(record, changed=processed, form_end_processed=processed)

    def _advance_delay(
        self, record: ExecutionRecord, task: DelayTask, now: datetime
    ) -> _Outcome:
        state = delay_task_state(record, task)
        if state != DELAY_DUE:
            return _Outcome(changed=False, detail=state)
        cursor = record.current_step
        delay_step = cursor.current
        delay_step.completed = True
        delay_step.completed_at = now
        delay_step.response = {"triggerAt": task.trigger_at.isoformat()}
        record.status = STATUS_IN_PROGRESS
        record.next_step_available_at = None
        cursor.advance()
        new_task = self._enter_current(record, now)
        self._refresh(record, now)
        return _Outcome(changed=True, delay_task=new_task, detail=DELAY_DUE)

    def preview_delay_advance(
        self, record: ExecutionRecord, task: DelayTask
    ) -> Optional[StepDescriptor]:
        """Step the execution would wait on once ``task`` fires, without saving.

        Branches between the delay and that step are resolved against the
        answers collected so far. Returns ``None`` when the task is not due or
        the flow would finish.
        """

        draft = record.model_copy(deep=True)
        outcome = self._advance_delay(draft, task, self.now())
        if not outcome.changed:
            return None
        return draft.current_step.current

    async def advance_past_delay(self, task: DelayTask) -> DelayAdvance:
        """Complete the delay step ``task`` was created for and enter the next step.

        Nothing is written unless the execution is still waiting on that
        delay; the returned state says why.
        """

        def transition(record: ExecutionRecord, now: datetime) -> _Outcome:
            return self._advance_delay(record, task, now)

        try:
            record, outcome = await self._mutate(task.execution_id, transition)
        except ExecutionNotFoundError:
            return DelayAdvance(state=DELAY_MISSING, record=None)
        if outcome.changed:
            logger.info(
                f"Execution {record.id} advanced past delay to "
                f"{record.current_node or 'end'} ({record.status})"
            )
            if self._needs_form_end(record):
                await self._run_form_end(record.id)
                record = await self._load(record.id)
        return DelayAdvance(state=outcome.detail, record=record, delay_task=outcome.delay_task)

    async def pause_execution(self, execution_id: str) -> ExecutionRecord:
        return await self._set_status(execution_id, STATUS_PAUSED, (STATUS_IN_PROGRESS,))

    async def resume_execution(self, execution_id: str) -> ExecutionRecord:
        return await self._set_status(execution_id, STATUS_IN_PROGRESS, (STATUS_PAUSED,))

    async def fail_execution(self, execution_id: str) -> ExecutionRecord:
        return await self._set_status(
            execution_id, STATUS_FAILED, (STATUS_IN_PROGRESS, STATUS_PAUSED)
        )

    # ------------------------------------------------------------------
    # Helpers
    async def _set_status(
        self, execution_id: str, status: str, allowed_from: tuple[str, ...]
    ) -> ExecutionRecord:
        def transition(record: ExecutionRecord, now: datetime) -> _Outcome:
            if record.status not in allowed_from:
                raise InvalidStatusTransitionError(
                    f"Cannot move execution {record.id} from {record.status} to {status}"
                )
            previous = record.status
            record.status = status
            return _Outcome(changed=True, detail=previous)

        record, outcome = await self._mutate(execution_id, transition)
        logger.info(f"Execution {execution_id}: {outcome.detail} -> {status}")
        return record

    @staticmethod
    def _needs_form_end(record: ExecutionRecord) -> bool:
        current = record.current_step.current
        return (
            record.status not in TERMINAL_STATUSES
            and record.status != STATUS_PAUSED
            and current is not None
            and current.node_type == "formEnd"
            and not current.completed
        )

    async def _run_form_end(self, execution_id: str) -> bool:
        """Run the handler for consecutive formEnd steps; ``False`` if one failed."""

        for _ in range(_MAX_FORM_END_CHAIN):
            record = await self._load(execution_id)
            if not self._needs_form_end(record):
                return True
            step = record.current_step.current
            try:
                result = await self.form_end_handler.handle(record, step, self.now())
            except Exception:
                logger.exception(
                    f"FormEnd handler failed for step {step.node_id} of execution {execution_id}"
                )
                return False

            node_id = step.node_id

            def transition(record: ExecutionRecord, now: datetime) -> _Outcome:
                current = record.current_step.current
                if not self._needs_form_end(record) or current.node_id != node_id:
                    return _Outcome(changed=False)
                current.response = result
                current.completed = True
                current.completed_at = now
                record.status = STATUS_IN_PROGRESS
                record.current_step.advance()
                task = self._enter_current(record, now)
                self._refresh(record, now)
                return _Outcome(changed=True, delay_task=task)

            record, _ = await self._mutate(execution_id, transition)
            logger.info(
                f"Execution {execution_id}: formEnd {step.node_id} processed "
                f"({record.completed_steps}/{record.total_steps}, {record.status})"
            )
        return not self._needs_form_end(await self._load(execution_id))

    def _exposed_step(
        self, record: ExecutionRecord, now: datetime
    ) -> Optional[StepDescriptor]:
        if record.status in TERMINAL_STATUSES or record.status == STATUS_PAUSED:
            return None
        step = record.current_step.current
        if step is None or step.completed or step.is_automatic:
            return None
        if step.available_at is not None and step.available_at > now:
            return None
        return step

    def _completion(
        self,
        record: ExecutionRecord,
        step_id: Optional[str] = None,
        changed: bool = True,
        delay_task: Optional[DelayTask] = None,
        form_end_processed: Optional[bool] = None,
    ) -> StepCompletion:
        return StepCompletion(
            execution_id=record.id,
            step_id=step_id,
            changed=changed,
            status=record.status,
            progress=record.progress,
            completed_steps=min(record.completed_steps, record.total_steps),
            total_steps=record.total_steps,
            current_step=self._exposed_step(record, self.now()),
            next_step_available_at=record.next_step_available_at,
            delay_task_id=delay_task.id if delay_task else None,
            form_end_processed=form_end_processed,
        )
