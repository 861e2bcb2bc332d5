"""Delay task processor.

Invocations are stateless and may overlap: each one claims due tasks with a
compare-and-set under its own instance id, so a task is worked on by one
invocation at a time. A task is only marked processed after the execution
change it stands for has been committed; anything that goes wrong before
that leaves the claim to expire and the task is picked up again later.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import timedelta
from typing import List, Optional

from pydantic import BaseModel

from .constants import DEFAULT_RECLAIM_AFTER_MINUTES
from .contracts import ProcessingSummary
from .engine import (
    DELAY_DUE,
    DELAY_PAUSED,
    FlowEngine,
    delay_task_state,
    form_name,
)
from .errors import ExecutionNotFoundError
from .notifications import BaseNotificationDispatcher
from .persistence.models import DelayTask

logger = logging.getLogger(__name__)


class QueueStatus(BaseModel):
    pending_count: int
    due_count: int
    pending: List[DelayTask]
    recently_processed: List[DelayTask]


class DelayTaskProcessor:
    """Resumes executions whose delay has elapsed."""

    def __init__(
        self,
        engine: FlowEngine,
        dispatcher: BaseNotificationDispatcher,
        reclaim_after_minutes: float = DEFAULT_RECLAIM_AFTER_MINUTES,
        batch_size: Optional[int] = None,
    ) -> None:
        self.engine = engine
        self.repository = engine.repository
        self.dispatcher = dispatcher
        self.reclaim_after = timedelta(minutes=reclaim_after_minutes)
        self.batch_size = batch_size

    async def process(
        self, forced: bool = False, execution_id: Optional[str] = None
    ) -> ProcessingSummary:
        """Process every claimable task once.

        Args:
            forced: Ignore ``trigger_at`` and process pending tasks right away.
            execution_id: Only look at tasks of this execution.
        """

        instance_id = str(uuid.uuid4())
        summary = ProcessingSummary(instance_id=instance_id, forced=forced)
        now = self.engine.now()
        stale_before = now - self.reclaim_after
        due_before = None if forced else now

        candidates = await self.repository.find_claimable_delay_tasks(
            stale_before,
            due_before=due_before,
            execution_id=execution_id,
            limit=self.batch_size,
        )
        summary.found = len(candidates)

        for candidate in candidates:
            task = await self.repository.claim_delay_task(
                candidate.id, instance_id, now, stale_before, due_before=due_before
            )
            if task is None:
                summary.contended += 1
                logger.debug(f"Delay task {candidate.id} claimed by another processor")
                continue
            summary.claimed += 1
            await self._process_task(task, instance_id, summary)

        logger.info(
            f"Delay processing {instance_id}: found={summary.found} "
            f"claimed={summary.claimed} processed={summary.processed} "
            f"stale={summary.stale} deferred={summary.deferred} "
            f"contended={summary.contended} notified={summary.notified} "
            f"errors={summary.errors} forced={forced}"
        )
        return summary

    async def _process_task(
        self, task: DelayTask, instance_id: str, summary: ProcessingSummary
    ) -> None:
        try:
            record = await self.repository.get_execution(task.execution_id)
            state = delay_task_state(record, task)
            if state == DELAY_PAUSED:
                await self._defer(task, instance_id, summary)
                return
            if state != DELAY_DUE:
                logger.info(f"Delay task {task.id} is stale ({state}); closing it")
                await self._mark(task, instance_id, summary, stale=True)
                return

            landing = self.engine.preview_delay_advance(record, task)
            if landing is not None and landing.node_type == "formStart":
                if landing.node_id == task.next_node_id and task.form_name:
                    name = task.form_name
                else:
                    name = form_name(landing)
                try:
                    result = await self.dispatcher.notify(
                        task.patient_id, name, task.execution_id
                    )
                except Exception:
                    logger.exception(
                        f"Notification for delay task {task.id} raised; will retry"
                    )
                    summary.errors += 1
                    return
                if result.success:
                    summary.notified += 1
                else:
                    summary.notification_failures += 1
                    logger.warning(
                        f"Notification for execution {task.execution_id} failed: "
                        f"{result.error}; advancing anyway"
                    )

            advance = await self.engine.advance_past_delay(task)
            if advance.state == DELAY_PAUSED:
                await self._defer(task, instance_id, summary)
                return
            await self._mark(task, instance_id, summary, stale=advance.state != DELAY_DUE)
        except Exception:
            logger.exception(f"Failed to process delay task {task.id}")
            summary.errors += 1

    async def _defer(
        self, task: DelayTask, instance_id: str, summary: ProcessingSummary
    ) -> None:
        await self.repository.release_delay_task(task.id, instance_id)
        summary.deferred += 1
        logger.info(f"Execution {task.execution_id} is paused; deferring delay task {task.id}")

    async def _mark(
        self,
        task: DelayTask,
        instance_id: str,
        summary: ProcessingSummary,
        stale: bool = False,
    ) -> None:
        if not await self.repository.mark_delay_task_processed(
            task.id, instance_id, self.engine.now()
        ):
            summary.contended += 1
            logger.warning(f"Lost the claim on delay task {task.id} before marking it")
            return
        if stale:
            summary.stale += 1
        else:
            summary.processed += 1

    # ------------------------------------------------------------------
    async def run_forever(
        self, interval_seconds: float = 60.0, lifespan: Optional[float] = None
    ) -> int:
        """Call :meth:`process` every ``interval_seconds``.

        Args:
            interval_seconds: Pause between cycles.
            lifespan: Stop after this many seconds. If None, runs indefinitely.

        Returns:
            The number of cycles run.
        """

        loop = asyncio.get_running_loop()
        start_time = loop.time()
        cycles = 0
        await self.dispatcher.connect()
        try:
            while True:
                try:
                    await self.process()
                except Exception:
                    logger.exception("Delay processing cycle failed")
                cycles += 1
                if lifespan is not None:
                    remaining = lifespan - (loop.time() - start_time)
                    if remaining <= 0:
                        break
                    await asyncio.sleep(min(interval_seconds, remaining))
                    if loop.time() - start_time >= lifespan:
                        break
                else:
                    await asyncio.sleep(interval_seconds)
        finally:
            await self.dispatcher.disconnect()
        return cycles

    async def queue_status(self, limit: int = 10) -> QueueStatus:
        """Pending tasks (soonest first) and the most recently processed ones."""

        now = self.engine.now()
        pending = await self.repository.list_delay_tasks(processed=False)
        processed = await self.repository.list_delay_tasks(processed=True, limit=limit)
        return QueueStatus(
            pending_count=len(pending),
            due_count=sum(1 for task in pending if task.trigger_at <= now),
            pending=pending[:limit],
            recently_processed=processed,
        )

    async def create_test_task(
        self,
        execution_id: str,
        delay_minutes: float = 1,
        form_name: str = "Formulário de Teste",
    ) -> DelayTask:
        """Queue a ``formStart`` delay task for an execution, for operational checks."""

        record = await self.repository.get_execution(execution_id)
        if record is None:
            raise ExecutionNotFoundError(execution_id)
        now = self.engine.now()
        upcoming = record.current_step.upcoming
        task = DelayTask(
            id=str(uuid.uuid4()),
            execution_id=record.id,
            patient_id=record.patient_id,
            next_node_id=upcoming.node_id if upcoming else "",
            next_node_type="formStart",
            form_name=form_name,
            trigger_at=now + timedelta(minutes=delay_minutes),
            created_at=now,
        )
        await self.repository.create_delay_task(task)
        logger.info(
            f"Created test delay task {task.id} for execution {execution_id} "
            f"due {task.trigger_at.isoformat()}"
        )
        return task
