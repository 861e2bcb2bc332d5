"""In-memory implementation of the execution repository."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Dict, Optional

from .models import ContentAccess, DelayTask, ExecutionRecord
from .repository import ExecutionRepository


def _claimable(
    task: DelayTask, stale_before: datetime, due_before: Optional[datetime]
) -> bool:
    if task.processed:
        return False
    if task.processing_started_at is not None and task.processing_started_at >= stale_before:
        return False
    return due_before is None or task.trigger_at <= due_before


class InMemoryExecutionRepository(ExecutionRepository):
    """Store execution state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Stored models are copied on the way
    in and out so callers never share state with the store.
    """

    def __init__(self) -> None:
        self._executions: Dict[str, ExecutionRecord] = {}
        self._delay_tasks: Dict[str, DelayTask] = {}
        self._content_access: Dict[str, ContentAccess] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    async def create_execution(
        self, record: ExecutionRecord, delay_task: DelayTask | None = None
    ) -> None:
        async with self._lock:
            if record.id in self._executions:
                raise ValueError(f"Execution {record.id} already exists")
            self._executions[record.id] = record.model_copy(deep=True)
            if delay_task is not None:
                self._delay_tasks[delay_task.id] = delay_task.model_copy(deep=True)

    async def get_execution(self, execution_id: str) -> ExecutionRecord | None:
        record = self._executions.get(execution_id)
        return record.model_copy(deep=True) if record else None

    async def list_executions(
        self, patient_id: str | None = None, status: str | None = None
    ) -> list[ExecutionRecord]:
        records = [
            r.model_copy(deep=True)
            for r in self._executions.values()
            if (patient_id is None or r.patient_id == patient_id)
            and (status is None or r.status == status)
        ]
        return sorted(records, key=lambda r: r.started_at)

    async def save_execution(
        self,
        record: ExecutionRecord,
        expected_version: int,
        delay_task: DelayTask | None = None,
    ) -> bool:
        async with self._lock:
            stored = self._executions.get(record.id)
            if stored is None or stored.version != expected_version:
                return False
            self._executions[record.id] = record.model_copy(deep=True)
            if delay_task is not None:
                self._delay_tasks[delay_task.id] = delay_task.model_copy(deep=True)
            return True

    # ------------------------------------------------------------------
    async def create_delay_task(self, task: DelayTask) -> None:
        async with self._lock:
            self._delay_tasks[task.id] = task.model_copy(deep=True)

    async def get_delay_task(self, task_id: str) -> DelayTask | None:
        task = self._delay_tasks.get(task_id)
        return task.model_copy(deep=True) if task else None

    async def list_delay_tasks(
        self,
        processed: bool | None = None,
        execution_id: str | None = None,
        limit: int | None = None,
    ) -> list[DelayTask]:
        tasks = [
            t.model_copy(deep=True)
            for t in self._delay_tasks.values()
            if (processed is None or t.processed == processed)
            and (execution_id is None or t.execution_id == execution_id)
        ]
        if processed:
            tasks.sort(key=lambda t: t.processed_at or t.created_at, reverse=True)
        else:
            tasks.sort(key=lambda t: t.trigger_at)
        return tasks[:limit] if limit is not None else tasks

    async def find_claimable_delay_tasks(
        self,
        stale_before: datetime,
        due_before: Optional[datetime] = None,
        execution_id: str | None = None,
        limit: int | None = None,
    ) -> list[DelayTask]:
        tasks = [
            t.model_copy(deep=True)
            for t in self._delay_tasks.values()
            if _claimable(t, stale_before, due_before)
            and (execution_id is None or t.execution_id == execution_id)
        ]
        tasks.sort(key=lambda t: t.trigger_at)
        return tasks[:limit] if limit is not None else tasks

    async def claim_delay_task(
        self,
        task_id: str,
        instance_id: str,
        now: datetime,
        stale_before: datetime,
        due_before: Optional[datetime] = None,
    ) -> DelayTask | None:
        async with self._lock:
            task = self._delay_tasks.get(task_id)
            if task is None or not _claimable(task, stale_before, due_before):
                return None
            task.processing_started_at = now
            task.processing_instance_id = instance_id
            return task.model_copy(deep=True)

    async def mark_delay_task_processed(
        self, task_id: str, instance_id: str, now: datetime
    ) -> bool:
        async with self._lock:
            task = self._delay_tasks.get(task_id)
            if task is None or task.processed or task.processing_instance_id != instance_id:
                return False
            task.processed = True
            task.processed_at = now
            return True

    async def release_delay_task(self, task_id: str, instance_id: str) -> bool:
        async with self._lock:
            task = self._delay_tasks.get(task_id)
            if task is None or task.processed or task.processing_instance_id != instance_id:
                return False
            task.processing_started_at = None
            task.processing_instance_id = None
            return True

    # ------------------------------------------------------------------
    async def create_content_access(self, access: ContentAccess) -> None:
        self._content_access[access.id] = access.model_copy(deep=True)

    async def list_content_access(
        self, execution_id: str | None = None, patient_id: str | None = None
    ) -> list[ContentAccess]:
        return [
            a.model_copy(deep=True)
            for a in self._content_access.values()
            if (execution_id is None or a.execution_id == execution_id)
            and (patient_id is None or a.patient_id == patient_id)
        ]
