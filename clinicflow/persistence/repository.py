"""Repository abstraction for execution state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol

from .models import ContentAccess, DelayTask, ExecutionRecord


class ExecutionRepository(Protocol):
    """Protocol for execution state persistence backends.

    Every write to an execution row is conditional on the version the writer
    loaded, and every delay task claim is a single compare-and-set.
    """

    async def create_execution(
        self, record: ExecutionRecord, delay_task: DelayTask | None = None
    ) -> None:
        """Persist a new execution, and its first delay task if any, atomically."""

    async def get_execution(self, execution_id: str) -> ExecutionRecord | None:
        """Retrieve an execution by id."""

    async def list_executions(
        self, patient_id: str | None = None, status: str | None = None
    ) -> list[ExecutionRecord]:
        """Return executions, oldest first."""

    async def save_execution(
        self,
        record: ExecutionRecord,
        expected_version: int,
        delay_task: DelayTask | None = None,
    ) -> bool:
        """Overwrite the row only if its version is still ``expected_version``.

        ``delay_task`` is inserted in the same transaction. Returns ``False``
        when another writer committed first.
        """

    async def create_delay_task(self, task: DelayTask) -> None:
        """Insert a delay task."""

    async def get_delay_task(self, task_id: str) -> DelayTask | None:
        """Retrieve a delay task by id."""

    async def list_delay_tasks(
        self,
        processed: bool | None = None,
        execution_id: str | None = None,
        limit: int | None = None,
    ) -> list[DelayTask]:
        """Pending tasks by ``trigger_at``; processed ones most recent first."""

    async def find_claimable_delay_tasks(
        self,
        stale_before: datetime,
        due_before: Optional[datetime] = None,
        execution_id: str | None = None,
        limit: int | None = None,
    ) -> list[DelayTask]:
        """Unprocessed tasks that are unclaimed or whose claim went stale."""

    async def claim_delay_task(
        self,
        task_id: str,
        instance_id: str,
        now: datetime,
        stale_before: datetime,
        due_before: Optional[datetime] = None,
    ) -> DelayTask | None:
        """Claim a task for ``instance_id``; ``None`` when someone else holds it."""

    async def mark_delay_task_processed(
        self, task_id: str, instance_id: str, now: datetime
    ) -> bool:
        """Mark a task processed if ``instance_id`` still holds the claim."""

    async def release_delay_task(self, task_id: str, instance_id: str) -> bool:
        """Drop the claim held by ``instance_id`` so a later cycle retries."""

    async def create_content_access(self, access: ContentAccess) -> None:
        """Persist a content access grant."""

    async def list_content_access(
        self, execution_id: str | None = None, patient_id: str | None = None
    ) -> list[ContentAccess]:
        """Return content access grants."""
