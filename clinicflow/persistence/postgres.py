"""PostgreSQL implementation of the execution repository."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Optional

import asyncpg

from ..contracts import StepCursor
from .models import ContentAccess, DelayTask, ExecutionRecord
from .repository import ExecutionRepository

_EXECUTION_COLUMNS = (
    "id, flow_id, flow_name, patient_id, status, current_node, current_step, "
    "total_steps, completed_steps, progress, started_at, completed_at, "
    "next_step_available_at, updated_at, version"
)
_DELAY_TASK_COLUMNS = (
    "id, execution_id, patient_id, next_node_id, next_node_type, form_name, "
    "trigger_at, processed, processed_at, processing_started_at, "
    "processing_instance_id, created_at"
)


def _json(value: Any) -> Any:
    # asyncpg hands JSONB back as text unless a codec is registered
    return json.loads(value) if isinstance(value, str) else value


class PostgresExecutionRepository(ExecutionRepository):
    """Persist execution state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS flow_executions (
                id TEXT PRIMARY KEY,
                flow_id TEXT NOT NULL,
                flow_name TEXT NOT NULL,
                patient_id TEXT NOT NULL,
                status TEXT NOT NULL,
                current_node TEXT,
                current_step JSONB NOT NULL,
                total_steps INTEGER NOT NULL,
                completed_steps INTEGER NOT NULL,
                progress INTEGER NOT NULL,
                started_at TIMESTAMPTZ NOT NULL,
                completed_at TIMESTAMPTZ,
                next_step_available_at TIMESTAMPTZ,
                updated_at TIMESTAMPTZ NOT NULL,
                version INTEGER NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS delay_tasks (
                id TEXT PRIMARY KEY,
                execution_id TEXT NOT NULL,
                patient_id TEXT NOT NULL,
                next_node_id TEXT NOT NULL,
                next_node_type TEXT NOT NULL,
                form_name TEXT NOT NULL,
                trigger_at TIMESTAMPTZ NOT NULL,
                processed BOOLEAN NOT NULL DEFAULT FALSE,
                processed_at TIMESTAMPTZ,
                processing_started_at TIMESTAMPTZ,
                processing_instance_id TEXT,
                created_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_delay_tasks_pending "
            "ON delay_tasks (processed, trigger_at)"
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS content_access (
                id TEXT PRIMARY KEY,
                execution_id TEXT NOT NULL,
                patient_id TEXT NOT NULL,
                node_id TEXT NOT NULL,
                files JSONB NOT NULL,
                expires_at TIMESTAMPTZ NOT NULL,
                created_at TIMESTAMPTZ NOT NULL
            )
            """
        )

    # ------------------------------------------------------------------
    @staticmethod
    def _execution_params(record: ExecutionRecord) -> tuple:
        return (
            record.id,
            record.flow_id,
            record.flow_name,
            record.patient_id,
            record.status,
            record.current_node,
            json.dumps(record.current_step.to_json_dict()),
            record.total_steps,
            record.completed_steps,
            record.progress,
            record.started_at,
            record.completed_at,
            record.next_step_available_at,
            record.updated_at,
            record.version,
        )

    @staticmethod
    def _delay_task_params(task: DelayTask) -> tuple:
        return (
            task.id,
            task.execution_id,
            task.patient_id,
            task.next_node_id,
            task.next_node_type,
            task.form_name,
            task.trigger_at,
            task.processed,
            task.processed_at,
            task.processing_started_at,
            task.processing_instance_id,
            task.created_at,
        )

    @staticmethod
    def _to_execution(row: asyncpg.Record) -> ExecutionRecord:
        data = dict(row)
        data["current_step"] = StepCursor.from_json_dict(_json(row["current_step"]))
        return ExecutionRecord(**data)

    async def _insert_delay_task(self, conn: asyncpg.Connection, task: DelayTask) -> None:
        await conn.execute(
            f"INSERT INTO delay_tasks ({_DELAY_TASK_COLUMNS}) "
            "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)",
            *self._delay_task_params(task),
        )

    # ------------------------------------------------------------------
    async def create_execution(
        self, record: ExecutionRecord, delay_task: DelayTask | None = None
    ) -> None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.execute(
                    f"INSERT INTO flow_executions ({_EXECUTION_COLUMNS}) VALUES "
                    "($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15)",
                    *self._execution_params(record),
                )
                if delay_task is not None:
                    await self._insert_delay_task(conn, delay_task)
        finally:
            await conn.close()

    async def get_execution(self, execution_id: str) -> ExecutionRecord | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"SELECT {_EXECUTION_COLUMNS} FROM flow_executions WHERE id = $1",
                execution_id,
            )
        finally:
            await conn.close()
        return self._to_execution(row) if row else None

    async def list_executions(
        self, patient_id: str | None = None, status: str | None = None
    ) -> list[ExecutionRecord]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"SELECT {_EXECUTION_COLUMNS} FROM flow_executions "
                "WHERE ($1::text IS NULL OR patient_id = $1) "
                "AND ($2::text IS NULL OR status = $2) ORDER BY started_at",
                patient_id,
                status,
            )
        finally:
            await conn.close()
        return [self._to_execution(r) for r in rows]

    async def save_execution(
        self,
        record: ExecutionRecord,
        expected_version: int,
        delay_task: DelayTask | None = None,
    ) -> bool:
        params = self._execution_params(record)
        conn = await self._connect()
        try:
            async with conn.transaction():
                updated = await conn.fetchval(
                    """
                    UPDATE flow_executions
                    SET flow_id = $2, flow_name = $3, patient_id = $4, status = $5,
                        current_node = $6, current_step = $7, total_steps = $8,
                        completed_steps = $9, progress = $10, started_at = $11,
                        completed_at = $12, next_step_available_at = $13,
                        updated_at = $14, version = $15
                    WHERE id = $1 AND version = $16
                    RETURNING id
                    """,
                    *params,
                    expected_version,
                )
                if updated is None:
                    return False
                if delay_task is not None:
                    await self._insert_delay_task(conn, delay_task)
                return True
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    async def create_delay_task(self, task: DelayTask) -> None:
        conn = await self._connect()
        try:
            await self._insert_delay_task(conn, task)
        finally:
            await conn.close()

    async def get_delay_task(self, task_id: str) -> DelayTask | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"SELECT {_DELAY_TASK_COLUMNS} FROM delay_tasks WHERE id = $1", task_id
            )
        finally:
            await conn.close()
        return DelayTask(**dict(row)) if row else None

    async def list_delay_tasks(
        self,
        processed: bool | None = None,
        execution_id: str | None = None,
        limit: int | None = None,
    ) -> list[DelayTask]:
        order = (
            "COALESCE(processed_at, created_at) DESC" if processed else "trigger_at"
        )
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"SELECT {_DELAY_TASK_COLUMNS} FROM delay_tasks "
                "WHERE ($1::boolean IS NULL OR processed = $1) "
                "AND ($2::text IS NULL OR execution_id = $2) "
                f"ORDER BY {order} LIMIT $3",
                processed,
                execution_id,
                limit,
            )
        finally:
            await conn.close()
        return [DelayTask(**dict(r)) for r in rows]

    async def find_claimable_delay_tasks(
        self,
        stale_before: datetime,
        due_before: Optional[datetime] = None,
        execution_id: str | None = None,
        limit: int | None = None,
    ) -> list[DelayTask]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"SELECT {_DELAY_TASK_COLUMNS} FROM delay_tasks "
                "WHERE processed = FALSE "
                "AND (processing_started_at IS NULL OR processing_started_at < $1) "
                "AND ($2::timestamptz IS NULL OR trigger_at <= $2) "
                "AND ($3::text IS NULL OR execution_id = $3) "
                "ORDER BY trigger_at LIMIT $4",
                stale_before,
                due_before,
                execution_id,
                limit,
            )
        finally:
            await conn.close()
        return [DelayTask(**dict(r)) for r in rows]

    async def claim_delay_task(
        self,
        task_id: str,
        instance_id: str,
        now: datetime,
        stale_before: datetime,
        due_before: Optional[datetime] = None,
    ) -> DelayTask | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"""
                UPDATE delay_tasks
                SET processing_started_at = $1, processing_instance_id = $2
                WHERE id = $3 AND processed = FALSE
                  AND (processing_started_at IS NULL OR processing_started_at < $4)
                  AND ($5::timestamptz IS NULL OR trigger_at <= $5)
                RETURNING {_DELAY_TASK_COLUMNS}
                """,
                now,
                instance_id,
                task_id,
                stale_before,
                due_before,
            )
        finally:
            await conn.close()
        return DelayTask(**dict(row)) if row else None

    async def mark_delay_task_processed(
        self, task_id: str, instance_id: str, now: datetime
    ) -> bool:
        conn = await self._connect()
        try:
            updated = await conn.fetchval(
                """
                UPDATE delay_tasks SET processed = TRUE, processed_at = $1
                WHERE id = $2 AND processed = FALSE AND processing_instance_id = $3
                RETURNING id
                """,
                now,
                task_id,
                instance_id,
            )
        finally:
            await conn.close()
        return updated is not None

    async def release_delay_task(self, task_id: str, instance_id: str) -> bool:
        conn = await self._connect()
        try:
            updated = await conn.fetchval(
                """
                UPDATE delay_tasks
                SET processing_started_at = NULL, processing_instance_id = NULL
                WHERE id = $1 AND processed = FALSE AND processing_instance_id = $2
                RETURNING id
                """,
                task_id,
                instance_id,
            )
        finally:
            await conn.close()
        return updated is not None

    # ------------------------------------------------------------------
    async def create_content_access(self, access: ContentAccess) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "INSERT INTO content_access (id, execution_id, patient_id, node_id, "
                "files, expires_at, created_at) VALUES ($1, $2, $3, $4, $5, $6, $7)",
                access.id,
                access.execution_id,
                access.patient_id,
                access.node_id,
                json.dumps(access.files),
                access.expires_at,
                access.created_at,
            )
        finally:
            await conn.close()

    async def list_content_access(
        self, execution_id: str | None = None, patient_id: str | None = None
    ) -> list[ContentAccess]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT id, execution_id, patient_id, node_id, files, expires_at, "
                "created_at FROM content_access "
                "WHERE ($1::text IS NULL OR execution_id = $1) "
                "AND ($2::text IS NULL OR patient_id = $2) ORDER BY created_at",
                execution_id,
                patient_id,
            )
        finally:
            await conn.close()
        return [
            ContentAccess(**{**dict(r), "files": _json(r["files"])}) for r in rows
        ]
