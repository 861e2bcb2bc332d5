"""SQLite implementation of the execution repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

from ..contracts import StepCursor
from .models import ContentAccess, DelayTask, ExecutionRecord
from .repository import ExecutionRepository

T = TypeVar("T")

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
_CLAIMABLE = (
    "processed = 0 AND (processing_started_at IS NULL OR processing_started_at < ?)"
)


def _ts(value: datetime | None) -> str | None:
    # Fixed-width UTC strings so SQL string comparison orders correctly.
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class SQLiteExecutionRepository(ExecutionRepository):
    """Persist execution state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        with self._conn:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS flow_executions (
                    id TEXT PRIMARY KEY,
                    flow_id TEXT NOT NULL,
                    flow_name TEXT NOT NULL,
                    patient_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    current_node TEXT,
                    current_step TEXT NOT NULL,
                    total_steps INTEGER NOT NULL,
                    completed_steps INTEGER NOT NULL,
                    progress INTEGER NOT NULL,
                    started_at TEXT NOT NULL,
                    completed_at TEXT,
                    next_step_available_at TEXT,
                    updated_at TEXT NOT NULL,
                    version INTEGER NOT NULL
                )
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS delay_tasks (
                    id TEXT PRIMARY KEY,
                    execution_id TEXT NOT NULL,
                    patient_id TEXT NOT NULL,
                    next_node_id TEXT NOT NULL,
                    next_node_type TEXT NOT NULL,
                    form_name TEXT NOT NULL,
                    trigger_at TEXT NOT NULL,
                    processed INTEGER NOT NULL DEFAULT 0,
                    processed_at TEXT,
                    processing_started_at TEXT,
                    processing_instance_id TEXT,
                    created_at TEXT NOT NULL
                )
                """
            )
            self._conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_delay_tasks_pending "
                "ON delay_tasks (processed, trigger_at)"
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS content_access (
                    id TEXT PRIMARY KEY,
                    execution_id TEXT NOT NULL,
                    patient_id TEXT NOT NULL,
                    node_id TEXT NOT NULL,
                    files TEXT NOT NULL,
                    expires_at TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )

    # ------------------------------------------------------------------
    # Helper methods
    def _transaction(self, work: Callable[[sqlite3.Cursor], T]) -> T:
        with self._lock, self._conn:
            return work(self._conn.cursor())

    def _execute(self, query: str, *params: Any) -> int:
        return self._transaction(lambda cur: cur.execute(query, params).rowcount)

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            return self._conn.execute(query, params).fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(query, params).fetchall()

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
            _ts(record.started_at),
            _ts(record.completed_at),
            _ts(record.next_step_available_at),
            _ts(record.updated_at),
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
            _ts(task.trigger_at),
            int(task.processed),
            _ts(task.processed_at),
            _ts(task.processing_started_at),
            task.processing_instance_id,
            _ts(task.created_at),
        )

    @staticmethod
    def _to_execution(row: sqlite3.Row) -> ExecutionRecord:
        return ExecutionRecord(
            id=row["id"],
            flow_id=row["flow_id"],
            flow_name=row["flow_name"],
            patient_id=row["patient_id"],
            status=row["status"],
            current_node=row["current_node"],
            current_step=StepCursor.from_json_dict(json.loads(row["current_step"])),
            total_steps=row["total_steps"],
            completed_steps=row["completed_steps"],
            progress=row["progress"],
            started_at=_dt(row["started_at"]),
            completed_at=_dt(row["completed_at"]),
            next_step_available_at=_dt(row["next_step_available_at"]),
            updated_at=_dt(row["updated_at"]),
            version=row["version"],
        )

    @staticmethod
    def _to_delay_task(row: sqlite3.Row) -> DelayTask:
        return DelayTask(
            id=row["id"],
            execution_id=row["execution_id"],
            patient_id=row["patient_id"],
            next_node_id=row["next_node_id"],
            next_node_type=row["next_node_type"],
            form_name=row["form_name"],
            trigger_at=_dt(row["trigger_at"]),
            processed=bool(row["processed"]),
            processed_at=_dt(row["processed_at"]),
            processing_started_at=_dt(row["processing_started_at"]),
            processing_instance_id=row["processing_instance_id"],
            created_at=_dt(row["created_at"]),
        )

    def _insert_delay_task(self, cur: sqlite3.Cursor, task: DelayTask) -> None:
        cur.execute(
            f"INSERT INTO delay_tasks ({_DELAY_TASK_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            self._delay_task_params(task),
        )

    # ------------------------------------------------------------------
    # Repository API: executions
    async def create_execution(
        self, record: ExecutionRecord, delay_task: DelayTask | None = None
    ) -> None:
        def work(cur: sqlite3.Cursor) -> None:
            cur.execute(
                f"INSERT INTO flow_executions ({_EXECUTION_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                self._execution_params(record),
            )
            if delay_task is not None:
                self._insert_delay_task(cur, delay_task)

        await asyncio.to_thread(self._transaction, work)

    async def get_execution(self, execution_id: str) -> ExecutionRecord | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_EXECUTION_COLUMNS} FROM flow_executions WHERE id = ?",
            execution_id,
        )
        return self._to_execution(row) if row else None

    async def list_executions(
        self, patient_id: str | None = None, status: str | None = None
    ) -> list[ExecutionRecord]:
        query = f"SELECT {_EXECUTION_COLUMNS} FROM flow_executions WHERE 1 = 1"
        params: list[Any] = []
        if patient_id is not None:
            query += " AND patient_id = ?"
            params.append(patient_id)
        if status is not None:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY started_at"
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [self._to_execution(r) for r in rows]

    async def save_execution(
        self,
        record: ExecutionRecord,
        expected_version: int,
        delay_task: DelayTask | None = None,
    ) -> bool:
        params = self._execution_params(record)

        def work(cur: sqlite3.Cursor) -> bool:
            cur.execute(
                """
                UPDATE flow_executions
                SET flow_id = ?, flow_name = ?, patient_id = ?, status = ?,
                    current_node = ?, current_step = ?, total_steps = ?,
                    completed_steps = ?, progress = ?, started_at = ?,
                    completed_at = ?, next_step_available_at = ?, updated_at = ?,
                    version = ?
                WHERE id = ? AND version = ?
                """,
                (*params[1:], params[0], expected_version),
            )
            if cur.rowcount != 1:
                return False
            if delay_task is not None:
                self._insert_delay_task(cur, delay_task)
            return True

        return await asyncio.to_thread(self._transaction, work)

    # ------------------------------------------------------------------
    # Repository API: delay tasks
    async def create_delay_task(self, task: DelayTask) -> None:
        await asyncio.to_thread(
            self._transaction, lambda cur: self._insert_delay_task(cur, task)
        )

    async def get_delay_task(self, task_id: str) -> DelayTask | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_DELAY_TASK_COLUMNS} FROM delay_tasks WHERE id = ?",
            task_id,
        )
        return self._to_delay_task(row) if row else None

    async def list_delay_tasks(
        self,
        processed: bool | None = None,
        execution_id: str | None = None,
        limit: int | None = None,
    ) -> list[DelayTask]:
        query = f"SELECT {_DELAY_TASK_COLUMNS} FROM delay_tasks WHERE 1 = 1"
        params: list[Any] = []
        if processed is not None:
            query += " AND processed = ?"
            params.append(int(processed))
        if execution_id is not None:
            query += " AND execution_id = ?"
            params.append(execution_id)
        if processed:
            query += " ORDER BY COALESCE(processed_at, created_at) DESC"
        else:
            query += " ORDER BY trigger_at"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [self._to_delay_task(r) for r in rows]

    async def find_claimable_delay_tasks(
        self,
        stale_before: datetime,
        due_before: Optional[datetime] = None,
        execution_id: str | None = None,
        limit: int | None = None,
    ) -> list[DelayTask]:
        query = f"SELECT {_DELAY_TASK_COLUMNS} FROM delay_tasks WHERE {_CLAIMABLE}"
        params: list[Any] = [_ts(stale_before)]
        if due_before is not None:
            query += " AND trigger_at <= ?"
            params.append(_ts(due_before))
        if execution_id is not None:
            query += " AND execution_id = ?"
            params.append(execution_id)
        query += " ORDER BY trigger_at"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [self._to_delay_task(r) for r in rows]

    async def claim_delay_task(
        self,
        task_id: str,
        instance_id: str,
        now: datetime,
        stale_before: datetime,
        due_before: Optional[datetime] = None,
    ) -> DelayTask | None:
        query = (
            "UPDATE delay_tasks SET processing_started_at = ?, processing_instance_id = ? "
            f"WHERE id = ? AND {_CLAIMABLE}"
        )
        params: list[Any] = [_ts(now), instance_id, task_id, _ts(stale_before)]
        if due_before is not None:
            query += " AND trigger_at <= ?"
            params.append(_ts(due_before))

        def work(cur: sqlite3.Cursor) -> sqlite3.Row | None:
            cur.execute(query, params)
            if cur.rowcount != 1:
                return None
            cur.execute(
                f"SELECT {_DELAY_TASK_COLUMNS} FROM delay_tasks WHERE id = ?", (task_id,)
            )
            return cur.fetchone()

        row = await asyncio.to_thread(self._transaction, work)
        return self._to_delay_task(row) if row else None

    async def mark_delay_task_processed(
        self, task_id: str, instance_id: str, now: datetime
    ) -> bool:
        updated = await asyncio.to_thread(
            self._execute,
            """
            UPDATE delay_tasks SET processed = 1, processed_at = ?
            WHERE id = ? AND processed = 0 AND processing_instance_id = ?
            """,
            _ts(now),
            task_id,
            instance_id,
        )
        return updated == 1

    async def release_delay_task(self, task_id: str, instance_id: str) -> bool:
        updated = await asyncio.to_thread(
            self._execute,
            """
            UPDATE delay_tasks
            SET processing_started_at = NULL, processing_instance_id = NULL
            WHERE id = ? AND processed = 0 AND processing_instance_id = ?
            """,
            task_id,
            instance_id,
        )
        return updated == 1

    # ------------------------------------------------------------------
    # Repository API: content access
    async def create_content_access(self, access: ContentAccess) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO content_access (id, execution_id, patient_id, node_id, files, "
            "expires_at, created_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
            access.id,
            access.execution_id,
            access.patient_id,
            access.node_id,
            json.dumps(access.files),
            _ts(access.expires_at),
            _ts(access.created_at),
        )

    async def list_content_access(
        self, execution_id: str | None = None, patient_id: str | None = None
    ) -> list[ContentAccess]:
        query = (
            "SELECT id, execution_id, patient_id, node_id, files, expires_at, created_at "
            "FROM content_access WHERE 1 = 1"
        )
        params: list[Any] = []
        if execution_id is not None:
            query += " AND execution_id = ?"
            params.append(execution_id)
        if patient_id is not None:
            query += " AND patient_id = ?"
            params.append(patient_id)
        query += " ORDER BY created_at"
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [
            ContentAccess(
                id=r["id"],
                execution_id=r["execution_id"],
                patient_id=r["patient_id"],
                node_id=r["node_id"],
                files=json.loads(r["files"]),
                expires_at=_dt(r["expires_at"]),
                created_at=_dt(r["created_at"]),
            )
            for r in rows
        ]
