"""Storage for executions, delay tasks and content access grants."""

from __future__ import annotations

import os
from typing import Optional

from ..config import ClinicflowConfig, load_config
from .inmemory import InMemoryExecutionRepository
from .models import ContentAccess, DelayTask, ExecutionRecord
from .repository import ExecutionRepository
from .sqlite import SQLiteExecutionRepository

_repository_instance: ExecutionRepository | None = None


def get_repository(
    database_url: Optional[str] = None, config: Optional[ClinicflowConfig] = None
) -> ExecutionRepository:
    """Return the store holding executions, delay tasks and content access.

    The URL scheme picks the backend: ``sqlite:///clinic.db`` for a local
    file, ``postgresql://...`` for a shared database. The URL comes from the
    argument, then ``CLINICFLOW_DATABASE_URL`` or ``DATABASE_URL``, then the
    config file. Without one, executions live in memory for this process only.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    url = (
        database_url
        or os.getenv("CLINICFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )
    _repository_instance = _open_store(url) if url else InMemoryExecutionRepository()
    return _repository_instance


def _open_store(url: str) -> ExecutionRepository:
    scheme, _, rest = url.partition("://")
    if scheme == "sqlite":
        # three slashes: path relative to the working directory; four: absolute
        return SQLiteExecutionRepository(rest[1:] if rest.startswith("/") else rest)
    if scheme in ("postgres", "postgresql"):
        from .postgres import PostgresExecutionRepository

        return PostgresExecutionRepository(url)
    raise ValueError(f"No execution store for URL scheme {scheme!r}: {url}")


__all__ = [
    "ContentAccess",
    "DelayTask",
    "ExecutionRecord",
    "ExecutionRepository",
    "InMemoryExecutionRepository",
    "SQLiteExecutionRepository",
    "get_repository",
]
