"""Data models for persisted execution state."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..constants import STATUS_PENDING, TERMINAL_STATUSES, ExecutionStatus
from ..contracts import StepCursor


class ExecutionRecord(BaseModel):
    """A patient's run through one flow."""

    id: str
    flow_id: str
    flow_name: str = ""
    patient_id: str
    status: ExecutionStatus = STATUS_PENDING
    current_node: Optional[str] = None
    current_step: StepCursor = Field(default_factory=StepCursor)
    total_steps: int = 0
    completed_steps: int = 0
    progress: int = 0
    started_at: datetime
    completed_at: Optional[datetime] = None
    next_step_available_at: Optional[datetime] = None
    updated_at: datetime
    version: int = 1

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class DelayTask(BaseModel):
    """Durable timer that resumes an execution after a ``delay`` step."""

    id: str
    execution_id: str
    patient_id: str
    next_node_id: str = ""
    next_node_type: str = "end"
    form_name: str = ""
    trigger_at: datetime
    processed: bool = False
    processed_at: Optional[datetime] = None
    processing_started_at: Optional[datetime] = None
    processing_instance_id: Optional[str] = None
    created_at: datetime


class ContentAccess(BaseModel):
    """Time-limited access to the files attached to a ``formEnd`` node."""

    id: str
    execution_id: str
    patient_id: str
    node_id: str
    files: list[dict[str, Any]] = Field(default_factory=list)
    expires_at: datetime
    created_at: datetime
