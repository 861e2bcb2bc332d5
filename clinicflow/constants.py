"""Shared constants for clinicflow."""

from __future__ import annotations

from typing import Literal

NodeType = Literal[
    "start",
    "end",
    "formStart",
    "formEnd",
    "formSelect",
    "delay",
    "question",
    "calculator",
    "conditions",
    "specialConditions",
    "number",
]

ExecutionStatus = Literal["pending", "in-progress", "completed", "failed", "paused"]

STATUS_PENDING = "pending"
STATUS_IN_PROGRESS = "in-progress"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_PAUSED = "paused"

TERMINAL_STATUSES = frozenset({STATUS_COMPLETED, STATUS_FAILED})

# Nodes that never become steps.
BOUNDARY_NODE_TYPES = frozenset({"start", "end"})

# Nodes resolved against field responses instead of answered by the patient.
BRANCH_NODE_TYPES = frozenset({"conditions", "specialConditions"})

# Steps the patient can never complete directly.
AUTOMATIC_NODE_TYPES = BRANCH_NODE_TYPES | {"delay", "formEnd"}

DELAY_UNITS = {
    "minutos": 60,
    "horas": 60 * 60,
    "dias": 24 * 60 * 60,
}
DEFAULT_DELAY_UNIT = "dias"
FALLBACK_DELAY_SECONDS = 60
MAX_DELAY_SECONDS = 10 * 365 * 24 * 60 * 60

DEFAULT_RECLAIM_AFTER_MINUTES = 10.0
DEFAULT_CONTENT_ACCESS_DAYS = 30
MAX_LINEARIZE_DEPTH = 50
MAX_COMMIT_ATTEMPTS = 5
