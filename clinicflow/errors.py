"""Exceptions raised by the flow engine."""

from __future__ import annotations


class ClinicflowError(Exception):
    """Base class for clinicflow errors."""


class InvalidFlowError(ClinicflowError):
    """The flow definition cannot be executed."""


class ExecutionNotFoundError(ClinicflowError):
    def __init__(self, execution_id: str) -> None:
        super().__init__(f"Execution {execution_id} not found")
        self.execution_id = execution_id


class StepNotAvailableError(ClinicflowError):
    """The requested step cannot be completed by the patient right now."""


class InvalidStatusTransitionError(ClinicflowError):
    """An administrative status change is not allowed from the current state."""


class ConcurrentUpdateError(ClinicflowError):
    """Optimistic commit kept losing to concurrent writers."""

    def __init__(self, execution_id: str, attempts: int) -> None:
        super().__init__(
            f"Execution {execution_id} changed concurrently {attempts} times; giving up"
        )
        self.execution_id = execution_id
        self.attempts = attempts
