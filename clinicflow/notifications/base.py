"""Base notification dispatcher interface."""

from __future__ import annotations

import abc
from typing import Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class NotificationResult(BaseModel):
    """What the dispatcher reports back; failures are data, not exceptions."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    success: bool
    patient_name: Optional[str] = None
    form_name: Optional[str] = None
    error: Optional[str] = None


class BaseNotificationDispatcher(metaclass=abc.ABCMeta):
    """Abstract channel that tells a patient a new form is waiting."""

    async def connect(self) -> None:
        """Open underlying resources (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Release underlying resources (no-op by default)."""
        pass

    @abc.abstractmethod
    async def notify(
        self, patient_id: str, form_name: str, execution_id: str
    ) -> NotificationResult:
        """Announce ``form_name`` to ``patient_id``.

        Delivery problems the channel can detect are reported with
        ``success=False``. Exceptions mean the outcome is unknown and the
        caller should retry later.
        """
        raise NotImplementedError
