"""In-memory notification dispatcher for testing."""

from __future__ import annotations

import asyncio
from typing import Dict, List, NamedTuple, Optional

from .base import BaseNotificationDispatcher, NotificationResult
from .templates import render_form_message


class SentNotification(NamedTuple):
    patient_id: str
    form_name: str
    execution_id: str
    message: str


class InMemoryNotificationDispatcher(BaseNotificationDispatcher):
    """Record notifications instead of delivering them."""

    def __init__(
        self,
        patient_names: Optional[Dict[str, str]] = None,
        form_url: Optional[str] = None,
    ) -> None:
        self.patient_names = dict(patient_names or {})
        self.form_url = form_url
        self.sent: List[SentNotification] = []
        self._lock = asyncio.Lock()

    async def notify(
        self, patient_id: str, form_name: str, execution_id: str
    ) -> NotificationResult:
        patient_name = self.patient_names.get(patient_id)
        message = render_form_message(
            {
                "patient_name": patient_name,
                "form_name": form_name,
                "form_url": self.form_url,
            }
        )
        async with self._lock:
            self.sent.append(SentNotification(patient_id, form_name, execution_id, message))
        return NotificationResult(success=True, patient_name=patient_name, form_name=form_name)
