"""HTTP webhook notification dispatcher."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from .base import BaseNotificationDispatcher, NotificationResult
from .templates import render_form_message

logger = logging.getLogger(__name__)


class WebhookNotificationDispatcher(BaseNotificationDispatcher):
    """POST each notification as JSON to a webhook that owns delivery.

    The receiver resolves the patient's contact details and reports back
    ``{"success": bool, "patientName": ..., "formName": ...}``.
    """

    def __init__(
        self,
        url: str,
        timeout_seconds: float = 10.0,
        token: Optional[str] = None,
        form_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.url = url
        self.timeout_seconds = timeout_seconds
        self.token = token
        self.form_url = form_url
        self._client = client

    async def connect(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds)

    async def disconnect(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def notify(
        self, patient_id: str, form_name: str, execution_id: str
    ) -> NotificationResult:
        await self.connect()
        payload = {
            "patientId": patient_id,
            "formName": form_name,
            "executionId": execution_id,
            "message": render_form_message(
                {"form_name": form_name, "form_url": self.form_url}
            ),
        }
        # Transport errors propagate: delivery state is unknown.
        response = await self._client.post(self.url, json=payload, headers=self._headers())

        if response.is_error:
            logger.warning(
                f"Notification webhook returned {response.status_code} for execution "
                f"{execution_id}: {response.text[:200]}"
            )
            return NotificationResult(
                success=False,
                form_name=form_name,
                error=f"HTTP {response.status_code}",
            )

        body: Dict[str, Any] = {}
        if response.content:
            try:
                parsed = response.json()
            except ValueError:
                logger.debug(f"Notification webhook returned non-JSON body: {response.text[:200]}")
            else:
                if isinstance(parsed, dict):
                    body = parsed
        return NotificationResult(
            success=bool(body.get("success", True)),
            patient_name=body.get("patientName"),
            form_name=body.get("formName") or form_name,
            error=body.get("error"),
        )
