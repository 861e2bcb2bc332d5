"""Notification dispatcher factory."""

from __future__ import annotations

import os
from typing import Optional

from ..config import ClinicflowConfig, load_config
from .base import BaseNotificationDispatcher, NotificationResult
from .inmemory import InMemoryNotificationDispatcher
from .templates import render_form_message


def get_dispatcher(
    backend: Optional[str] = None, config: Optional[ClinicflowConfig] = None
) -> BaseNotificationDispatcher:
    """Factory function to get the configured notification dispatcher."""

    config = config or load_config()
    backend = (
        backend
        or os.getenv("CLINICFLOW_NOTIFICATIONS")
        or config.notifications.backend
    ).lower()

    webhook_conf = config.notifications.webhook
    if backend == "inmemory":
        return InMemoryNotificationDispatcher(form_url=webhook_conf.form_url)
    elif backend == "webhook":
        from .webhook import WebhookNotificationDispatcher

        if not webhook_conf.url:
            raise ValueError("notifications.webhook.url is required for the webhook backend")
        return WebhookNotificationDispatcher(
            url=webhook_conf.url,
            timeout_seconds=webhook_conf.timeout_seconds,
            token=webhook_conf.token,
            form_url=webhook_conf.form_url,
        )
    else:
        raise ValueError(f"Unsupported notification backend: {backend}")


__all__ = [
    "BaseNotificationDispatcher",
    "InMemoryNotificationDispatcher",
    "NotificationResult",
    "get_dispatcher",
    "render_form_message",
]
