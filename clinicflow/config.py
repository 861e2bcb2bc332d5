from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel

from .constants import DEFAULT_CONTENT_ACCESS_DAYS, DEFAULT_RECLAIM_AFTER_MINUTES


class SchedulerConfig(BaseModel):
    """Settings for the delay task processor."""

    interval_seconds: float = 60.0
    reclaim_after_minutes: float = DEFAULT_RECLAIM_AFTER_MINUTES
    batch_size: Optional[int] = None


class WebhookConfig(BaseModel):
    """Settings for the HTTP notification dispatcher."""

    url: Optional[str] = None
    timeout_seconds: float = 10.0
    token: Optional[str] = None
    form_url: str = "https://fitclub.app.br/"


class NotificationConfig(BaseModel):
    """Notification dispatcher configuration settings."""

    backend: Literal["inmemory", "webhook"] = "inmemory"
    webhook: WebhookConfig = WebhookConfig()


class FormEndConfig(BaseModel):
    content_access_days: int = DEFAULT_CONTENT_ACCESS_DAYS


class ClinicflowConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    scheduler: SchedulerConfig = SchedulerConfig()
    notifications: NotificationConfig = NotificationConfig()
    form_end: FormEndConfig = FormEndConfig()


def load_config(path: Optional[str] = None) -> ClinicflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to CLINICFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("CLINICFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = ClinicflowConfig(**data)
    else:
        config = ClinicflowConfig()

    env_db_url = os.getenv("CLINICFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
