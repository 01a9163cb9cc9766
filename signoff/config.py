from __future__ import annotations

import os
from typing import Dict, Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_APPROVAL_TTL_HOURS,
    DEFAULT_BACKOFF_BASE,
    DEFAULT_BACKOFF_JITTER,
    DEFAULT_BASE_URL,
    DEFAULT_CHANNEL,
    DEFAULT_MAX_AMOUNT,
    DEFAULT_MAX_ATTEMPTS,
)


class RedisConfig(BaseModel):
    """Configuration for the Redis job queue."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class QueueConfig(BaseModel):
    """Job queue settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_base: float = DEFAULT_BACKOFF_BASE
    backoff_jitter: float = DEFAULT_BACKOFF_JITTER


class ApprovalConfig(BaseModel):
    ttl_hours: float = DEFAULT_APPROVAL_TTL_HOURS
    base_url: str = DEFAULT_BASE_URL


class ValidationConfig(BaseModel):
    """Limits enforced by the ``validate_data`` action."""

    max_amount: float = DEFAULT_MAX_AMOUNT


class NotificationConfig(BaseModel):
    default_channel: str = DEFAULT_CHANNEL
    webhooks: Dict[str, str] = Field(default_factory=dict)


class WorkerConfig(BaseModel):
    approval_concurrency: int = 5
    notification_concurrency: int = 10
    sweep_interval: float = 60.0


class SignoffConfig(BaseModel):
    """Top-level configuration model."""

    queue: QueueConfig = QueueConfig()
    database_url: Optional[str] = None
    approvals: ApprovalConfig = ApprovalConfig()
    validation: ValidationConfig = ValidationConfig()
    notifications: NotificationConfig = NotificationConfig()
    workers: WorkerConfig = WorkerConfig()


def load_config(path: Optional[str] = None) -> SignoffConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to SIGNOFF_CONFIG env
            variable or 'signoff.yaml' in the current directory.
    """

    config_path = path or os.getenv("SIGNOFF_CONFIG", "signoff.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = SignoffConfig(**data)
    else:
        config = SignoffConfig()

    env_db_url = os.getenv("SIGNOFF_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
