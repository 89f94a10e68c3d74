from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import DEFAULT_BASE_DELAY, DEFAULT_MAX_DELAY, DEFAULT_MAX_RETRIES


class RetryConfig(BaseModel):
    """Default retry policy for tool invocations."""

    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=1)
    backoff: Literal["constant", "linear", "exponential", "jittered"] = "exponential"
    base_delay: float = Field(default=DEFAULT_BASE_DELAY, ge=0)
    max_delay: float = Field(default=DEFAULT_MAX_DELAY, ge=0)


class SchedulerConfig(BaseModel):
    """Settings for the trigger polling loop."""

    poll_interval: float = Field(default=60.0, gt=0)


class AuditConfig(BaseModel):
    """Where per-run event logs are written."""

    enabled: bool = True
    log_dir: str = "~/.errand/logs"


class ErrandConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    executor: Optional[str] = Field(
        default=None, description="Tool executor as module:attribute"
    )
    retry: RetryConfig = RetryConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
    audit: AuditConfig = AuditConfig()
    log_level: str = "WARNING"


def load_config(path: Optional[str] = None) -> ErrandConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to ERRAND_CONFIG env
            variable or 'errand.yaml' in the current directory.
    """

    config_path = path or os.getenv("ERRAND_CONFIG", "errand.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = ErrandConfig(**data)
    else:
        config = ErrandConfig()

    env_db_url = os.getenv("ERRAND_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
