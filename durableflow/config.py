from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel

from .constants import (
    DEFAULT_ORCHESTRATOR_QUEUE,
    DEFAULT_SLEEPER_QUEUE,
    DEFAULT_STEP_WORKER_QUEUE,
)
from .utils.retry import RetryDelay


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class TransportConfig(BaseModel):
    """Transport configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()
    # Key namespace for redis queues
    prefix: str = "durableflow"
    # Idle wait of the in-memory subscriber
    poll_interval: float = 0.05


class WorkflowConfig(BaseModel):
    """Engine-wide step defaults and queue names."""

    retries: int = 0
    retry_delay: RetryDelay = 0
    orchestrator_queue_name: str = DEFAULT_ORCHESTRATOR_QUEUE
    step_worker_queue_name: str = DEFAULT_STEP_WORKER_QUEUE
    sleeper_queue_name: str = DEFAULT_SLEEPER_QUEUE


class LockConfig(BaseModel):
    """Per-run lock budget, in seconds."""

    timeout: float = 10.0
    ttl: float = 30.0
    retry_interval: float = 0.05


class DurableflowConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    workflow: WorkflowConfig = WorkflowConfig()
    lock: LockConfig = LockConfig()
    database_url: Optional[str] = None
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> DurableflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to DURABLEFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("DURABLEFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = DurableflowConfig(**data)
    else:
        config = DurableflowConfig()

    env_db_url = os.getenv("DURABLEFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
