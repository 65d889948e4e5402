"""Persistence layer for durableflow runs."""

from __future__ import annotations

import os
from typing import Optional

from ..config import DurableflowConfig, load_config
from .inmemory import InMemoryWorkflowStateStore
from .models import (
    SerializedError,
    StepHistoryEntry,
    StepState,
    WorkflowRun,
    WorkflowVersion,
)
from .sqlite import SQLiteWorkflowStateStore
from .store import WorkflowStateStore

_store_instance: WorkflowStateStore | None = None


def get_state_store(
    database_url: Optional[str] = None, config: Optional[DurableflowConfig] = None
) -> WorkflowStateStore:
    """Factory function to obtain a workflow state store.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``DURABLEFLOW_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory store is returned.
    """

    global _store_instance
    if _store_instance is not None and database_url is None and config is None:
        return _store_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("DURABLEFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )
    lock_options = dict(
        lock_timeout=config.lock.timeout,
        lock_ttl=config.lock.ttl,
        lock_retry_interval=config.lock.retry_interval,
    )

    if not database_url:
        _store_instance = InMemoryWorkflowStateStore(**lock_options)
        return _store_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _store_instance = SQLiteWorkflowStateStore(path, **lock_options)
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        from .postgres import PostgresWorkflowStateStore

        _store_instance = PostgresWorkflowStateStore(database_url, **lock_options)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _store_instance


__all__ = [
    "InMemoryWorkflowStateStore",
    "SQLiteWorkflowStateStore",
    "SerializedError",
    "StepHistoryEntry",
    "StepState",
    "WorkflowRun",
    "WorkflowStateStore",
    "WorkflowVersion",
    "get_state_store",
]
