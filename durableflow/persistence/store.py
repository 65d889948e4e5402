"""Workflow state store abstraction."""

from __future__ import annotations

import abc
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, TypeVar

from ..constants import SUSPENDED_CODE
from ..errors import LockAcquisitionTimeout
from ..utils.retry import compute_backoff
from .models import (
    SerializedError,
    StepHistoryEntry,
    StepState,
    WorkflowRun,
    WorkflowStatus,
    WorkflowVersion,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Longest pause between two lock acquisition attempts, in seconds.
MAX_LOCK_POLL_INTERVAL = 1.0


class WorkflowStateStore(abc.ABC):
    """Durable record of runs, step attempts, history and topology versions.

    Step transitions are conditional: a backend only applies a transition when
    the step is currently in one of the allowed source states (see
    ``STEP_TRANSITIONS``) and reports ``False`` otherwise. Every applied
    transition appends a :class:`StepHistoryEntry`.
    """

    def __init__(
        self,
        lock_timeout: float = 10.0,
        lock_ttl: float = 30.0,
        lock_retry_interval: float = 0.05,
    ) -> None:
        self.lock_timeout = lock_timeout
        self.lock_ttl = lock_ttl
        self.lock_retry_interval = lock_retry_interval

    # ------------------------------------------------------------------
    # Runs
    @abc.abstractmethod
    async def create_run(self, run: WorkflowRun) -> WorkflowRun:
        """Persist a new run."""

    @abc.abstractmethod
    async def get_run(self, run_id: str) -> Optional[WorkflowRun]:
        """Return the run or ``None``."""

    @abc.abstractmethod
    async def list_runs(
        self, workflow: Optional[str] = None, status: Optional[str] = None
    ) -> List[WorkflowRun]:
        """Return runs, newest first, optionally filtered."""

    @abc.abstractmethod
    async def update_run_status(
        self,
        run_id: str,
        status: WorkflowStatus,
        output: Any = None,
        error: Optional[SerializedError] = None,
    ) -> None:
        """Set status, output and error of a run (output and error are overwritten)."""

    @abc.abstractmethod
    async def delete_run(self, run_id: str) -> bool:
        """Delete a run with its steps and history. Return whether it existed."""

    # ------------------------------------------------------------------
    # Steps
    @abc.abstractmethod
    async def insert_step_state(self, state: StepState) -> bool:
        """Insert ``state`` unless the run already has a step with that name."""

    @abc.abstractmethod
    async def get_step_state(self, run_id: str, step_name: str) -> Optional[StepState]:
        """Return the current attempt of ``step_name``."""

    @abc.abstractmethod
    async def get_step_state_by_id(self, step_id: str) -> Optional[StepState]:
        """Return the step whose current attempt is ``step_id``."""

    @abc.abstractmethod
    async def list_step_states(self, run_id: str) -> List[StepState]:
        """Return the current attempt of every step of a run."""

    @abc.abstractmethod
    async def create_retry_attempt(self, run_id: str, step_name: str) -> Optional[StepState]:
        """Replace a failed attempt with a new pending one.

        Returns the new attempt, or ``None`` when the step is not failed.
        """

    @abc.abstractmethod
    async def get_run_history(self, run_id: str) -> List[StepHistoryEntry]:
        """Return every recorded transition of a run in insertion order."""

    @abc.abstractmethod
    async def _transition(self, step_id: str, target: str, changes: Dict[str, Any]) -> bool:
        """Apply a guarded transition to ``target`` together with ``changes``."""

    async def set_step_scheduled(self, step_id: str) -> bool:
        return await self._transition(step_id, "scheduled", {})

    async def set_step_running(self, step_id: str) -> bool:
        """Claim the attempt. Only one caller can win."""
        return await self._transition(step_id, "running", {})

    async def set_step_result(
        self, step_id: str, result: Any = None, branch: Optional[str] = None
    ) -> bool:
        return await self._transition(
            step_id, "succeeded", {"result": result, "branch": branch, "error": None}
        )

    async def set_step_error(self, step_id: str, error: SerializedError) -> bool:
        return await self._transition(step_id, "failed", {"error": error})

    async def set_step_suspended(
        self, step_id: str, reason: str, result: Any = None
    ) -> bool:
        error = SerializedError(message=reason, code=SUSPENDED_CODE)
        return await self._transition(
            step_id, "suspended", {"result": result, "error": error}
        )

    # ------------------------------------------------------------------
    # Versions
    @abc.abstractmethod
    async def upsert_workflow_version(self, version: WorkflowVersion) -> None:
        """Store ``version`` unless ``(workflow_name, graph_hash)`` already exists."""

    @abc.abstractmethod
    async def get_workflow_version(
        self, workflow_name: str, graph_hash: str
    ) -> Optional[WorkflowVersion]:
        """Return the stored topology for a workflow hash."""

    # ------------------------------------------------------------------
    # Locking
    @abc.abstractmethod
    async def _try_acquire_lock(self, run_id: str) -> Any:
        """Try once to take the run lock. Return a release token or ``None``."""

    @abc.abstractmethod
    async def _release_lock(self, run_id: str, token: Any) -> None:
        """Release a lock previously returned by ``_try_acquire_lock``."""

    @asynccontextmanager
    async def run_lock(
        self, run_id: str, timeout: Optional[float] = None
    ) -> AsyncIterator[None]:
        """Hold the exclusive lock of ``run_id`` for the duration of the block.

        Raises:
            LockAcquisitionTimeout: the lock was not obtained within ``timeout``.
        """
        timeout = self.lock_timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        attempt = 0
        token = await self._try_acquire_lock(run_id)
        while token is None:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise LockAcquisitionTimeout(run_id, timeout)
            pause = self.lock_retry_interval * compute_backoff(attempt, jitter=0.5)
            await asyncio.sleep(min(pause, remaining, MAX_LOCK_POLL_INTERVAL))
            attempt += 1
            token = await self._try_acquire_lock(run_id)
        try:
            yield
        finally:
            await self._release_lock(run_id, token)

    async def with_run_lock(
        self,
        run_id: str,
        fn: Callable[[], Awaitable[T]],
        timeout: Optional[float] = None,
    ) -> T:
        async with self.run_lock(run_id, timeout=timeout):
            return await fn()

    async def close(self) -> None:
        """Release backend resources (no-op by default)."""
        pass
