"""In-memory implementation of the workflow state store."""

from __future__ import annotations

import time
import uuid
from typing import Any, Dict, List, Optional, Tuple

from .models import (
    SerializedError,
    StepHistoryEntry,
    StepState,
    WorkflowRun,
    WorkflowStatus,
    WorkflowVersion,
    can_transition,
    utcnow,
)
from .store import WorkflowStateStore


class InMemoryWorkflowStateStore(WorkflowStateStore):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self, **lock_options: float) -> None:
        super().__init__(**lock_options)
        self._runs: Dict[str, WorkflowRun] = {}
        self._steps: Dict[Tuple[str, str], StepState] = {}
        self._history: List[StepHistoryEntry] = []
        self._versions: Dict[Tuple[str, str], WorkflowVersion] = {}
        self._locks: Dict[str, Tuple[str, float]] = {}
        self._history_id = 0

    # ------------------------------------------------------------------
    async def create_run(self, run: WorkflowRun) -> WorkflowRun:
        self._runs[run.id] = run.model_copy(deep=True)
        return run

    async def get_run(self, run_id: str) -> Optional[WorkflowRun]:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def list_runs(
        self, workflow: Optional[str] = None, status: Optional[str] = None
    ) -> List[WorkflowRun]:
        runs = [
            run.model_copy(deep=True)
            for run in self._runs.values()
            if (workflow is None or run.workflow == workflow)
            and (status is None or run.status == status)
        ]
        return sorted(runs, key=lambda r: r.created_at, reverse=True)

    async def update_run_status(
        self,
        run_id: str,
        status: WorkflowStatus,
        output: Any = None,
        error: Optional[SerializedError] = None,
    ) -> None:
        run = self._runs.get(run_id)
        if run:
            run.status = status
            run.output = output
            run.error = error
            run.updated_at = utcnow()

    async def delete_run(self, run_id: str) -> bool:
        existed = self._runs.pop(run_id, None) is not None
        for key in [key for key in self._steps if key[0] == run_id]:
            del self._steps[key]
        self._history = [entry for entry in self._history if entry.run_id != run_id]
        self._locks.pop(run_id, None)
        return existed

    # ------------------------------------------------------------------
    def _record(self, state: StepState) -> None:
        self._history_id += 1
        self._history.append(
            StepHistoryEntry(
                history_id=self._history_id,
                run_id=state.run_id,
                step_name=state.step_name,
                step_id=state.step_id,
                attempt_count=state.attempt_count,
                status=state.status,
                result=state.result,
                error=state.error,
                branch=state.branch,
                recorded_at=state.updated_at,
            )
        )

    def _find(self, step_id: str) -> Optional[StepState]:
        for state in self._steps.values():
            if state.step_id == step_id:
                return state
        return None

    async def insert_step_state(self, state: StepState) -> bool:
        key = (state.run_id, state.step_name)
        if key in self._steps:
            return False
        stored = state.model_copy(deep=True)
        self._steps[key] = stored
        self._record(stored)
        return True

    async def get_step_state(self, run_id: str, step_name: str) -> Optional[StepState]:
        state = self._steps.get((run_id, step_name))
        return state.model_copy(deep=True) if state else None

    async def get_step_state_by_id(self, step_id: str) -> Optional[StepState]:
        state = self._find(step_id)
        return state.model_copy(deep=True) if state else None

    async def list_step_states(self, run_id: str) -> List[StepState]:
        return [
            state.model_copy(deep=True)
            for (owner, _), state in self._steps.items()
            if owner == run_id
        ]

    async def _transition(self, step_id: str, target: str, changes: Dict[str, Any]) -> bool:
        state = self._find(step_id)
        if state is None or not can_transition(state.status, target):
            return False
        now = utcnow()
        for field, value in changes.items():
            setattr(state, field, value)
        state.status = target
        state.updated_at = now
        setattr(state, f"{target}_at", now)
        self._record(state)
        return True

    async def create_retry_attempt(self, run_id: str, step_name: str) -> Optional[StepState]:
        current = self._steps.get((run_id, step_name))
        if current is None or current.status != "failed":
            return None
        now = utcnow()
        attempt = StepState(
            step_id=str(uuid.uuid4()),
            run_id=run_id,
            step_name=step_name,
            rpc_name=current.rpc_name,
            data=current.data,
            attempt_count=current.attempt_count + 1,
            retries=current.retries,
            retry_delay=current.retry_delay,
            created_at=now,
            updated_at=now,
        )
        self._steps[(run_id, step_name)] = attempt
        self._record(attempt)
        return attempt.model_copy(deep=True)

    async def get_run_history(self, run_id: str) -> List[StepHistoryEntry]:
        return [entry.model_copy(deep=True) for entry in self._history if entry.run_id == run_id]

    # ------------------------------------------------------------------
    async def upsert_workflow_version(self, version: WorkflowVersion) -> None:
        key = (version.workflow_name, version.graph_hash)
        self._versions.setdefault(key, version.model_copy(deep=True))

    async def get_workflow_version(
        self, workflow_name: str, graph_hash: str
    ) -> Optional[WorkflowVersion]:
        version = self._versions.get((workflow_name, graph_hash))
        return version.model_copy(deep=True) if version else None

    # ------------------------------------------------------------------
    async def _try_acquire_lock(self, run_id: str) -> Optional[str]:
        now = time.monotonic()
        held = self._locks.get(run_id)
        if held is not None and held[1] > now:
            return None
        token = str(uuid.uuid4())
        self._locks[run_id] = (token, now + self.lock_ttl)
        return token

    async def _release_lock(self, run_id: str, token: str) -> None:
        held = self._locks.get(run_id)
        if held is not None and held[0] == token:
            del self._locks[run_id]
