"""Data models for persisted workflow state."""

from __future__ import annotations

import traceback
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..graph.models import SerializedWorkflowGraph, WorkflowSource
from ..utils.retry import RetryDelay

WorkflowStatus = Literal["running", "suspended", "completed", "failed", "cancelled"]
StepStatus = Literal["pending", "scheduled", "running", "succeeded", "failed", "suspended"]

TERMINAL_RUN_STATUSES: FrozenSet[str] = frozenset({"completed", "failed", "cancelled"})
IN_FLIGHT_STEP_STATUSES: FrozenSet[str] = frozenset({"pending", "scheduled", "running"})

# Error codes that mark a failed attempt as final regardless of retry budget.
NON_RETRYABLE_CODES: FrozenSet[str] = frozenset(
    {"INVALID_PATH", "UNRESOLVED_REFERENCE", "RESOLUTION_ERROR", "RPC_NOT_FOUND"}
)

# Allowed step transitions; anything else is ignored by the stores.
STEP_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "scheduled": frozenset({"pending"}),
    "running": frozenset({"pending", "scheduled"}),
    "succeeded": frozenset({"running", "suspended"}),
    "failed": frozenset({"pending", "scheduled", "running"}),
    "suspended": frozenset({"running"}),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def can_transition(current: str, target: str) -> bool:
    return current in STEP_TRANSITIONS.get(target, frozenset())


class SerializedError(BaseModel):
    """Error shape stored on failed steps and runs."""

    model_config = ConfigDict(extra="allow")

    message: str
    stack: Optional[str] = None
    code: Optional[str] = None
    name: Optional[str] = None

    @classmethod
    def from_exception(
        cls, exc: BaseException, code: Optional[str] = None
    ) -> "SerializedError":
        stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        return cls(
            message=str(exc) or type(exc).__name__,
            stack=stack,
            code=code or getattr(exc, "code", None),
            name=type(exc).__name__,
        )


class WorkflowRun(BaseModel):
    """One execution instance of a workflow."""

    id: str
    workflow: str
    status: WorkflowStatus = "running"
    input: Any = None
    output: Any = None
    error: Optional[SerializedError] = None
    graph_hash: str
    inline: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES


class StepState(BaseModel):
    """Current attempt of a step within a run.

    ``step_id`` identifies the attempt; ``step_name`` is the stable node id.
    """

    step_id: str
    run_id: str
    step_name: str
    rpc_name: Optional[str] = None
    data: Any = None
    status: StepStatus = "pending"
    result: Any = None
    error: Optional[SerializedError] = None
    branch: Optional[str] = None
    attempt_count: int = 1
    retries: Optional[int] = None
    retry_delay: Optional[RetryDelay] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    scheduled_at: Optional[datetime] = None
    running_at: Optional[datetime] = None
    succeeded_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    suspended_at: Optional[datetime] = None

    @property
    def retries_exhausted(self) -> bool:
        """True once a failed attempt will not be retried."""
        if self.status != "failed":
            return False
        if self.error is not None and self.error.code in NON_RETRYABLE_CODES:
            return True
        return self.attempt_count > (self.retries or 0)

    @property
    def in_flight(self) -> bool:
        if self.status in IN_FLIGHT_STEP_STATUSES:
            return True
        return self.status == "failed" and not self.retries_exhausted


class StepHistoryEntry(BaseModel):
    """Immutable record of a single step transition."""

    history_id: Optional[int] = None
    run_id: str
    step_name: str
    step_id: str
    attempt_count: int
    status: StepStatus
    result: Any = None
    error: Optional[SerializedError] = None
    branch: Optional[str] = None
    recorded_at: datetime = Field(default_factory=utcnow)


class WorkflowVersion(BaseModel):
    """Topology stored once per ``(workflow_name, graph_hash)``."""

    workflow_name: str
    graph_hash: str
    graph: SerializedWorkflowGraph
    source: WorkflowSource = "graph"
    created_at: datetime = Field(default_factory=utcnow)
