"""Queue job contracts exchanged between the orchestrator and workers."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Literal

from pydantic import BaseModel, Field

JobType = Literal["orchestrate", "step", "sleep"]


class WorkflowOrchestratorInput(BaseModel):
    """Ask a worker to advance ``run_id``."""

    run_id: str


class WorkflowStepInput(BaseModel):
    """Ask a worker to execute one step of a run."""

    run_id: str
    step_name: str
    rpc_name: str | None = None
    data: Any = None


class WorkflowSleeperInput(BaseModel):
    """Delivered once a sleep step's duration has elapsed."""

    run_id: str
    step_name: str
    step_id: str


class JobMessage(BaseModel):
    """
    Envelope placed on the queue. Carries the job type and its payload.
    """

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    job_type: JobType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    payload: Dict[str, Any] = Field(default_factory=dict)
    spec_version: str = "1.0"

    @classmethod
    def orchestrate(cls, job: WorkflowOrchestratorInput) -> "JobMessage":
        return cls(job_type="orchestrate", payload=job.model_dump(mode="json"))

    @classmethod
    def step(cls, job: WorkflowStepInput) -> "JobMessage":
        return cls(job_type="step", payload=job.model_dump(mode="json"))

    @classmethod
    def sleep(cls, job: WorkflowSleeperInput) -> "JobMessage":
        return cls(job_type="sleep", payload=job.model_dump(mode="json"))

    def orchestrator_input(self) -> WorkflowOrchestratorInput:
        return WorkflowOrchestratorInput.model_validate(self.payload)

    def step_input(self) -> WorkflowStepInput:
        return WorkflowStepInput.model_validate(self.payload)

    def sleeper_input(self) -> WorkflowSleeperInput:
        return WorkflowSleeperInput.model_validate(self.payload)

    def to_json(self) -> str:
        """Serialize message to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "JobMessage":
        """Deserialize message from JSON."""
        return cls.model_validate_json(data)
