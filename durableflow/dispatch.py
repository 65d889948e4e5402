"""Job dispatcher for durableflow queues."""

from __future__ import annotations

import logging
from typing import Any, Optional

from .config import WorkflowConfig
from .contracts import (
    JobMessage,
    WorkflowOrchestratorInput,
    WorkflowSleeperInput,
    WorkflowStepInput,
)
from .transports import BaseTransport

logger = logging.getLogger(__name__)


class JobDispatcher:
    """Service responsible for publishing orchestrator, step and sleeper jobs."""

    def __init__(self, transport: BaseTransport, config: Optional[WorkflowConfig] = None) -> None:
        self.transport = transport
        self.config = config or WorkflowConfig()

    async def enqueue_orchestrate(self, run_id: str, delay: Optional[float] = None) -> None:
        message = JobMessage.orchestrate(WorkflowOrchestratorInput(run_id=run_id))
        await self.transport.publish(self.config.orchestrator_queue_name, message, delay=delay)
        logger.debug(f"Enqueued orchestrate job for run {run_id}")

    async def enqueue_step(
        self,
        run_id: str,
        step_name: str,
        rpc_name: Optional[str] = None,
        data: Any = None,
        delay: Optional[float] = None,
    ) -> WorkflowStepInput:
        job = WorkflowStepInput(run_id=run_id, step_name=step_name, rpc_name=rpc_name, data=data)
        await self.transport.publish(
            self.config.step_worker_queue_name, JobMessage.step(job), delay=delay
        )
        logger.debug(f"Enqueued step {step_name} for run {run_id} (delay={delay})")
        return job

    async def enqueue_sleep(
        self, run_id: str, step_name: str, step_id: str, delay: float
    ) -> None:
        job = WorkflowSleeperInput(run_id=run_id, step_name=step_name, step_id=step_id)
        await self.transport.publish(
            self.config.sleeper_queue_name, JobMessage.sleep(job), delay=delay
        )
        logger.debug(f"Step {step_name} of run {run_id} sleeping for {delay}s")
