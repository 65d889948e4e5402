"""Queue consumer that feeds jobs to the orchestrator."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, List, Optional

from .contracts import JobMessage
from .errors import DurableflowError, LockAcquisitionTimeout
from .orchestrator import WorkflowOrchestrator
from .transports import BaseTransport

logger = logging.getLogger(__name__)


class WorkflowWorker:
    """Consumes the orchestrator, step and sleeper queues.

    Delivery is at-least-once: a job is acked once handled, or when it failed
    with an engine error that has already been recorded on the run. Lock
    timeouts and unexpected errors are nacked so the job is redelivered.
    """

    def __init__(self, orchestrator: WorkflowOrchestrator, transport: BaseTransport) -> None:
        self.orchestrator = orchestrator
        self.transport = transport
        queues = orchestrator.config.workflow
        self.topics: List[str] = [
            queues.orchestrator_queue_name,
            queues.step_worker_queue_name,
            queues.sleeper_queue_name,
        ]

    async def handle(self, message: JobMessage) -> None:
        if message.job_type == "orchestrate":
            await self.orchestrator.handle_orchestrate_job(message.orchestrator_input())
        elif message.job_type == "step":
            await self.orchestrator.handle_step_job(message.step_input())
        elif message.job_type == "sleep":
            await self.orchestrator.handle_sleep_job(message.sleeper_input())
        else:  # pragma: no cover - JobType is closed
            raise ValueError(f"Unknown job type: {message.job_type}")

    async def process(self, raw_message: Any, message: JobMessage) -> bool:
        """Handle one delivery. Returns False when it was nacked for redelivery."""
        try:
            await self.handle(message)
        except LockAcquisitionTimeout as e:
            logger.warning(f"{e}; requeueing {message.job_type} job {message.message_id}")
            await self.transport.nack(raw_message, requeue=True)
            return False
        except DurableflowError as e:
            logger.error(f"{message.job_type} job {message.message_id} failed: {e}")
            await self.transport.ack(raw_message)
            return True
        except Exception:
            logger.exception(f"Unexpected error handling {message.job_type} job {message.message_id}")
            await self.transport.nack(raw_message, requeue=True)
            return False
        await self.transport.ack(raw_message)
        return True

    async def _consume(self, topic: str, lifespan: Optional[float]) -> None:
        async for raw_message, message in self.transport.subscribe(topic, lifespan=lifespan):
            await self.process(raw_message, message)

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Consume all queues concurrently until ``lifespan`` expires (or forever)."""
        await self.transport.connect()
        await self.transport.recover(self.topics)
        logger.info(f"Worker consuming {', '.join(self.topics)}")
        try:
            await asyncio.gather(*(self._consume(topic, lifespan) for topic in self.topics))
        finally:
            await self.transport.disconnect()

    async def run_until_idle(self, timeout: float = 10.0, poll_interval: float = 0.01) -> int:
        """Process jobs until every queue is empty, including delayed jobs.

        Returns the number of deliveries processed.

        Raises:
            TimeoutError: queues still held jobs after ``timeout`` seconds.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        processed = 0
        while True:
            if loop.time() >= deadline:
                raise TimeoutError(f"Queues not drained after {timeout}s")
            progressed = False
            for topic in self.topics:
                item = await self.transport.poll(topic)
                if item is not None:
                    await self.process(*item)
                    processed += 1
                    progressed = True
            if progressed:
                continue
            if not await self.transport.has_pending(self.topics):
                return processed
            await asyncio.sleep(poll_interval)
