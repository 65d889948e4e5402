"""Workflow orchestrator: the per-run control loop.

Every decision about a run (which steps become eligible, whether it has
completed, failed or suspended) is taken inside the run lock by
:meth:`WorkflowOrchestrator.advance`. Step bodies run outside the lock, either
in-process for inline runs or on a step worker for queued runs.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from typing import Any, Dict, List, Optional, Tuple

from .config import DurableflowConfig
from .constants import CANCELLED_CODE, DEFAULT_SUSPEND_REASON, SUSPENDED_CODE
from .contracts import WorkflowOrchestratorInput, WorkflowSleeperInput, WorkflowStepInput
from .dispatch import JobDispatcher
from .errors import (
    DurableflowError,
    InvalidPath,
    LockAcquisitionTimeout,
    MissingBranchSelection,
    ResolutionError,
    WorkflowDefinitionError,
    WorkflowRunFailed,
    WorkflowRunNotFound,
)
from .executor import RPCInvoker, StepExecutor, StepOutcome
from .graph.models import (
    FanoutStep,
    InlineStep,
    ReturnStep,
    RpcStep,
    SerializedNode,
    SerializedWorkflowGraph,
    as_target_list,
)
from .path_resolver import NodeResult, ResolverContext, resolve_inputs
from .persistence.models import (
    SerializedError,
    StepHistoryEntry,
    StepState,
    WorkflowRun,
)
from .persistence.store import WorkflowStateStore
from .registry import WorkflowRegistry
from .transports import BaseTransport
from .versioning import TopologyResolver

logger = logging.getLogger(__name__)

_Advanced = Tuple[Optional[WorkflowRun], Optional[SerializedWorkflowGraph], List[StepState]]


def resolve_next(node: SerializedNode, branch: Optional[str]) -> List[str]:
    """Targets to schedule after ``node`` succeeded with ``branch`` selected."""
    if not isinstance(node.next, dict):
        return as_target_list(node.next)
    if branch is not None and branch in node.next:
        return as_target_list(node.next[branch])
    if "default" in node.next:
        return as_target_list(node.next["default"])
    raise MissingBranchSelection(node.node_id, branch)


def run_output(graph: SerializedWorkflowGraph, steps: Dict[str, StepState]) -> Any:
    succeeded = [s for s in steps.values() if s.status == "succeeded"]
    returns = [s for s in succeeded if isinstance(graph.nodes.get(s.step_name), ReturnStep)]
    if returns:
        return returns[-1].result
    terminals = [
        s for s in succeeded if s.step_name in graph.nodes and graph.nodes[s.step_name].is_terminal
    ]
    if not terminals:
        return None
    if len(terminals) == 1:
        return terminals[0].result
    return {s.step_name: s.result for s in terminals}


class WorkflowOrchestrator:
    """Starts, advances, suspends, resumes and cancels workflow runs."""

    def __init__(
        self,
        registry: WorkflowRegistry,
        store: WorkflowStateStore,
        invoker: RPCInvoker,
        transport: Optional[BaseTransport] = None,
        config: Optional[DurableflowConfig] = None,
    ) -> None:
        self.registry = registry
        self.store = store
        self.config = config or DurableflowConfig()
        self.dispatcher = (
            JobDispatcher(transport, self.config.workflow) if transport is not None else None
        )
        self.topology = TopologyResolver(registry, store)
        self.executor = StepExecutor(
            store, registry, invoker, self.dispatcher, cancel_run=self.cancel_run
        )
        registry.freeze()

    # ------------------------------------------------------------------
    # Run lifecycle
    async def start_workflow(self, name: str, input: Any = None, inline: bool = False) -> str:
        """Create a run of ``name`` and start executing it.

        Inline runs are driven to their next resting point (completed, failed
        or suspended) before this returns. Queued runs only enqueue an
        orchestrator job.
        """
        meta = self.registry.require(name)
        if not inline and self.dispatcher is None:
            raise ValueError("A transport is required to start queued runs")

        graph_hash = await self.topology.ensure_version(meta)
        run = WorkflowRun(
            id=str(uuid.uuid4()),
            workflow=name,
            input=input,
            graph_hash=graph_hash,
            inline=inline,
        )
        await self.store.create_run(run)
        logger.info(f"Started run {run.id} of workflow {name} (hash={graph_hash}, inline={inline})")

        if inline:
            await self._drive(run.id)
        else:
            await self.dispatcher.enqueue_orchestrate(run.id)
        return run.id

    async def run_to_completion(self, name: str, input: Any = None) -> Any:
        """Run ``name`` inline and return its output.

        Raises:
            WorkflowRunFailed: the run ended failed, cancelled or suspended.
        """
        run_id = await self.start_workflow(name, input, inline=True)
        run = await self.get_run(run_id)
        if run.status != "completed":
            message = run.error.message if run.error else None
            raise WorkflowRunFailed(run_id, run.status, message)
        return run.output

    async def resume_workflow(self, run_id: str) -> bool:
        """Resume a suspended run. Returns False when the run is not suspended."""
        async with self.store.run_lock(run_id):
            run = await self.store.get_run(run_id)
            if run is None:
                raise WorkflowRunNotFound(run_id)
            if run.status != "suspended":
                logger.debug(f"Run {run_id} is {run.status}; nothing to resume")
                return False
            for state in await self.store.list_step_states(run_id):
                if state.status == "suspended":
                    await self.store.set_step_result(state.step_id, state.result, state.branch)
                elif state.status == "failed" and state.error and state.error.code == "RPC_NOT_FOUND":
                    await self.store.create_retry_attempt(run_id, state.step_name)
            await self.store.update_run_status(run_id, "running")
            logger.info(f"Resumed run {run_id}")

        if run.inline or self.dispatcher is None:
            await self._drive(run_id)
        else:
            await self.dispatcher.enqueue_orchestrate(run_id)
        return True

    async def cancel_run(self, run_id: str, reason: str = "Workflow cancelled") -> bool:
        """Cancel a run that has not ended. Returns False for terminal runs."""
        async with self.store.run_lock(run_id):
            run = await self.store.get_run(run_id)
            if run is None:
                raise WorkflowRunNotFound(run_id)
            if run.is_terminal:
                return False
            await self.store.update_run_status(
                run_id, "cancelled", error=SerializedError(message=reason, code=CANCELLED_CODE)
            )
        logger.info(f"Cancelled run {run_id}: {reason}")
        return True

    async def delete_run(self, run_id: str) -> bool:
        return await self.store.delete_run(run_id)

    async def get_run(self, run_id: str) -> WorkflowRun:
        run = await self.store.get_run(run_id)
        if run is None:
            raise WorkflowRunNotFound(run_id)
        return run

    async def list_runs(
        self, workflow: Optional[str] = None, status: Optional[str] = None
    ) -> List[WorkflowRun]:
        return await self.store.list_runs(workflow=workflow, status=status)

    async def get_run_history(self, run_id: str) -> List[StepHistoryEntry]:
        return await self.store.get_run_history(run_id)

    async def register_workflow_versions(self) -> List[Tuple[str, str]]:
        """Store the topology of every registered workflow."""
        return [(meta.name, await self.topology.ensure_version(meta)) for meta in self.registry]

    # ------------------------------------------------------------------
    # Queue entry points
    async def handle_orchestrate_job(self, job: WorkflowOrchestratorInput) -> List[WorkflowStepInput]:
        return await self.advance(job.run_id)

    async def handle_step_job(self, job: WorkflowStepInput) -> Optional[StepOutcome]:
        state = await self.store.get_step_state(job.run_id, job.step_name)
        if state is None:
            logger.warning(f"Step {job.step_name} of run {job.run_id} does not exist")
            return None
        if state.status == "succeeded":
            # Redelivery after the result was stored: make sure the run moves on.
            await self._enqueue_orchestrate(job.run_id)
            return None
        run = await self.store.get_run(job.run_id)
        if run is None or run.is_terminal:
            return None
        if state.status == "failed" and not state.retries_exhausted:
            # The worker stopped between recording the error and creating the retry.
            retry = await self.store.create_retry_attempt(job.run_id, job.step_name)
            if retry is None:
                logger.debug(f"Retry of {job.step_name} in run {job.run_id} already exists")
                return None
            logger.info(
                f"Recovered retry of step {job.step_name} in run {job.run_id} "
                f"(attempt {retry.attempt_count})"
            )
            state = retry
        if state.status not in ("pending", "scheduled"):
            logger.debug(f"Step {job.step_name} of run {job.run_id} is {state.status}; skipping")
            return None

        graph = await self.topology.graph_for_run(run)
        outcome = await self.executor.execute(run, graph.nodes[job.step_name], state)
        if outcome.kind in ("succeeded", "failed", "suspended"):
            await self._enqueue_orchestrate(run.id)
        return outcome

    async def handle_sleep_job(self, job: WorkflowSleeperInput) -> bool:
        run = await self.store.get_run(job.run_id)
        if run is None or run.is_terminal:
            return False
        if not await self.store.set_step_result(job.step_id, None):
            logger.debug(f"Sleep of step {job.step_name} in run {job.run_id} already finished")
            return False
        await self._enqueue_orchestrate(job.run_id)
        return True

    async def _enqueue_orchestrate(self, run_id: str) -> None:
        if self.dispatcher is not None:
            await self.dispatcher.enqueue_orchestrate(run_id)

    # ------------------------------------------------------------------
    # Control loop
    async def advance(self, run_id: str) -> List[WorkflowStepInput]:
        """Schedule every step of ``run_id`` that has become eligible.

        Returns the step jobs that were scheduled by this call.
        """
        _, _, scheduled = await self._advance(run_id)
        return [
            WorkflowStepInput(
                run_id=run_id, step_name=s.step_name, rpc_name=s.rpc_name, data=s.data
            )
            for s in scheduled
        ]

    async def _drive(self, run_id: str) -> None:
        """Advance and execute an inline run until nothing is left to schedule."""
        while True:
            try:
                run, graph, scheduled = await self._advance(run_id)
            except LockAcquisitionTimeout:
                raise
            except DurableflowError as exc:
                # Already recorded on the run by _advance.
                logger.info(f"Run {run_id} stopped: {exc}")
                return
            if not scheduled:
                return
            await asyncio.gather(
                *(self.executor.execute(run, graph.nodes[s.step_name], s) for s in scheduled)
            )

    async def _advance(self, run_id: str) -> _Advanced:
        async with self.store.run_lock(run_id):
            try:
                return await self._advance_locked(run_id)
            except LockAcquisitionTimeout:
                raise
            except DurableflowError as exc:
                await self._fail_run(run_id, SerializedError.from_exception(exc))
                raise

    async def _advance_locked(self, run_id: str) -> _Advanced:
        run = await self.store.get_run(run_id)
        if run is None:
            raise WorkflowRunNotFound(run_id)
        if run.status != "running":
            logger.debug(f"Run {run_id} is {run.status}; not advancing")
            return run, None, []

        graph = await self.topology.graph_for_run(run)
        steps = {s.step_name: s for s in await self.store.list_step_states(run_id)}
        context = ResolverContext(trigger_input=run.input)
        candidates: List[str] = [] if steps else list(graph.entry_node_ids)

        for state in steps.values():
            if state.status == "suspended":
                reason = state.error.message if state.error else DEFAULT_SUSPEND_REASON
                await self._suspend_run(run_id, SerializedError(message=reason, code=SUSPENDED_CODE))
                return run, graph, []

        for state in steps.values():
            node = self._node(graph, state.step_name)
            if state.status == "succeeded":
                context.completed[state.step_name] = NodeResult(output=state.result)
                candidates.extend(resolve_next(node, state.branch))
            elif state.retries_exhausted:
                error = state.error or SerializedError(message="Step failed")
                context.completed[state.step_name] = NodeResult(error=error.model_dump())
                if error.code == "RPC_NOT_FOUND":
                    # Deploy the missing function, then resume.
                    await self._suspend_run(run_id, error)
                    return run, graph, []
                targets = as_target_list(node.on_error)
                if not targets:
                    await self._fail_run(run_id, error)
                    return run, graph, []
                candidates.extend(targets)

        queue = deque(candidates)
        visited = set()
        while queue:
            node_id = queue.popleft()
            if node_id in visited or node_id in steps:
                continue
            visited.add(node_id)
            node = self._node(graph, node_id)
            if any(
                dep not in steps or steps[dep].status != "succeeded" for dep in node.after
            ):
                continue

            try:
                data = self._resolve_data(node, context)
            except ResolutionError as exc:
                error = SerializedError.from_exception(exc)
                state = self._new_state(run, node, None)
                await self.store.insert_step_state(state)
                await self.store.set_step_error(state.step_id, error)
                steps[node_id] = await self.store.get_step_state(run_id, node_id)
                context.completed[node_id] = NodeResult(error=error.model_dump())
                targets = as_target_list(node.on_error)
                if not targets:
                    await self._fail_run(run_id, error)
                    return run, graph, []
                queue.extend(targets)
                continue

            state = self._new_state(run, node, data)
            if await self.store.insert_step_state(state):
                steps[node_id] = state

        scheduled: List[StepState] = []
        for state in steps.values():
            if state.status == "pending" and await self.store.set_step_scheduled(state.step_id):
                state.status = "scheduled"
                scheduled.append(state)

        if not scheduled and not any(s.in_flight for s in steps.values()):
            output = run_output(graph, steps)
            await self.store.update_run_status(run_id, "completed", output=output)
            logger.info(f"Run {run_id} completed")
            return run, graph, []

        if not run.inline and self.dispatcher is not None:
            for state in scheduled:
                await self.dispatcher.enqueue_step(
                    run_id, state.step_name, state.rpc_name, state.data
                )
        return run, graph, scheduled

    # ------------------------------------------------------------------
    def _node(self, graph: SerializedWorkflowGraph, node_id: str) -> SerializedNode:
        node = graph.nodes.get(node_id)
        if node is None:
            raise WorkflowDefinitionError(f"Workflow '{graph.name}' has no node '{node_id}'")
        return node

    def _resolve_data(self, node: SerializedNode, context: ResolverContext) -> Any:
        data = resolve_inputs(node.input, context)
        if not isinstance(node, FanoutStep):
            return data
        items = data.get("items")
        if not isinstance(items, list):
            raise InvalidPath(
                f"Fanout '{node.node_id}' needs an array of items, got {type(items).__name__}"
            )
        if not node.item_input:
            return {"items": items}
        return {
            "items": [
                resolve_inputs(
                    node.item_input, context.model_copy(update={"item": NodeResult(output=item)})
                )
                for item in items
            ]
        }

    def _new_state(self, run: WorkflowRun, node: SerializedNode, data: Any) -> StepState:
        retries = 0
        retry_delay = None
        if isinstance(node, (RpcStep, InlineStep, FanoutStep)):
            defaults = self.config.workflow
            retries = node.retries if node.retries is not None else defaults.retries
            retry_delay = node.retry_delay if node.retry_delay is not None else defaults.retry_delay
        return StepState(
            step_id=str(uuid.uuid4()),
            run_id=run.id,
            step_name=node.node_id,
            rpc_name=node.rpc_name if isinstance(node, (RpcStep, FanoutStep)) else None,
            data=data,
            retries=retries,
            retry_delay=retry_delay,
        )

    async def _fail_run(self, run_id: str, error: SerializedError) -> None:
        await self.store.update_run_status(run_id, "failed", error=error)
        logger.info(f"Run {run_id} failed: {error.message}")

    async def _suspend_run(self, run_id: str, error: SerializedError) -> None:
        await self.store.update_run_status(run_id, "suspended", error=error)
        logger.info(f"Run {run_id} suspended: {error.message}")
