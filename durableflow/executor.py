"""Step execution for durableflow runs."""

from __future__ import annotations

import abc
import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Literal, Mapping, Optional, Union

from pydantic import BaseModel

from .constants import DEFAULT_SUSPEND_REASON
from .dispatch import JobDispatcher
from .errors import ResolutionError, RPCNotFound, WorkflowDefinitionError
from .graph.models import (
    BranchStep,
    CancelStep,
    FanoutStep,
    InlineStep,
    ParallelStep,
    ReturnStep,
    RpcStep,
    SerializedNode,
    SleepStep,
    SuspendStep,
)
from .persistence.models import SerializedError, StepState, WorkflowRun
from .persistence.store import WorkflowStateStore
from .registry import WorkflowRegistry
from .utils.retry import compute_retry_delay, parse_duration

logger = logging.getLogger(__name__)


class StepContext:
    """Handed to rpc and inline callables as their second argument."""

    def __init__(self, run_id: str, step_id: str, step_name: str, attempt_count: int) -> None:
        self.run_id = run_id
        self.step_id = step_id
        self.step_name = step_name
        self.attempt_count = attempt_count
        self.branch_key: Optional[str] = None
        self.suspend_reason: Optional[str] = None

    def branch(self, key: Any) -> None:
        """Select the outgoing branch of this step."""
        self.branch_key = str(key)

    def suspend(self, reason: str = DEFAULT_SUSPEND_REASON) -> None:
        """Suspend the run once this step returns."""
        self.suspend_reason = reason


class RPCInvoker(abc.ABC):
    """Invokes a named remote procedure."""

    @abc.abstractmethod
    async def invoke(self, rpc_name: str, data: Any, context: StepContext) -> Any:
        """Return the procedure's output or raise. Unknown names raise RPCNotFound."""


class FunctionRPCInvoker(RPCInvoker):
    """Invoker backed by plain (sync or async) callables ``fn(data, context)``."""

    def __init__(self, functions: Optional[Mapping[str, Callable[..., Any]]] = None) -> None:
        self._functions: Dict[str, Callable[..., Any]] = dict(functions or {})

    def register(self, rpc_name: str, fn: Callable[..., Any]) -> None:
        self._functions[rpc_name] = fn

    def __contains__(self, rpc_name: object) -> bool:
        return rpc_name in self._functions

    async def invoke(self, rpc_name: str, data: Any, context: StepContext) -> Any:
        fn = self._functions.get(rpc_name)
        if fn is None:
            raise RPCNotFound(rpc_name)
        return await _call(fn, data, context)


async def _call(fn: Callable[..., Any], data: Any, context: StepContext) -> Any:
    result = fn(data, context)
    if inspect.isawaitable(result):
        result = await result
    return result


# ----------------------------------------------------------------------
# Outcomes


class StepSucceeded(BaseModel):
    kind: Literal["succeeded"] = "succeeded"
    run_id: str
    step_name: str
    output: Any = None
    branch: Optional[str] = None


class StepFailed(BaseModel):
    """The attempt failed and no further attempt was scheduled."""

    kind: Literal["failed"] = "failed"
    run_id: str
    step_name: str
    error: SerializedError


class StepSuspended(BaseModel):
    kind: Literal["suspended"] = "suspended"
    run_id: str
    step_name: str
    reason: str


class StepDeferred(BaseModel):
    """Work continues from a delayed job (sleep timer or retry)."""

    kind: Literal["deferred"] = "deferred"
    run_id: str
    step_name: str
    delay: float = 0.0


class StepSkipped(BaseModel):
    """Nothing was done: the attempt was already claimed or the run has ended."""

    kind: Literal["skipped"] = "skipped"
    run_id: str
    step_name: str
    reason: str


class StepCancelled(BaseModel):
    """The step cancelled its own run."""

    kind: Literal["cancelled"] = "cancelled"
    run_id: str
    step_name: str
    reason: str


StepOutcome = Union[
    StepSucceeded, StepFailed, StepSuspended, StepDeferred, StepSkipped, StepCancelled
]


class _Deferred:
    def __init__(self, delay: float) -> None:
        self.delay = delay


class _Cancel:
    def __init__(self, reason: str) -> None:
        self.reason = reason


class StepExecutor:
    """Runs a single step attempt and records its outcome."""

    def __init__(
        self,
        store: WorkflowStateStore,
        registry: WorkflowRegistry,
        invoker: RPCInvoker,
        dispatcher: Optional[JobDispatcher] = None,
        cancel_run: Optional[Callable[[str, str], Awaitable[Any]]] = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.invoker = invoker
        self.dispatcher = dispatcher
        self.cancel_run = cancel_run

    async def execute(
        self, run: WorkflowRun, node: SerializedNode, state: StepState
    ) -> StepOutcome:
        if not await self.store.set_step_running(state.step_id):
            logger.warning(
                f"Step {state.step_name} of run {run.id} already claimed ({state.step_id})"
            )
            return StepSkipped(
                run_id=run.id, step_name=state.step_name, reason="already claimed"
            )

        context = StepContext(run.id, state.step_id, state.step_name, state.attempt_count)
        try:
            output = await self._dispatch(run, node, state, context)
        except Exception as exc:
            return await self._handle_failure(run, node, state, exc)

        if isinstance(output, _Deferred):
            return StepDeferred(run_id=run.id, step_name=state.step_name, delay=output.delay)

        current = await self.store.get_run(run.id)
        if current is None or current.is_terminal:
            logger.info(f"Run {run.id} has ended; dropping result of {state.step_name}")
            return StepSkipped(run_id=run.id, step_name=state.step_name, reason="run ended")

        if context.suspend_reason is not None:
            await self.store.set_step_suspended(state.step_id, context.suspend_reason, output)
            logger.info(f"Step {state.step_name} of run {run.id} suspended: {context.suspend_reason}")
            return StepSuspended(
                run_id=run.id, step_name=state.step_name, reason=context.suspend_reason
            )

        if isinstance(output, _Cancel):
            await self.store.set_step_result(state.step_id, None)
            if self.cancel_run is None:
                raise WorkflowDefinitionError(
                    f"Step {state.step_name} cancels the run but no canceller is configured"
                )
            await self.cancel_run(run.id, output.reason)
            return StepCancelled(run_id=run.id, step_name=state.step_name, reason=output.reason)

        await self.store.set_step_result(state.step_id, output, context.branch_key)
        return StepSucceeded(
            run_id=run.id, step_name=state.step_name, output=output, branch=context.branch_key
        )

    async def _dispatch(
        self, run: WorkflowRun, node: SerializedNode, state: StepState, context: StepContext
    ) -> Any:
        data = state.data
        if isinstance(node, RpcStep):
            return await self.invoker.invoke(node.rpc_name, data, context)
        if isinstance(node, InlineStep):
            fn = self.registry.get_function(node.func_name)
            if fn is None:
                raise RPCNotFound(node.func_name)
            return await _call(fn, data, context)
        if isinstance(node, FanoutStep):
            return await self._fanout(node, data, context)
        if isinstance(node, SleepStep):
            seconds = parse_duration(node.duration)
            if run.inline or self.dispatcher is None:
                await asyncio.sleep(seconds)
                return None
            await self.dispatcher.enqueue_sleep(run.id, node.node_id, state.step_id, seconds)
            return _Deferred(seconds)
        if isinstance(node, BranchStep):
            value = (data or {}).get("value")
            context.branch(value)
            return value
        if isinstance(node, ParallelStep):
            return None
        if isinstance(node, SuspendStep):
            context.suspend(node.reason)
            return data or None
        if isinstance(node, CancelStep):
            return _Cancel(node.reason)
        if isinstance(node, ReturnStep):
            return data
        raise WorkflowDefinitionError(f"Unsupported node kind: {node.kind}")

    async def _fanout(self, node: FanoutStep, data: Any, context: StepContext) -> List[Any]:
        items = (data or {}).get("items") or []
        if node.mode == "parallel":
            gathered = await asyncio.gather(
                *(self.invoker.invoke(node.rpc_name, item, context) for item in items)
            )
            return list(gathered)

        gap = parse_duration(node.time_between) if node.time_between is not None else 0.0
        results = []
        for index, item in enumerate(items):
            if index and gap:
                await asyncio.sleep(gap)
            results.append(await self.invoker.invoke(node.rpc_name, item, context))
        return results

    async def _handle_failure(
        self, run: WorkflowRun, node: SerializedNode, state: StepState, exc: Exception
    ) -> StepOutcome:
        error = SerializedError.from_exception(exc)
        current = await self.store.get_run(run.id)
        if current is None or current.is_terminal:
            logger.info(f"Run {run.id} has ended; dropping failure of {state.step_name}")
            return StepSkipped(run_id=run.id, step_name=state.step_name, reason="run ended")

        await self.store.set_step_error(state.step_id, error)
        retryable = not isinstance(exc, (ResolutionError, RPCNotFound))
        if not retryable or state.attempt_count > (state.retries or 0):
            logger.info(
                f"Step {state.step_name} of run {run.id} failed "
                f"(attempt {state.attempt_count}): {error.message}"
            )
            return StepFailed(run_id=run.id, step_name=state.step_name, error=error)

        delay = compute_retry_delay(state.retry_delay, state.attempt_count)
        attempt = await self.store.create_retry_attempt(run.id, state.step_name)
        if attempt is None:
            return StepSkipped(
                run_id=run.id, step_name=state.step_name, reason="retry already created"
            )
        logger.info(
            f"Retrying step {state.step_name} of run {run.id} "
            f"(attempt {attempt.attempt_count}) in {delay}s"
        )
        if run.inline or self.dispatcher is None:
            if delay:
                await asyncio.sleep(delay)
            return await self.execute(run, node, attempt)

        if await self.store.set_step_scheduled(attempt.step_id):
            await self.dispatcher.enqueue_step(
                run.id, state.step_name, state.rpc_name, attempt.data, delay=delay
            )
        return StepDeferred(run_id=run.id, step_name=state.step_name, delay=delay)
