"""Normalization of DSL step lists into the node graph representation."""

from __future__ import annotations

from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from ..errors import WorkflowDefinitionError
from ..utils.retry import RetryDelay
from .models import (
    BranchStep,
    CancelStep,
    FanoutStep,
    InlineStep,
    InputValue,
    ParallelStep,
    ReturnStep,
    RpcStep,
    SleepStep,
    SuspendStep,
    WorkflowRuntimeMeta,
    WorkflowSource,
)


class DslRpc(BaseModel):
    type: Literal["rpc"] = "rpc"
    step_name: str
    rpc_name: str
    input: Dict[str, InputValue] = Field(default_factory=dict)
    retries: Optional[int] = None
    retry_delay: Optional[RetryDelay] = None
    description: Optional[str] = None


class DslInline(BaseModel):
    type: Literal["inline"] = "inline"
    step_name: str
    func_name: str
    input: Dict[str, InputValue] = Field(default_factory=dict)
    retries: Optional[int] = None
    retry_delay: Optional[RetryDelay] = None
    description: Optional[str] = None


class DslSleep(BaseModel):
    type: Literal["sleep"] = "sleep"
    step_name: str
    duration: Union[float, str]


class DslSuspend(BaseModel):
    type: Literal["suspend"] = "suspend"
    step_name: str
    reason: str = "Workflow suspended"


class DslBranch(BaseModel):
    type: Literal["branch"] = "branch"
    step_name: str
    value: InputValue
    branches: Dict[str, List["DslStep"]] = Field(default_factory=dict)


class DslParallel(BaseModel):
    type: Literal["parallel"] = "parallel"
    step_name: str
    children: List[DslRpc] = Field(default_factory=list)


class DslFanoutChild(BaseModel):
    rpc_name: str
    input: Dict[str, InputValue] = Field(default_factory=dict)
    retries: Optional[int] = None
    retry_delay: Optional[RetryDelay] = None


class DslFanout(BaseModel):
    type: Literal["fanout"] = "fanout"
    step_name: str
    source: InputValue
    child: DslFanoutChild
    mode: Literal["parallel", "sequential"] = "parallel"
    time_between: Optional[Union[float, str]] = None


class DslCancel(BaseModel):
    type: Literal["cancel"] = "cancel"
    step_name: str = "cancel"
    reason: str = "Workflow cancelled"


class DslSwitchCase(BaseModel):
    value: Union[str, int, float, bool, None] = None
    steps: List["DslStep"] = Field(default_factory=list)


class DslSwitch(BaseModel):
    type: Literal["switch"] = "switch"
    step_name: str
    value: InputValue
    cases: List[DslSwitchCase] = Field(default_factory=list)
    default_steps: Optional[List["DslStep"]] = None


class DslReturn(BaseModel):
    type: Literal["return"] = "return"
    step_name: str = "return"
    outputs: Dict[str, InputValue] = Field(default_factory=dict)


DslStep = Annotated[
    Union[
        DslRpc,
        DslInline,
        DslSleep,
        DslSuspend,
        DslBranch,
        DslSwitch,
        DslParallel,
        DslFanout,
        DslCancel,
        DslReturn,
    ],
    Field(discriminator="type"),
]

DslBranch.model_rebuild()
DslSwitchCase.model_rebuild()
DslSwitch.model_rebuild()

_steps_adapter = TypeAdapter(List[DslStep])


class _GraphBuilder:
    def __init__(self) -> None:
        self.nodes: Dict[str, object] = {}

    def add(self, node) -> None:
        if node.node_id in self.nodes:
            raise WorkflowDefinitionError(f"Duplicate step name '{node.node_id}'")
        self.nodes[node.node_id] = node

    def build(self, steps: List[DslStep], continuation: Optional[str]) -> Optional[str]:
        """Add ``steps`` chained towards ``continuation``; return the first node id."""
        next_id = continuation
        for step in reversed(steps):
            next_id = self._add_step(step, next_id)
        return next_id

    def _add_step(self, step: DslStep, next_id: Optional[str]) -> str:
        name = step.step_name
        if isinstance(step, DslRpc):
            self.add(_rpc_node(step, next_id))
        elif isinstance(step, DslInline):
            self.add(
                InlineStep(
                    node_id=name,
                    func_name=step.func_name,
                    input=step.input,
                    next=next_id,
                    retries=step.retries,
                    retry_delay=step.retry_delay,
                    description=step.description,
                )
            )
        elif isinstance(step, DslSleep):
            self.add(SleepStep(node_id=name, duration=step.duration, next=next_id))
        elif isinstance(step, DslSuspend):
            self.add(SuspendStep(node_id=name, reason=step.reason, next=next_id))
        elif isinstance(step, DslReturn):
            self.add(ReturnStep(node_id=name, input=step.outputs))
        elif isinstance(step, DslParallel):
            if not step.children:
                raise WorkflowDefinitionError(f"Parallel step '{name}' has no children")
            child_ids = []
            for child in step.children:
                self.add(_rpc_node(child, next_id))
                child_ids.append(child.step_name)
            if next_id is not None:
                joined = self.nodes[next_id]
                joined.after = list(dict.fromkeys(list(joined.after) + child_ids))
            self.add(ParallelStep(node_id=name, next=child_ids))
        elif isinstance(step, DslBranch):
            targets: Dict[str, Union[str, List[str]]] = {}
            for key, branch_steps in step.branches.items():
                first = self.build(branch_steps, next_id)
                if first is not None:
                    targets[key] = first
            self.add(
                BranchStep(node_id=name, input={"value": step.value}, next=targets or None)
            )
        elif isinstance(step, DslSwitch):
            targets = {}
            for case in step.cases:
                first = self.build(case.steps, next_id)
                if first is not None:
                    targets[str(case.value)] = first
            # Without a matching case the switch falls through to what follows it
            fallback = self.build(step.default_steps or [], next_id)
            targets["default"] = fallback if fallback is not None else []
            self.add(BranchStep(node_id=name, input={"value": step.value}, next=targets))
        elif isinstance(step, DslFanout):
            child = step.child
            self.add(
                FanoutStep(
                    node_id=name,
                    rpc_name=child.rpc_name,
                    input={"items": step.source},
                    item_input=child.input,
                    mode=step.mode,
                    time_between=step.time_between,
                    retries=child.retries,
                    retry_delay=child.retry_delay,
                    next=next_id,
                )
            )
        elif isinstance(step, DslCancel):
            self.add(CancelStep(node_id=name, reason=step.reason))
        else:  # pragma: no cover - exhaustive over DslStep
            raise WorkflowDefinitionError(f"Unsupported DSL step: {step!r}")
        return name


def _rpc_node(step: DslRpc, next_id: Optional[str]) -> RpcStep:
    return RpcStep(
        node_id=step.step_name,
        rpc_name=step.rpc_name,
        input=step.input,
        next=next_id,
        retries=step.retries,
        retry_delay=step.retry_delay,
        description=step.description,
    )


def normalize_dsl(
    name: str,
    steps: List[Union[DslStep, dict]],
    source: WorkflowSource = "dsl",
    func_id: Optional[str] = None,
    **metadata,
) -> WorkflowRuntimeMeta:
    """Convert a DSL step list into a :class:`WorkflowRuntimeMeta` node graph."""
    parsed = _steps_adapter.validate_python(
        [s.model_dump() if isinstance(s, BaseModel) else s for s in steps]
    )
    builder = _GraphBuilder()
    first = builder.build(parsed, None)
    return WorkflowRuntimeMeta(
        name=name,
        func_id=func_id or name,
        source=source,
        nodes=builder.nodes,
        entry_node_ids=[first] if first else [],
        **metadata,
    )
