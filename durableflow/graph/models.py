"""Serialized workflow topology.

A workflow, whether it was written as a sequence of DSL steps or as a node
graph, is normalized into a :class:`SerializedWorkflowGraph`: a map of node id
to node, where every node is one member of a closed set of step kinds.
"""

from __future__ import annotations

import re
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator

from ..utils.retry import RetryDelay

_PLACEHOLDER = re.compile(r"\$(\d+)")


class LiteralInput(BaseModel):
    type: Literal["literal"] = "literal"
    value: Any = None


class RefInput(BaseModel):
    """Reference to another step's output or error, e.g. ``node_1.output.orgId``."""

    type: Literal["ref"] = "ref"
    path: str


class TemplateInput(BaseModel):
    """String interpolation: ``parts[0] + str(expr[0]) + parts[1] + ...``.

    Missing values render as an empty string.
    """

    type: Literal["template"] = "template"
    parts: List[str]
    expressions: List[RefInput] = Field(default_factory=list)

    @classmethod
    def parse(cls, template: str, paths: List[str]) -> "TemplateInput":
        """Build from ``"Hello $0, welcome to $1"`` and the ref paths ``$0``, ``$1`` stand for."""
        parts: List[str] = []
        expressions: List[RefInput] = []
        last = 0
        for match in _PLACEHOLDER.finditer(template):
            index = int(match.group(1))
            if index >= len(paths):
                raise ValueError(f"Template placeholder ${index} has no matching ref")
            parts.append(template[last : match.start()])
            expressions.append(RefInput(path=paths[index]))
            last = match.end()
        parts.append(template[last:])
        return cls(parts=parts, expressions=expressions)

    @model_validator(mode="before")
    @classmethod
    def _expand_template_string(cls, data: Any) -> Any:
        if isinstance(data, dict) and "template" in data and "parts" not in data:
            parsed = cls.parse(data["template"], data.get("paths") or [])
            return {"type": "template", "parts": parsed.parts, "expressions": parsed.expressions}
        return data


InputValue = Annotated[
    Union[LiteralInput, RefInput, TemplateInput], Field(discriminator="type")
]

Targets = Union[str, List[str]]
NextConfig = Union[str, List[str], Dict[str, Targets]]

WorkflowSource = Literal["dsl", "complex", "graph"]


def as_target_list(targets: Optional[Targets]) -> List[str]:
    if targets is None:
        return []
    if isinstance(targets, str):
        return [targets]
    return list(targets)


class BaseNode(BaseModel):
    node_id: str
    input: Dict[str, InputValue] = Field(default_factory=dict)
    next: Optional[NextConfig] = None
    on_error: Optional[Targets] = None
    after: List[str] = Field(default_factory=list)

    # Cosmetic metadata, not part of the topology hash
    title: Optional[str] = None
    description: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return not self.next

    def next_targets(self) -> List[str]:
        """All ids reachable through ``next``, across every branch."""
        if isinstance(self.next, dict):
            targets: List[str] = []
            for value in self.next.values():
                targets.extend(as_target_list(value))
            return targets
        return as_target_list(self.next)


class RpcStep(BaseNode):
    kind: Literal["rpc"] = "rpc"
    rpc_name: str
    retries: Optional[int] = None
    retry_delay: Optional[RetryDelay] = None
    step_hash: Optional[str] = None


class InlineStep(BaseNode):
    kind: Literal["inline"] = "inline"
    func_name: str
    retries: Optional[int] = None
    retry_delay: Optional[RetryDelay] = None


class SleepStep(BaseNode):
    kind: Literal["sleep"] = "sleep"
    duration: Union[float, str]


class BranchStep(BaseNode):
    """Selects ``str(input['value'])`` as its branch key."""

    kind: Literal["branch"] = "branch"


class ParallelStep(BaseNode):
    kind: Literal["parallel"] = "parallel"


class SuspendStep(BaseNode):
    kind: Literal["suspend"] = "suspend"
    reason: str = "Workflow suspended"


class ReturnStep(BaseNode):
    """Terminal node whose resolved input becomes the run output."""

    kind: Literal["return"] = "return"


class FanoutStep(BaseNode):
    """Calls ``rpc_name`` once per element of ``input['items']``.

    ``item_input`` is resolved per element, with the reserved ``item`` ref
    standing for the element. The step output is the list of results.
    """

    kind: Literal["fanout"] = "fanout"
    rpc_name: str
    item_input: Dict[str, InputValue] = Field(default_factory=dict)
    mode: Literal["parallel", "sequential"] = "parallel"
    time_between: Optional[Union[float, str]] = None
    retries: Optional[int] = None
    retry_delay: Optional[RetryDelay] = None
    step_hash: Optional[str] = None


class CancelStep(BaseNode):
    """Cancels the run when reached."""

    kind: Literal["cancel"] = "cancel"
    reason: str = "Workflow cancelled"


SerializedNode = Annotated[
    Union[
        RpcStep,
        InlineStep,
        SleepStep,
        BranchStep,
        ParallelStep,
        FanoutStep,
        SuspendStep,
        CancelStep,
        ReturnStep,
    ],
    Field(discriminator="kind"),
]


class SerializedWorkflowGraph(BaseModel):
    name: str
    func_id: Optional[str] = None
    source: WorkflowSource = "graph"
    nodes: Dict[str, SerializedNode] = Field(default_factory=dict)
    entry_node_ids: List[str] = Field(default_factory=list)

    title: Optional[str] = None
    description: Optional[str] = None
    tags: List[str] = Field(default_factory=list)


class WorkflowRuntimeMeta(SerializedWorkflowGraph):
    """Normalized workflow held by the registry, tagged with its topology hash."""

    graph_hash: Optional[str] = None

    def to_graph(self) -> SerializedWorkflowGraph:
        return SerializedWorkflowGraph.model_validate(
            self.model_dump(exclude={"graph_hash"})
        )


class FunctionMeta(BaseModel):
    """Build-time description of a remote procedure's contract."""

    rpc_name: str
    input_schema_hash: Optional[str] = None
    output_schema_hash: Optional[str] = None
    contract_hash: Optional[str] = None
