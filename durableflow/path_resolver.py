"""Path resolver for workflow input references.

Resolves paths like ``createOrg_1.output.orgId`` against the results of the
steps that have already completed in a run.
"""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, Field

from .constants import ITEM_STEP_ID, TRIGGER_STEP_ID
from .errors import InvalidPath, UnresolvedReference
from .graph.models import (
    FanoutStep,
    InputValue,
    LiteralInput,
    RefInput,
    SerializedWorkflowGraph,
    TemplateInput,
    as_target_list,
)


class PropertySegment(BaseModel):
    name: str


class IndexSegment(BaseModel):
    index: int


PathSegment = Union[PropertySegment, IndexSegment]


class NodeResult(BaseModel):
    """Recorded outcome of a completed step."""

    output: Any = None
    error: Any = None


class ResolverContext(BaseModel):
    completed: Dict[str, NodeResult] = Field(default_factory=dict)
    trigger_input: Any = None
    # Current element while resolving a fanout item input
    item: Optional[NodeResult] = None


def parse_path(path: str) -> List[PathSegment]:
    """Split ``node_1.output.users[0].name`` into property and index segments."""
    segments: List[PathSegment] = []
    current = ""
    i = 0
    while i < len(path):
        char = path[i]
        if char == ".":
            if current:
                segments.append(PropertySegment(name=current))
                current = ""
            i += 1
        elif char == "[":
            if current:
                segments.append(PropertySegment(name=current))
                current = ""
            close = path.find("]", i)
            if close == -1:
                raise InvalidPath(f"Invalid path: missing closing bracket in '{path}'")
            index_str = path[i + 1 : close].strip()
            try:
                index = int(index_str)
            except ValueError:
                raise InvalidPath(
                    f"Invalid path: non-numeric array index '{index_str}' in '{path}'"
                ) from None
            segments.append(IndexSegment(index=index))
            i = close + 1
        elif char == "]":
            raise InvalidPath(f"Invalid path: unbalanced ']' in '{path}'")
        else:
            current += char
            i += 1
    if current:
        segments.append(PropertySegment(name=current))
    return segments


def traverse_path(obj: Any, segments: List[PathSegment]) -> Any:
    """Walk ``segments`` through ``obj``; any missing step yields ``None``."""
    current = obj
    for segment in segments:
        if current is None:
            return None
        if isinstance(segment, PropertySegment):
            if isinstance(current, Mapping):
                current = current.get(segment.name)
            elif isinstance(current, BaseModel):
                current = getattr(current, segment.name, None)
            else:
                return None
        else:
            if not isinstance(current, (list, tuple)):
                return None
            if segment.index < 0 or segment.index >= len(current):
                return None
            current = current[segment.index]
    return current


def resolve_path(path: str, obj: Any) -> Any:
    return traverse_path(obj, parse_path(path))


def _split_ref(path: str) -> tuple[str, List[PathSegment]]:
    segments = parse_path(path)
    if not segments:
        raise InvalidPath("Invalid path: empty path")
    first = segments[0]
    if not isinstance(first, PropertySegment):
        raise InvalidPath(f"Invalid path '{path}': must start with a step id")
    return first.name, segments[1:]


def _scoped_result(step_id: str, context: ResolverContext) -> Optional[NodeResult]:
    if step_id in context.completed:
        return context.completed[step_id]
    if step_id == TRIGGER_STEP_ID:
        return NodeResult(output=context.trigger_input)
    if step_id == ITEM_STEP_ID:
        return context.item
    return None


def resolve_ref(path: str, context: ResolverContext) -> Any:
    step_id, remaining = _split_ref(path)
    result = _scoped_result(step_id, context)
    if result is None:
        raise UnresolvedReference(path, step_id)

    if not remaining:
        if step_id in (TRIGGER_STEP_ID, ITEM_STEP_ID) and step_id not in context.completed:
            # Bare run input / fanout element
            return result.output
        return result.model_dump()

    access = remaining[0]
    if not isinstance(access, PropertySegment) or access.name not in ("output", "error"):
        got = access.name if isinstance(access, PropertySegment) else f"[{access.index}]"
        raise InvalidPath(
            f"Invalid path '{path}': expected 'output' or 'error', got '{got}'"
        )
    target = result.output if access.name == "output" else result.error
    return traverse_path(target, remaining[1:])


def resolve_template(template: TemplateInput, context: ResolverContext) -> str:
    rendered = []
    for i, part in enumerate(template.parts):
        rendered.append(part)
        if i < len(template.expressions):
            value = resolve_ref(template.expressions[i].path, context)
            rendered.append("" if value is None else str(value))
    return "".join(rendered)


def resolve_input_value(input: InputValue, context: ResolverContext) -> Any:
    """Resolve a literal, ref or template input against ``context``."""
    if isinstance(input, LiteralInput):
        return input.value
    if isinstance(input, TemplateInput):
        return resolve_template(input, context)
    return resolve_ref(input.path, context)


def resolve_inputs(
    inputs: Mapping[str, InputValue], context: ResolverContext
) -> Dict[str, Any]:
    return {name: resolve_input_value(value, context) for name, value in inputs.items()}


def validate_path(path: str) -> Dict[str, Any]:
    """Check the shape of a ref path without resolving it.

    Returns ``{"valid": True}`` or ``{"valid": False, "error": message}``.
    """
    try:
        _, remaining = _split_ref(path)
    except InvalidPath as exc:
        return {"valid": False, "error": str(exc)}
    if remaining:
        access = remaining[0]
        if not isinstance(access, PropertySegment) or access.name not in ("output", "error"):
            return {"valid": False, "error": "Expected 'output' or 'error' after step id"}
    return {"valid": True}


def _ref_paths(value: InputValue) -> List[str]:
    if isinstance(value, RefInput):
        return [value.path]
    if isinstance(value, TemplateInput):
        return [expression.path for expression in value.expressions]
    return []


def validate_graph_refs(graph: SerializedWorkflowGraph) -> List[str]:
    """Return a list of problems with ref paths and edge targets in ``graph``."""
    problems: List[str] = []
    node_ids = set(graph.nodes)
    for entry in graph.entry_node_ids:
        if entry not in node_ids:
            problems.append(f"entry node '{entry}' does not exist")
    for node_id, node in graph.nodes.items():
        if node.node_id != node_id:
            problems.append(f"node key '{node_id}' does not match node_id '{node.node_id}'")
        mappings = [("input", node.input, {TRIGGER_STEP_ID})]
        if isinstance(node, FanoutStep):
            mappings.append(("item_input", node.item_input, {TRIGGER_STEP_ID, ITEM_STEP_ID}))
        for label, inputs, reserved in mappings:
            for name, value in inputs.items():
                for path in _ref_paths(value):
                    check = validate_path(path)
                    if not check["valid"]:
                        problems.append(f"{node_id}.{label}.{name}: {check['error']}")
                        continue
                    ref_step = parse_path(path)[0]
                    if ref_step.name not in reserved and ref_step.name not in node_ids:
                        problems.append(
                            f"{node_id}.{label}.{name}: references unknown step '{ref_step.name}'"
                        )
        targets = node.next_targets() + list(node.after) + as_target_list(node.on_error)
        for target in targets:
            if target not in node_ids:
                problems.append(f"{node_id}: unknown target '{target}'")
    return problems
