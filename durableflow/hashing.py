"""Topology hashing.

The graph hash fingerprints what a run depends on: node identities, kinds,
edges, input mappings and the contracts of the procedures each node calls.
Cosmetic metadata (workflow name, titles, descriptions, tags) is excluded so
renaming or documenting a workflow never strands in-flight runs.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any, Dict, Mapping, Optional

from .graph.models import FanoutStep, FunctionMeta, RpcStep, SerializedWorkflowGraph

_COSMETIC_NODE_FIELDS = {"title", "description"}


def _digest(payload: Any, length: Optional[int] = None) -> str:
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
    return digest[:length] if length else digest


def compute_step_hash(rpc_name: str, meta: Optional[FunctionMeta]) -> str:
    return _digest(
        {
            "rpc_name": rpc_name,
            "input": meta.input_schema_hash if meta else None,
            "output": meta.output_schema_hash if meta else None,
            "contract": meta.contract_hash if meta else None,
        },
        length=16,
    )


def compute_step_hashes(
    graph: SerializedWorkflowGraph, functions_meta: Mapping[str, FunctionMeta]
) -> SerializedWorkflowGraph:
    """Set ``step_hash`` on every node of ``graph`` that calls a procedure, in place."""
    for node in graph.nodes.values():
        if isinstance(node, (RpcStep, FanoutStep)):
            node.step_hash = compute_step_hash(node.rpc_name, functions_meta.get(node.rpc_name))
    return graph


def canonical_topology(graph: SerializedWorkflowGraph) -> Dict[str, Any]:
    nodes = {
        node_id: node.model_dump(mode="json", exclude=_COSMETIC_NODE_FIELDS)
        for node_id, node in graph.nodes.items()
    }
    return {"nodes": nodes, "entry_node_ids": list(graph.entry_node_ids)}


def compute_graph_hash(graph: SerializedWorkflowGraph) -> str:
    return _digest(canonical_topology(graph), length=16)
