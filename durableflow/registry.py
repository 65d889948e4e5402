"""Workflow definition registry.

The registry is populated once at process start from build-time metadata and
is read-only afterwards. It is passed explicitly to the orchestrator and the
step executor; there is no process-wide registry.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Union

import yaml
from pydantic import TypeAdapter

from .errors import RegistryFrozen, WorkflowDefinitionError, WorkflowNotFound
from .graph.dsl import normalize_dsl
from .graph.models import FunctionMeta, SerializedNode, WorkflowRuntimeMeta
from .hashing import compute_graph_hash, compute_step_hashes
from .path_resolver import validate_graph_refs

logger = logging.getLogger(__name__)

InlineFunction = Callable[..., Any]

_nodes_adapter = TypeAdapter(Dict[str, SerializedNode])


class WorkflowRegistry:
    """Holds the normalized runtime representation of every workflow."""

    def __init__(self, functions_meta: Optional[Mapping[str, FunctionMeta]] = None) -> None:
        self._workflows: Dict[str, WorkflowRuntimeMeta] = {}
        self._functions: Dict[str, InlineFunction] = {}
        self._functions_meta: Dict[str, FunctionMeta] = dict(functions_meta or {})
        self._frozen = False

    # ------------------------------------------------------------------
    # Population
    def _ensure_mutable(self) -> None:
        if self._frozen:
            raise RegistryFrozen("Workflow registry is read-only after startup")

    def register_function_meta(self, meta: FunctionMeta) -> None:
        self._ensure_mutable()
        self._functions_meta[meta.rpc_name] = meta

    def register(self, meta: WorkflowRuntimeMeta) -> WorkflowRuntimeMeta:
        """Validate ``meta``, fill in step and graph hashes and store it."""
        self._ensure_mutable()
        problems = validate_graph_refs(meta)
        if problems:
            raise WorkflowDefinitionError(
                f"Invalid workflow '{meta.name}': " + "; ".join(problems)
            )
        if not meta.entry_node_ids:
            raise WorkflowDefinitionError(f"Workflow '{meta.name}' has no entry nodes")
        compute_step_hashes(meta, self._functions_meta)
        if meta.graph_hash is None:
            meta.graph_hash = compute_graph_hash(meta)
        self._workflows[meta.name] = meta
        logger.debug(f"Registered workflow {meta.name} ({meta.source}) hash={meta.graph_hash}")
        return meta

    def register_graph(
        self,
        name: str,
        nodes: Mapping[str, Any],
        entry_node_ids: List[str],
        func_id: Optional[str] = None,
        **metadata: Any,
    ) -> WorkflowRuntimeMeta:
        meta = WorkflowRuntimeMeta(
            name=name,
            func_id=func_id or name,
            source="graph",
            nodes=_nodes_adapter.validate_python(dict(nodes)),
            entry_node_ids=entry_node_ids,
            **metadata,
        )
        return self.register(meta)

    def register_dsl(
        self, name: str, steps: List[Any], source: str = "dsl", **metadata: Any
    ) -> WorkflowRuntimeMeta:
        return self.register(normalize_dsl(name, steps, source=source, **metadata))

    def register_function(self, name: str, fn: InlineFunction) -> None:
        """Register an inline computation callable as ``fn(data, context)``."""
        self._ensure_mutable()
        self._functions[name] = fn

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    # ------------------------------------------------------------------
    # Lookup
    def get(self, name: str) -> Optional[WorkflowRuntimeMeta]:
        return self._workflows.get(name)

    def require(self, name: str) -> WorkflowRuntimeMeta:
        meta = self._workflows.get(name)
        if meta is None:
            raise WorkflowNotFound(name)
        return meta

    def get_function(self, name: str) -> Optional[InlineFunction]:
        return self._functions.get(name)

    def names(self) -> List[str]:
        return sorted(self._workflows)

    def __iter__(self) -> Iterator[WorkflowRuntimeMeta]:
        return iter(list(self._workflows.values()))

    def __len__(self) -> int:
        return len(self._workflows)

    def __contains__(self, name: object) -> bool:
        return name in self._workflows

    # ------------------------------------------------------------------
    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "WorkflowRegistry":
        """Load build-time metadata from a YAML or JSON file.

        Expected layout::

            functions:
              createOrg: {input_schema_hash: ..., output_schema_hash: ...}
            workflows:
              - name: onboarding
                source: dsl
                steps: [...]
              - name: approval
                source: graph
                nodes: {...}
                entry_node_ids: [...]
        """
        path = Path(path)
        with open(path) as f:
            if path.suffix == ".json":
                data = json.load(f)
            else:
                data = yaml.safe_load(f) or {}
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "WorkflowRegistry":
        functions = {
            name: FunctionMeta(rpc_name=name, **(spec or {}))
            for name, spec in (data.get("functions") or {}).items()
        }
        registry = cls(functions)
        for entry in data.get("workflows") or []:
            entry = dict(entry)
            if "steps" in entry:
                registry.register_dsl(
                    entry.pop("name"),
                    entry.pop("steps"),
                    source=entry.pop("source", "dsl"),
                    **entry,
                )
            else:
                registry.register(WorkflowRuntimeMeta.model_validate(entry))
        return registry
