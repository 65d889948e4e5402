"""Topology resolution for runs pinned to a graph hash."""

from __future__ import annotations

import logging
from typing import Set, Tuple

from .errors import WorkflowVersionConflict, WorkflowVersionNotFound
from .graph.models import SerializedWorkflowGraph, WorkflowRuntimeMeta
from .persistence.models import WorkflowRun, WorkflowVersion
from .persistence.store import WorkflowStateStore
from .registry import WorkflowRegistry

logger = logging.getLogger(__name__)


class TopologyResolver:
    """Chooses the topology a run executes against.

    A run always follows the graph it was started with. When the live
    definition has since changed, the stored version for the run's hash is
    used instead.
    """

    def __init__(self, registry: WorkflowRegistry, store: WorkflowStateStore) -> None:
        self.registry = registry
        self.store = store
        self._stored: Set[Tuple[str, str]] = set()

    async def ensure_version(self, meta: WorkflowRuntimeMeta) -> str:
        """Store the live topology of ``meta`` once per process. Returns its hash."""
        key = (meta.name, meta.graph_hash)
        if key not in self._stored:
            await self.store.upsert_workflow_version(
                WorkflowVersion(
                    workflow_name=meta.name,
                    graph_hash=meta.graph_hash,
                    graph=meta.to_graph(),
                    source=meta.source,
                )
            )
            self._stored.add(key)
        return meta.graph_hash

    async def graph_for_run(self, run: WorkflowRun) -> SerializedWorkflowGraph:
        live = self.registry.get(run.workflow)
        if live is not None and live.graph_hash == run.graph_hash:
            return live
        if live is not None and live.source == "complex":
            raise WorkflowVersionConflict(run.workflow)

        version = await self.store.get_workflow_version(run.workflow, run.graph_hash)
        if version is None:
            raise WorkflowVersionNotFound(run.workflow, run.graph_hash)
        if version.source == "complex":
            raise WorkflowVersionConflict(run.workflow)
        logger.info(
            f"Run {run.id} uses stored version {run.graph_hash} of workflow {run.workflow}"
        )
        return version.graph
