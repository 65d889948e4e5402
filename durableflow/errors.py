"""Exception hierarchy for durableflow."""

from __future__ import annotations

from typing import Optional


class DurableflowError(Exception):
    """Base class for all engine errors.

    ``code`` is copied onto serialized errors stored on runs and steps.
    """

    code = "WORKFLOW_ERROR"


class WorkflowDefinitionError(DurableflowError):
    """The workflow definition itself is invalid."""

    code = "INVALID_DEFINITION"


class ResolutionError(DurableflowError):
    """An input reference could not be resolved. Never retried."""

    code = "RESOLUTION_ERROR"


class InvalidPath(ResolutionError):
    code = "INVALID_PATH"


class UnresolvedReference(ResolutionError):
    code = "UNRESOLVED_REFERENCE"

    def __init__(self, path: str, step_id: str) -> None:
        super().__init__(
            f"Cannot resolve path '{path}': step '{step_id}' not found or not completed"
        )
        self.path = path
        self.step_id = step_id


class MissingBranchSelection(DurableflowError):
    code = "MISSING_BRANCH_SELECTION"

    def __init__(self, node_id: str, branch: Optional[str] = None) -> None:
        if branch is None:
            message = f"Node '{node_id}' did not select a branch and has no 'default'"
        else:
            message = (
                f"Node '{node_id}' selected unknown branch '{branch}' and has no 'default'"
            )
        super().__init__(message)
        self.node_id = node_id
        self.branch = branch


class WorkflowNotFound(DurableflowError):
    code = "WORKFLOW_NOT_FOUND"

    def __init__(self, name: str) -> None:
        super().__init__(f"Workflow not found: {name}")
        self.name = name


class WorkflowRunNotFound(DurableflowError):
    code = "RUN_NOT_FOUND"

    def __init__(self, run_id: str) -> None:
        super().__init__(f"Workflow run not found: {run_id}")
        self.run_id = run_id


class WorkflowVersionNotFound(DurableflowError):
    code = "VERSION_NOT_FOUND"

    def __init__(self, name: str, graph_hash: str) -> None:
        super().__init__(
            f"Workflow '{name}' version '{graph_hash}' not found. "
            "Cannot resume with changed definition."
        )
        self.name = name
        self.graph_hash = graph_hash


class WorkflowVersionConflict(DurableflowError):
    code = "VERSION_CONFLICT"

    def __init__(self, name: str) -> None:
        super().__init__(
            f"Workflow '{name}' definition changed. "
            "Complex workflows with inline steps cannot be migrated."
        )
        self.name = name


class RPCNotFound(DurableflowError):
    code = "RPC_NOT_FOUND"

    def __init__(self, rpc_name: str) -> None:
        super().__init__(f"RPC not found: {rpc_name}")
        self.rpc_name = rpc_name


class LockAcquisitionTimeout(DurableflowError):
    """Transient: the queue should redeliver the job."""

    code = "LOCK_TIMEOUT"

    def __init__(self, run_id: str, timeout: float) -> None:
        super().__init__(f"Could not acquire lock for run {run_id} within {timeout}s")
        self.run_id = run_id
        self.timeout = timeout


class RegistryFrozen(DurableflowError):
    code = "REGISTRY_FROZEN"


class WorkflowRunFailed(DurableflowError):
    """Raised by ``run_to_completion`` when the run did not complete."""

    code = "WORKFLOW_FAILED"

    def __init__(self, run_id: str, status: str, message: Optional[str] = None) -> None:
        super().__init__(message or f"Workflow run {run_id} ended with status {status}")
        self.run_id = run_id
        self.status = status
