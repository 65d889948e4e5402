"""durableflow: durable, versioned workflow execution."""

from .config import DurableflowConfig, load_config
from .contracts import (
    JobMessage,
    WorkflowOrchestratorInput,
    WorkflowSleeperInput,
    WorkflowStepInput,
)
from .executor import FunctionRPCInvoker, RPCInvoker, StepContext, StepExecutor
from .orchestrator import WorkflowOrchestrator
from .persistence import WorkflowStateStore, get_state_store
from .registry import WorkflowRegistry
from .transports import get_transport
from .worker import WorkflowWorker

__version__ = "0.1.0"
__all__ = [
    "DurableflowConfig",
    "FunctionRPCInvoker",
    "JobMessage",
    "RPCInvoker",
    "StepContext",
    "StepExecutor",
    "WorkflowOrchestrator",
    "WorkflowOrchestratorInput",
    "WorkflowRegistry",
    "WorkflowSleeperInput",
    "WorkflowStateStore",
    "WorkflowStepInput",
    "WorkflowWorker",
    "get_state_store",
    "get_transport",
    "load_config",
]
