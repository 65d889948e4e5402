"""Workflow topology models and DSL normalization."""

from .dsl import normalize_dsl
from .models import (
    BranchStep,
    CancelStep,
    FanoutStep,
    FunctionMeta,
    InlineStep,
    LiteralInput,
    ParallelStep,
    RefInput,
    ReturnStep,
    RpcStep,
    SerializedNode,
    SerializedWorkflowGraph,
    SleepStep,
    SuspendStep,
    TemplateInput,
    WorkflowRuntimeMeta,
)

__all__ = [
    "BranchStep",
    "CancelStep",
    "FanoutStep",
    "FunctionMeta",
    "InlineStep",
    "LiteralInput",
    "ParallelStep",
    "RefInput",
    "ReturnStep",
    "RpcStep",
    "SerializedNode",
    "SerializedWorkflowGraph",
    "SleepStep",
    "SuspendStep",
    "TemplateInput",
    "WorkflowRuntimeMeta",
    "normalize_dsl",
]
