"""Shared constants."""

DEFAULT_ORCHESTRATOR_QUEUE = "durableflow-workflow-orchestrator"
DEFAULT_STEP_WORKER_QUEUE = "durableflow-workflow-step-worker"
DEFAULT_SLEEPER_QUEUE = "durableflow-workflow-sleeper"

# Reserved step id that refers to the run input inside ref paths.
TRIGGER_STEP_ID = "trigger"
# Reserved step id that refers to the current element inside a fanout item input.
ITEM_STEP_ID = "item"

SUSPENDED_CODE = "WORKFLOW_SUSPENDED"
CANCELLED_CODE = "WORKFLOW_CANCELLED"

DEFAULT_SUSPEND_REASON = "Workflow suspended"
