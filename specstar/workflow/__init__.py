"""Workflow discovery, validation and wave execution."""

from specstar.workflow.bridge import WorkflowBridge, interpolate_prompt, session_pool_spawner
from specstar.workflow.engine import (
    WorkflowEngine,
    WorkflowHandle,
    compute_waves,
    validate_workflow,
)
from specstar.workflow.sources import (
    BuiltinSource,
    DirectorySource,
    default_sources,
    discover_workflows,
)
from specstar.workflow.types import (
    WorkflowContext,
    WorkflowDefinition,
    WorkflowError,
    WorkflowExecutionError,
    WorkflowNotFound,
    WorkflowStatus,
    WorkflowStep,
    WorkflowValidationError,
)

__all__ = [
    "WorkflowBridge",
    "interpolate_prompt",
    "session_pool_spawner",
    "WorkflowEngine",
    "WorkflowHandle",
    "compute_waves",
    "validate_workflow",
    "BuiltinSource",
    "DirectorySource",
    "default_sources",
    "discover_workflows",
    "WorkflowContext",
    "WorkflowDefinition",
    "WorkflowError",
    "WorkflowExecutionError",
    "WorkflowNotFound",
    "WorkflowStatus",
    "WorkflowStep",
    "WorkflowValidationError",
]
