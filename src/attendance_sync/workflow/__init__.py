"""Workflow orchestration: planning, admission control and cancellation."""

from .cancellation import CancellationToken
from .engine import (
    ExecutionPhase,
    SyncOrchestrator,
    SyncWorkflow,
    WorkflowDependency,
    WorkflowResult,
    WorkflowStatus,
    compile_plan,
    validate_workflow,
)
from .resources import (
    PsutilResourceProbe,
    ResourceMonitor,
    ResourceProbe,
    ResourceUsage,
    StaticResourceProbe,
)

__all__ = [
    "CancellationToken",
    "ExecutionPhase",
    "PsutilResourceProbe",
    "ResourceMonitor",
    "ResourceProbe",
    "ResourceUsage",
    "StaticResourceProbe",
    "SyncOrchestrator",
    "SyncWorkflow",
    "WorkflowDependency",
    "WorkflowResult",
    "WorkflowStatus",
    "compile_plan",
    "validate_workflow",
]
