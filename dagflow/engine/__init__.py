"""
Engine package - Core workflow execution components.
"""

from dagflow.engine.models import (
    ExecutionStatus,
    NodeStatus,
    WebhookEvent,
    RetryPolicy,
    NodeDefinition,
    Trigger,
    Workflow,
    Event,
    WebhookSubscription,
    NodeResult,
    Execution,
)
from dagflow.engine.scheduler import WavePlan, build_wave_plan, compute_waves, validate_workflow
from dagflow.engine.state import ExecutionState
from dagflow.engine.executor import WorkflowExecutor, create_execution, execute_workflow

__all__ = [
    "ExecutionStatus",
    "NodeStatus",
    "WebhookEvent",
    "RetryPolicy",
    "NodeDefinition",
    "Trigger",
    "Workflow",
    "Event",
    "WebhookSubscription",
    "NodeResult",
    "Execution",
    "WavePlan",
    "build_wave_plan",
    "compute_waves",
    "validate_workflow",
    "ExecutionState",
    "WorkflowExecutor",
    "create_execution",
    "execute_workflow",
]
