"""
Storage package - In-memory storage for workflows and executions.
"""

from dagflow.storage.memory import (
    WorkflowStore,
    ExecutionStore,
    workflow_store,
    execution_store,
)

__all__ = [
    "WorkflowStore",
    "ExecutionStore",
    "workflow_store",
    "execution_store",
]
