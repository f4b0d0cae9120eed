"""
In-Memory Storage for the Execution Engine.

Provides asyncio-safe storage for workflow definitions and execution
records. Both stores hand out copies, so callers never share mutable
state with the engine. Can be replaced with a database implementation
exposing the same methods.
"""

from typing import Dict, List, Optional, Tuple
import asyncio

from dagflow.engine.models import Execution, ExecutionStatus, Workflow


class WorkflowStore:
    """
    In-memory registry of workflow definitions.

    Workflows are frozen models, so they are stored and returned as-is.
    """

    def __init__(self):
        self._workflows: Dict[str, Workflow] = {}
        self._lock = asyncio.Lock()

    async def save(self, workflow: Workflow) -> Workflow:
        """
        Save a workflow definition (replaces one with the same ID).

        Args:
            workflow: Validated workflow definition

        Returns:
            The stored workflow
        """
        async with self._lock:
            self._workflows[workflow.id] = workflow
            return workflow

    async def get(self, workflow_id: str) -> Optional[Workflow]:
        """Get a workflow by ID."""
        async with self._lock:
            return self._workflows.get(workflow_id)

    async def delete(self, workflow_id: str) -> bool:
        """Delete a workflow."""
        async with self._lock:
            if workflow_id in self._workflows:
                del self._workflows[workflow_id]
                return True
            return False

    async def list_all(self) -> List[Workflow]:
        """List all stored workflows in insertion order."""
        async with self._lock:
            return list(self._workflows.values())

    async def exists(self, workflow_id: str) -> bool:
        """Check if a workflow exists."""
        async with self._lock:
            return workflow_id in self._workflows

    def __len__(self) -> int:
        return len(self._workflows)


class ExecutionStore:
    """
    In-memory store of execution records.

    The engine calls record() after every status change, so the stored
    copy is at most one transition behind the live execution.
    """

    def __init__(self):
        self._executions: Dict[str, Execution] = {}
        self._lock = asyncio.Lock()

    async def record(self, execution: Execution) -> None:
        """Insert or replace the record for an execution."""
        async with self._lock:
            self._executions[execution.id] = execution.model_copy(deep=True)

    async def get(self, execution_id: str) -> Optional[Execution]:
        """Get a copy of an execution record by ID."""
        async with self._lock:
            execution = self._executions.get(execution_id)
            return execution.model_copy(deep=True) if execution else None

    async def list(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> Tuple[List[Execution], int]:
        """
        List execution records, newest first.

        Args:
            workflow_id: Only executions of this workflow
            status: Only executions in this status
            limit: Maximum number of items (None = all)
            offset: Number of matching items to skip

        Returns:
            (page of executions, total number of matches)
        """
        async with self._lock:
            matches = [
                e for e in self._executions.values()
                if (workflow_id is None or e.workflow_id == workflow_id)
                and (status is None or e.status == status)
            ]

        matches.sort(key=lambda e: e.created_at, reverse=True)
        end = None if limit is None else offset + limit
        page = [e.model_copy(deep=True) for e in matches[offset:end]]
        return page, len(matches)

    async def delete(self, execution_id: str) -> bool:
        """Delete an execution record."""
        async with self._lock:
            if execution_id in self._executions:
                del self._executions[execution_id]
                return True
            return False

    def __len__(self) -> int:
        return len(self._executions)


# Global storage instances
workflow_store = WorkflowStore()
execution_store = ExecutionStore()
