"""
Execution State for the Execution Engine.

Holds the NodeResult map of one execution. Every mutation goes through
an asyncio.Lock and the forward-only transition table, and readers get
deep copies so no task ever sees a sibling's record mid-update.
"""

from typing import Any, Dict, Iterable, Optional
from datetime import datetime
import asyncio

from dagflow.engine.models import Execution, ExecutionStatus, NodeResult, NodeStatus
from dagflow.errors import StateTransitionError


# Allowed NodeResult transitions. PENDING -> FAILED covers configuration
# errors detected when the wave is scheduled.
_NODE_TRANSITIONS: Dict[NodeStatus, frozenset] = {
    NodeStatus.PENDING: frozenset({NodeStatus.RUNNING, NodeStatus.FAILED, NodeStatus.SKIPPED}),
    NodeStatus.RUNNING: frozenset({NodeStatus.SUCCEEDED, NodeStatus.FAILED}),
    NodeStatus.SUCCEEDED: frozenset(),
    NodeStatus.FAILED: frozenset(),
    NodeStatus.SKIPPED: frozenset(),
}


class ExecutionState:
    """
    Synchronized wrapper around one Execution record.

    The engine task for a node is the only writer of that node's result;
    the lock makes each write atomic with respect to snapshots taken by
    the manager and the wave barrier.
    """

    def __init__(self, execution: Execution):
        self._execution = execution
        self._lock = asyncio.Lock()

    @property
    def execution_id(self) -> str:
        return self._execution.id

    @property
    def workflow_id(self) -> str:
        return self._execution.workflow_id

    @property
    def status(self) -> ExecutionStatus:
        return self._execution.status

    @property
    def input(self) -> Dict[str, Any]:
        return self._execution.input

    @property
    def webhooks(self):
        return self._execution.webhooks

    def snapshot(self) -> Execution:
        """Deep copy of the current record (safe to hand out)."""
        return self._execution.model_copy(deep=True)

    def node_status(self, node_id: str) -> NodeStatus:
        return self._execution.node_results[node_id].status

    def node_result(self, node_id: str) -> NodeResult:
        return self._execution.node_results[node_id].model_copy(deep=True)

    def outputs_of(self, node_ids: Iterable[str]) -> Dict[str, Any]:
        """Outputs of the given nodes that have Succeeded."""
        outputs = {}
        for node_id in node_ids:
            result = self._execution.node_results.get(node_id)
            if result is not None and result.status == NodeStatus.SUCCEEDED:
                outputs[node_id] = result.output
        return outputs

    # ------------------------------------------------------------
    # Node transitions
    # ------------------------------------------------------------

    async def transition(
        self,
        node_id: str,
        status: NodeStatus,
        output: Any = None,
        error: Optional[str] = None,
        error_kind: Optional[str] = None,
        attempts: Optional[int] = None,
    ) -> NodeResult:
        """
        Advance a node to a new status.

        Args:
            node_id: Node to update
            status: Target status (must be a legal forward transition)
            output: Captured output (Succeeded only)
            error: Error detail (Failed/Skipped)
            error_kind: ErrorKind value for Failed results
            attempts: Executor attempts made so far

        Returns:
            Copy of the updated NodeResult

        Raises:
            StateTransitionError: If the transition is not allowed
        """
        async with self._lock:
            current = self._execution.node_results[node_id]
            if status not in _NODE_TRANSITIONS[current.status]:
                raise StateTransitionError(node_id, current.status.value, status.value)

            now = datetime.now()
            updates: Dict[str, Any] = {"status": status}
            if status == NodeStatus.RUNNING:
                updates["started_at"] = now
            if status.is_terminal:
                updates["completed_at"] = now
                updates["output"] = output
                updates["error"] = error
                updates["error_kind"] = error_kind
            if attempts is not None:
                updates["attempts"] = attempts

            updated = current.model_copy(update=updates)
            self._execution.node_results[node_id] = updated
            return updated.model_copy(deep=True)

    async def set_attempts(self, node_id: str, attempts: int) -> None:
        async with self._lock:
            current = self._execution.node_results[node_id]
            if current.status == NodeStatus.RUNNING:
                self._execution.node_results[node_id] = current.model_copy(update={"attempts": attempts})

    async def reset_nodes(self, node_ids: Iterable[str]) -> None:
        """Replace results with fresh Pending entries (retry only)."""
        async with self._lock:
            for node_id in node_ids:
                self._execution.node_results[node_id] = NodeResult(node_id=node_id)

    async def settle_open_nodes(self, error: str, error_kind: str) -> None:
        """Close every non-terminal node: Pending ones Skipped, Running ones Failed."""
        async with self._lock:
            now = datetime.now()
            for node_id, result in list(self._execution.node_results.items()):
                if result.status == NodeStatus.PENDING:
                    status, kind = NodeStatus.SKIPPED, None
                elif result.status == NodeStatus.RUNNING:
                    status, kind = NodeStatus.FAILED, error_kind
                else:
                    continue
                self._execution.node_results[node_id] = result.model_copy(update={
                    "status": status,
                    "completed_at": now,
                    "error": error,
                    "error_kind": kind,
                })

    # ------------------------------------------------------------
    # Execution transitions
    # ------------------------------------------------------------

    async def set_status(self, status: ExecutionStatus, error: Optional[str] = None) -> None:
        async with self._lock:
            updates: Dict[str, Any] = {"status": status}
            if status == ExecutionStatus.RUNNING:
                updates["started_at"] = datetime.now()
                updates["completed_at"] = None
                updates["error"] = None
            if status.is_terminal:
                updates["completed_at"] = datetime.now()
                if error is not None:
                    updates["error"] = error
            self._execution = self._execution.model_copy(update=updates)

    async def begin_retry(self) -> None:
        async with self._lock:
            self._execution = self._execution.model_copy(update={
                "status": ExecutionStatus.PENDING,
                "retry_count": self._execution.retry_count + 1,
                "completed_at": None,
                "error": None,
            })
