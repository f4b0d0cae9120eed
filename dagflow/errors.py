"""
Error taxonomy for the DAGFlow engine.

Every error raised by the engine carries an ErrorKind so that an outer
service layer can translate it into a protocol status without parsing
messages. Node-level kinds (configuration, execution) are recorded on
NodeResults; the rest surface from ExecutionManager operations.
"""

from typing import Any, Dict, Iterable, Optional
from enum import Enum


class ErrorKind(str, Enum):
    """Classification of engine errors."""
    NOT_FOUND = "not_found"
    WORKFLOW_NOT_FOUND = "workflow_not_found"
    EXECUTION_NOT_FOUND = "execution_not_found"
    TRIGGER_NOT_FOUND = "trigger_not_found"
    RESOURCE_NOT_FOUND = "resource_not_found"
    INVALID_ID = "invalid_id"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    WORKFLOW_EXISTS = "workflow_exists"
    VALIDATION_FAILED = "validation_failed"
    GRAPH_CYCLE = "graph_cycle"
    NODE_CONFIGURATION = "node_configuration"
    NODE_EXECUTION = "node_execution"
    NODE_TIMEOUT = "node_timeout"
    CANCELLED = "cancelled"
    INTERNAL = "internal"


class DAGFlowError(Exception):
    """Base class for all engine errors."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "details": self.details,
        }


# ============================================================
# Lookup Errors
# ============================================================

class NotFoundError(DAGFlowError):
    kind = ErrorKind.NOT_FOUND


class WorkflowNotFoundError(NotFoundError):
    kind = ErrorKind.WORKFLOW_NOT_FOUND

    def __init__(self, workflow_id: str):
        super().__init__(f"Workflow '{workflow_id}' not found", {"workflow_id": workflow_id})


class ExecutionNotFoundError(NotFoundError):
    kind = ErrorKind.EXECUTION_NOT_FOUND

    def __init__(self, execution_id: str):
        super().__init__(f"Execution '{execution_id}' not found", {"execution_id": execution_id})


class TriggerNotFoundError(NotFoundError):
    kind = ErrorKind.TRIGGER_NOT_FOUND


class ResourceNotFoundError(NotFoundError):
    kind = ErrorKind.RESOURCE_NOT_FOUND


class InvalidIDError(DAGFlowError):
    kind = ErrorKind.INVALID_ID

    def __init__(self, value: Any, what: str = "identifier"):
        super().__init__(f"Invalid {what}: {value!r}", {"value": value})


# ============================================================
# Access Errors
# ============================================================

class UnauthorizedError(DAGFlowError):
    kind = ErrorKind.UNAUTHORIZED


class ForbiddenError(DAGFlowError):
    kind = ErrorKind.FORBIDDEN


# ============================================================
# Workflow Definition Errors
# ============================================================

class WorkflowExistsError(DAGFlowError):
    kind = ErrorKind.WORKFLOW_EXISTS

    def __init__(self, workflow_id: str):
        super().__init__(f"Workflow '{workflow_id}' already exists", {"workflow_id": workflow_id})


class ValidationFailedError(DAGFlowError):
    kind = ErrorKind.VALIDATION_FAILED


class GraphCycleError(DAGFlowError):
    """The dependency relation of a workflow contains a cycle."""

    kind = ErrorKind.GRAPH_CYCLE

    def __init__(self, node_ids: Iterable[str]):
        remaining = sorted(node_ids)
        super().__init__(
            f"Dependency cycle detected among nodes: {remaining}",
            {"node_ids": remaining},
        )
        self.node_ids = remaining


# ============================================================
# Node Errors
# ============================================================

class NodeConfigurationError(DAGFlowError):
    """A node cannot be dispatched: unknown type, bad config, unresolved template."""

    kind = ErrorKind.NODE_CONFIGURATION


class TemplateResolutionError(NodeConfigurationError):

    def __init__(self, path: str, template: Optional[str] = None, reason: str = "not found"):
        super().__init__(
            f"Template variable '{path}' {reason}",
            {"path": path, "template": template},
        )
        self.path = path


class NodeExecutionError(DAGFlowError):
    """The executor ran but the side effect failed."""

    kind = ErrorKind.NODE_EXECUTION

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        retryable: bool = True,
    ):
        super().__init__(message, details)
        self.retryable = retryable


class NodeTimeoutError(NodeExecutionError):
    kind = ErrorKind.NODE_TIMEOUT

    def __init__(self, node_id: str, timeout: float):
        super().__init__(
            f"Node '{node_id}' timed out after {timeout}s",
            {"node_id": node_id, "timeout": timeout},
        )


class ExecutionTimeoutError(DAGFlowError):
    """The whole execution ran past its time budget."""
    kind = ErrorKind.NODE_TIMEOUT

    def __init__(self, timeout: float):
        super().__init__(
            f"Execution timed out after {timeout}s",
            {"timeout": timeout},
        )


# ============================================================
# Internal Errors
# ============================================================

class InternalError(DAGFlowError):
    kind = ErrorKind.INTERNAL


class StateTransitionError(InternalError):
    """A NodeResult was asked to move backwards or out of a terminal status."""

    def __init__(self, node_id: str, current: str, requested: str):
        super().__init__(
            f"Illegal transition for node '{node_id}': {current} -> {requested}",
            {"node_id": node_id, "current": current, "requested": requested},
        )
