"""
Data Model for the Execution Engine.

Workflow definitions are immutable inputs; Executions and their NodeResults
are the mutable run records the engine produces.
"""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, field_validator
from datetime import datetime
from enum import Enum
import uuid


# ============================================================
# Enums
# ============================================================

class ExecutionStatus(str, Enum):
    """Lifecycle status of a workflow execution."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            ExecutionStatus.COMPLETED,
            ExecutionStatus.FAILED,
            ExecutionStatus.CANCELLED,
        )


class NodeStatus(str, Enum):
    """Status of one node within one execution."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (NodeStatus.SUCCEEDED, NodeStatus.FAILED, NodeStatus.SKIPPED)


class WebhookEvent(str, Enum):
    """Lifecycle events a webhook subscription can ask for."""
    EXECUTION_STARTED = "execution.started"
    EXECUTION_COMPLETED = "execution.completed"
    EXECUTION_FAILED = "execution.failed"
    EXECUTION_CANCELLED = "execution.cancelled"
    WAVE_STARTED = "wave.started"
    WAVE_COMPLETED = "wave.completed"
    NODE_STARTED = "node.started"
    NODE_COMPLETED = "node.completed"
    NODE_FAILED = "node.failed"
    NODE_SKIPPED = "node.skipped"
    NODE_RETRYING = "node.retrying"

    @property
    def is_node_event(self) -> bool:
        return self.value.startswith("node.")


# ============================================================
# Workflow Definition
# ============================================================

class RetryPolicy(BaseModel):
    """
    Per-node retry policy for executor failures.

    Attributes:
        max_attempts: Total attempts including the first one
        delay: Seconds to wait before the first retry
        backoff: Multiplier applied to the delay after each retry
    """
    max_attempts: int = Field(1, ge=1, le=10)
    delay: float = Field(0.0, ge=0)
    backoff: float = Field(2.0, ge=1.0)

    def delay_for(self, attempt: int) -> float:
        """Delay before the given retry attempt (attempt 2 is the first retry)."""
        return self.delay * (self.backoff ** max(attempt - 2, 0))


class NodeDefinition(BaseModel):
    """
    A node in a workflow definition.

    Attributes:
        id: Identifier unique within the workflow
        type: Executor type tag (looked up in the node registry)
        config: Executor configuration, may contain {{.path}} placeholders
        depends_on: Node ids that must succeed before this node runs
        timeout: Seconds allowed per executor invocation (None = engine default)
        retry: Optional retry policy for executor failures
    """
    id: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1)
    config: Dict[str, Any] = Field(default_factory=dict)
    depends_on: List[str] = Field(default_factory=list)
    timeout: Optional[float] = Field(None, gt=0)
    retry: Optional[RetryPolicy] = None


class Trigger(BaseModel):
    """An event filter that starts a workflow when source and status both match."""
    source: str
    status: str
    enabled: bool = True


class Workflow(BaseModel):
    """An immutable workflow definition."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str = "Unnamed Workflow"
    description: str = ""
    nodes: List[NodeDefinition] = Field(default_factory=list)
    triggers: List[Trigger] = Field(default_factory=list)
    variables: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.now)

    class Config:
        frozen = True

    @property
    def node_ids(self) -> List[str]:
        return [n.id for n in self.nodes]

    def get_node(self, node_id: str) -> Optional[NodeDefinition]:
        for n in self.nodes:
            if n.id == node_id:
                return n
        return None


class Event(BaseModel):
    """An inbound event offered to trigger filters."""
    source: str
    status: str
    payload: Dict[str, Any] = Field(default_factory=dict)


# ============================================================
# Execution Records
# ============================================================

class WebhookSubscription(BaseModel):
    """
    A per-execution webhook callback.

    An empty events list subscribes to every event. node_ids, when set,
    restricts node.* events to those nodes; execution and wave events
    are unaffected by it.
    """
    url: str
    events: List[str] = Field(default_factory=list)
    headers: Dict[str, str] = Field(default_factory=dict)
    node_ids: Optional[List[str]] = None

    @field_validator("url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError(f"webhook url must be http(s): {value!r}")
        return value

    @field_validator("events")
    @classmethod
    def _check_events(cls, value: List[str]) -> List[str]:
        known = {e.value for e in WebhookEvent}
        unknown = [e for e in value if e not in known]
        if unknown:
            raise ValueError(f"unknown webhook event(s): {unknown}")
        return value


class NodeResult(BaseModel):
    """Outcome of one node within one execution."""
    node_id: str
    status: NodeStatus = NodeStatus.PENDING
    output: Optional[Any] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    attempts: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def duration_ms(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds() * 1000
        return None


class Execution(BaseModel):
    """One run of a workflow."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workflow_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    input: Dict[str, Any] = Field(default_factory=dict)
    node_results: Dict[str, NodeResult] = Field(default_factory=dict)
    webhooks: List[WebhookSubscription] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    retry_count: int = 0

    def nodes_with_status(self, *statuses: NodeStatus) -> List[str]:
        return [
            node_id for node_id, result in self.node_results.items()
            if result.status in statuses
        ]
