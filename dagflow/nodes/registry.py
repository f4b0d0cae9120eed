"""
Node Executor Registry.

Maps a node type tag to the strategy that performs the node's side
effect. Adding a node type means writing a NodeExecutor implementation
and registering it here; the engine never branches on node types.
"""

from typing import Any, Callable, Dict, List, Optional, Protocol, runtime_checkable
from dataclasses import dataclass, field
import logging

from dagflow.errors import NodeConfigurationError


logger = logging.getLogger(__name__)


@dataclass
class NodeContext:
    """
    Per-invocation context handed to an executor.

    Attributes:
        execution_id: Owning execution
        workflow_id: Owning workflow
        node_id: Node being executed
        attempt: 1-based attempt number under the node's retry policy
        metadata: Free-form extras for executors
    """
    execution_id: str
    workflow_id: str
    node_id: str
    attempt: int = 1
    metadata: Dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class NodeExecutor(Protocol):
    """Strategy for one node type."""

    def validate(self, config: Dict[str, Any]) -> None:
        """Raise NodeConfigurationError if the resolved config is unusable."""
        ...

    async def execute(self, ctx: NodeContext, config: Dict[str, Any]) -> Any:
        """Perform the side effect and return the node's output."""
        ...


class NodeExecutorRegistry:
    """
    Lookup table of node executors keyed by node type.

    Usage:
        registry = NodeExecutorRegistry()

        @registry.register("http")
        class HttpExecutor:
            ...

        executor = registry.get("http")
        output = await executor.execute(ctx, config)
    """

    def __init__(self):
        self._executors: Dict[str, NodeExecutor] = {}

    def register(self, node_type: str, *args, **kwargs) -> Callable:
        """
        Class decorator that instantiates and registers an executor.

        Args:
            node_type: Type tag used in node definitions
            *args, **kwargs: Passed to the executor's constructor

        Returns:
            Decorator returning the class unchanged
        """
        def decorator(cls: type) -> type:
            self.add(node_type, cls(*args, **kwargs))
            return cls

        return decorator

    def add(self, node_type: str, executor: NodeExecutor) -> None:
        """
        Register an executor instance (replaces any existing one).

        Raises:
            TypeError: If the object does not implement NodeExecutor
        """
        if not isinstance(executor, NodeExecutor):
            raise TypeError(
                f"Executor for '{node_type}' must implement validate() and execute()"
            )
        if node_type in self._executors:
            logger.debug(f"Replacing executor for node type: {node_type}")
        self._executors[node_type] = executor
        logger.debug(f"Registered executor for node type: {node_type}")

    def get(self, node_type: str) -> NodeExecutor:
        """
        Look up the executor for a node type.

        Raises:
            NodeConfigurationError: If no executor is registered
        """
        executor = self._executors.get(node_type)
        if executor is None:
            raise NodeConfigurationError(
                f"Unknown node type '{node_type}'. Available: {self.list_types()}",
                {"node_type": node_type},
            )
        return executor

    def find(self, node_type: str) -> Optional[NodeExecutor]:
        return self._executors.get(node_type)

    def remove(self, node_type: str) -> bool:
        """Remove an executor from the registry."""
        if node_type in self._executors:
            del self._executors[node_type]
            return True
        return False

    def list_types(self) -> List[str]:
        return sorted(self._executors)

    def has(self, node_type: str) -> bool:
        return node_type in self._executors

    def __contains__(self, node_type: str) -> bool:
        return self.has(node_type)

    def __len__(self) -> int:
        return len(self._executors)

    def copy(self) -> "NodeExecutorRegistry":
        """Independent registry with the same entries."""
        clone = NodeExecutorRegistry()
        clone._executors = dict(self._executors)
        return clone


# Global registry with the built-in executors
node_registry = NodeExecutorRegistry()


def register_executor(node_type: str, *args, **kwargs) -> Callable:
    """
    Convenience decorator to register an executor in the global registry.

    Usage:
        @register_executor("http")
        class HttpExecutor:
            ...
    """
    return node_registry.register(node_type, *args, **kwargs)


def get_executor(node_type: str) -> NodeExecutor:
    """Get an executor from the global registry."""
    return node_registry.get(node_type)
