"""
Nodes package - Node executor registry and built-in executors.
"""

from dagflow.nodes.registry import (
    NodeContext,
    NodeExecutor,
    NodeExecutorRegistry,
    node_registry,
    register_executor,
    get_executor,
)

# Import built-in executors to register them
from dagflow.nodes.http import HttpExecutor

__all__ = [
    "NodeContext",
    "NodeExecutor",
    "NodeExecutorRegistry",
    "node_registry",
    "register_executor",
    "get_executor",
    "HttpExecutor",
]
