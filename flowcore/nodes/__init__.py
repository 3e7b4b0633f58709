from .base import (
    ErrorInfo,
    Node,
    NodeCategory,
    NodeDescriptor,
    NodeExecutionContext,
    NodeExecutionResult,
)
from .builtin import builtin_nodes, register_builtin_nodes
from .registry import NodeRegistry

__all__ = [
    "ErrorInfo",
    "Node",
    "NodeCategory",
    "NodeDescriptor",
    "NodeExecutionContext",
    "NodeExecutionResult",
    "NodeRegistry",
    "builtin_nodes",
    "register_builtin_nodes",
]
