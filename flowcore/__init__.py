from .engine import WorkflowEngine
from .models import Execution, ExecutionMode, ExecutionResult, ExecutionStatus, Workflow
from .nodes import NodeRegistry, register_builtin_nodes
from .resolver import ExecutionPlan, GraphResolver

__version__ = "0.1.0"

__all__ = [
    "Execution",
    "ExecutionMode",
    "ExecutionPlan",
    "ExecutionResult",
    "ExecutionStatus",
    "GraphResolver",
    "NodeRegistry",
    "Workflow",
    "WorkflowEngine",
    "register_builtin_nodes",
]
