from __future__ import annotations

from .actions import EmailNode, HttpRequestNode, SlackNode
from .base import Node
from .data import DatabaseQueryNode
from .logic import LoopNode, SwitchNode, WaitNode
from .registry import NodeRegistry
from .transform import DataTransformationNode, SetNode
from .triggers import EmailTriggerNode, ManualTriggerNode, ScheduleTriggerNode, WebhookTriggerNode


def builtin_nodes() -> list[Node]:
    return [
        ManualTriggerNode(),
        WebhookTriggerNode(),
        ScheduleTriggerNode(),
        EmailTriggerNode(),
        HttpRequestNode(),
        EmailNode(),
        SlackNode(),
        DatabaseQueryNode(),
        SetNode(),
        DataTransformationNode(),
        SwitchNode(),
        LoopNode(),
        WaitNode(),
    ]


def register_builtin_nodes(registry: NodeRegistry) -> NodeRegistry:
    registry.register_all(builtin_nodes())
    return registry
