from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from ..errors import ErrorCategory
from ..expressions import Condition, ExpressionError, compile_condition, get_path
from .base import Node, NodeCategory, NodeExecutionContext, NodeExecutionResult

_TIME_UNITS = {"seconds": 1, "minutes": 60, "hours": 3600, "days": 86400}


class SwitchNode(Node):
    """Routes its input to one or more named outputs by evaluating conditions.

    ``conditions`` is a list of ``{"name", "condition", "output"}``. In
    ``single`` mode the first match wins; in ``multiple`` mode every match
    fires. When nothing matches the input goes to ``defaultOutput``. The
    shorthand ``condition: "<expr>"`` routes to ``true`` or ``false``.
    """

    id = "switch"
    name = "Switch"
    category = NodeCategory.LOGIC
    icon = "switch"
    description = "Route data to different outputs based on conditions"
    tags = ("switch", "condition", "routing", "logic", "branch")
    properties_schema = {
        "mode": {"type": "select", "options": ["single", "multiple"], "default": "single"},
        "condition": {"type": "string", "description": "Shorthand condition routed to 'true' or 'false'"},
        "conditions": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "name": {"type": "string"},
                    "condition": {"type": "string"},
                    "output": {"type": "string"},
                },
            },
        },
        "defaultOutput": {"type": "string", "default": "default"},
    }
    outputs = {"default": {"type": "object", "description": "Data when no condition matches"}}
    max_execution_time_seconds = 30
    priority = 3
    dynamic_outputs = True

    @staticmethod
    def rules(properties: dict[str, Any]) -> list[dict[str, str]]:
        conditions = properties.get("conditions")
        if conditions:
            return [
                {
                    "name": str(rule.get("name") or rule.get("output") or f"condition_{index}"),
                    "condition": str(rule.get("condition", "")),
                    "output": str(rule.get("output") or rule.get("name") or f"output_{index}"),
                }
                for index, rule in enumerate(conditions)
                if isinstance(rule, dict)
            ]
        if properties.get("condition"):
            return [{"name": "true", "condition": str(properties["condition"]), "output": "true"}]
        return []

    @staticmethod
    def default_output(properties: dict[str, Any]) -> str:
        if properties.get("defaultOutput"):
            return str(properties["defaultOutput"])
        if not properties.get("conditions") and properties.get("condition"):
            return "false"
        return "default"

    def output_ports(self, properties: dict[str, Any]) -> set[str]:
        return {rule["output"] for rule in self.rules(properties)} | {self.default_output(properties)}

    def validate(self, properties: dict[str, Any]) -> bool:
        if not super().validate(properties):
            return False
        rules = self.rules(properties)
        if not rules:
            return False
        try:
            for rule in rules:
                compile_condition(rule["condition"])
        except ExpressionError:
            return False
        return True

    def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        properties = context.properties
        multiple = context.get_property("mode", "single") == "multiple"
        try:
            compiled: list[tuple[dict[str, str], Condition]] = [
                (rule, compile_condition(rule["condition"])) for rule in self.rules(properties)
            ]
        except ExpressionError as exc:
            return NodeExecutionResult.failure(str(exc), code="invalid_condition", category=ErrorCategory.VALIDATION)

        matched: list[str] = []
        outputs: dict[str, Any] = {}
        for rule, condition in compiled:
            if condition(context.input_data):
                matched.append(rule["name"])
                outputs[rule["output"]] = dict(context.input_data)
                if not multiple:
                    break

        if not outputs:
            outputs[self.default_output(properties)] = dict(context.input_data)

        context.log("Switch evaluated", matched=matched, outputs=list(outputs))
        return NodeExecutionResult.ok(outputs, metadata={"matched_conditions": matched})


class LoopNode(Node):
    id = "loop"
    name = "Loop"
    category = NodeCategory.LOGIC
    icon = "loop"
    description = "Iterate over arrays or repeat operations"
    tags = ("loop", "iterate", "array", "repeat", "batch")
    properties_schema = {
        "loopType": {"type": "select", "options": ["array", "count", "condition"], "default": "array", "required": True},
        "arrayPath": {"type": "string", "default": "items", "description": "Dotted path to the array in the input"},
        "count": {"type": "number", "default": 1, "min": 1, "max": 10000},
        "condition": {"type": "string", "description": "Keep iterating while this holds; 'index' is available"},
        "maxIterations": {"type": "number", "default": 1000, "min": 1, "max": 100000},
        "outputMode": {"type": "select", "options": ["individual", "batch", "last"], "default": "individual"},
        "batchSize": {"type": "number", "default": 10, "min": 1},
        "includeIndex": {"type": "boolean", "default": True},
        "includeItem": {"type": "boolean", "default": True},
    }
    outputs = {
        "loop": {"type": "object", "description": "Iteration items under 'items'"},
        "completed": {"type": "object", "description": "Summary emitted after the last iteration"},
    }
    max_execution_time_seconds = 600
    priority = 3

    def validate(self, properties: dict[str, Any]) -> bool:
        if not super().validate(properties):
            return False
        loop_type = properties.get("loopType", "array")
        if loop_type == "count":
            count = properties.get("count", 1)
            return isinstance(count, int) and count >= 1
        if loop_type == "condition":
            try:
                compile_condition(properties.get("condition", ""))
            except ExpressionError:
                return False
        return True

    def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        loop_type = context.get_property("loopType", "array")
        max_iterations = int(context.get_property("maxIterations", 1000))
        warnings: list[str] = []

        if loop_type == "array":
            path = context.get_property("arrayPath", "items")
            items = get_path(context.input_data, path)
            if not isinstance(items, list):
                return NodeExecutionResult.failure(
                    f"'{path}' does not reference an array", code="not_an_array", category=ErrorCategory.VALIDATION
                )
        elif loop_type == "count":
            items = list(range(int(context.get_property("count", 1))))
        else:
            condition = compile_condition(context.get_property("condition", ""))
            items = []
            while len(items) < max_iterations and condition({**context.input_data, "index": len(items)}):
                items.append(len(items))

        if len(items) > max_iterations:
            warnings.append(f"Loop truncated to {max_iterations} iterations")
            items = items[:max_iterations]

        entries = [self._entry(context, item, index, len(items)) for index, item in enumerate(items)]
        mode = context.get_property("outputMode", "individual")
        if mode == "batch":
            size = int(context.get_property("batchSize", 10))
            loop_items: list[Any] = [entries[start:start + size] for start in range(0, len(entries), size)]
        elif mode == "last":
            loop_items = entries[-1:]
        else:
            loop_items = entries

        context.log("Loop completed", loop_type=loop_type, iterations=len(entries))
        return NodeExecutionResult.ok(
            {
                "loop": {"items": loop_items, "count": len(loop_items)},
                "completed": {
                    "loopType": loop_type,
                    "totalIterations": len(entries),
                    "completedAt": datetime.now(timezone.utc).isoformat(),
                },
            },
            warnings=warnings,
        )

    @staticmethod
    def _entry(context: NodeExecutionContext, item: Any, index: int, total: int) -> dict[str, Any]:
        entry: dict[str, Any] = {}
        if context.get_property("includeItem", True):
            entry["item"] = item
        if context.get_property("includeIndex", True):
            entry.update({"index": index, "isFirst": index == 0, "isLast": index == total - 1})
        return entry


class WaitNode(Node):
    """Delays the rest of the branch.

    The node never sleeps: it reports ``suspend_until`` and the engine decides
    whether to checkpoint the run and re-enqueue it.
    """

    id = "wait"
    name = "Wait"
    category = NodeCategory.LOGIC
    icon = "clock"
    description = "Pause workflow execution for a specified time"
    tags = ("wait", "delay", "pause", "sleep", "timing")
    properties_schema = {
        "waitType": {"type": "select", "options": ["fixed", "until"], "default": "fixed", "required": True},
        "waitTime": {"type": "number", "default": 1, "min": 0},
        "timeUnit": {"type": "select", "options": list(_TIME_UNITS), "default": "seconds"},
        "waitUntil": {"type": "datetime"},
        "maxWaitTime": {"type": "number", "default": 3600, "min": 1, "description": "Upper bound in seconds"},
        "ignoreErrors": {"type": "boolean", "default": False},
    }
    outputs = {
        "main": {"type": "object", "description": "Input data after the wait"},
        "timeout": {"type": "object", "description": "Emitted when the wait exceeds maxWaitTime"},
    }
    max_execution_time_seconds = 3600
    supports_async = True
    priority = 2
    critical = False

    def validate(self, properties: dict[str, Any]) -> bool:
        if not super().validate(properties):
            return False
        if properties.get("waitType", "fixed") == "until":
            return _parse_datetime(properties.get("waitUntil")) is not None
        wait_time = properties.get("waitTime", 1)
        return isinstance(wait_time, (int, float)) and wait_time >= 0

    def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        now = datetime.now(timezone.utc)
        wait_type = context.get_property("waitType", "fixed")
        if wait_type == "until":
            target = _parse_datetime(context.get_property("waitUntil"))
            if target is None:
                return NodeExecutionResult.failure(
                    "waitUntil must be an ISO 8601 datetime", code="invalid_wait_until", category=ErrorCategory.VALIDATION
                )
            seconds = max((target - now).total_seconds(), 0.0)
        else:
            unit = _TIME_UNITS.get(context.get_property("timeUnit", "seconds"), 1)
            seconds = float(context.get_property("waitTime", 1)) * unit

        max_wait = float(context.get_property("maxWaitTime", 3600))
        actual = min(seconds, max_wait)
        resume_at = now + timedelta(seconds=actual)
        info = {
            "waitType": wait_type,
            "requestedSeconds": seconds,
            "waitedFor": actual,
            "startedAt": now.isoformat(),
            "resumeAt": resume_at.isoformat(),
        }
        suspend_until = resume_at if actual > 0 else None

        if seconds > max_wait and not context.get_property("ignoreErrors", False):
            context.log("Wait exceeds maxWaitTime, routing to timeout", level="warning", requested=seconds, max_wait=max_wait)
            return NodeExecutionResult.single(
                {**context.input_data, "wait": {**info, "timedOut": True}}, port="timeout", suspend_until=suspend_until
            )

        context.log("Waiting", seconds=actual, resume_at=info["resumeAt"])
        return NodeExecutionResult.single({**context.input_data, "wait": info}, suspend_until=suspend_until)


def _parse_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
