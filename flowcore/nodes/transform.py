from __future__ import annotations

import copy
import csv
import io
import json
from typing import Any

import yaml

from ..errors import ErrorCategory
from ..expressions import ExpressionError, compile_condition, get_path, render_template
from .base import Node, NodeCategory, NodeExecutionContext, NodeExecutionResult


def set_path(data: dict[str, Any], path: str, value: Any) -> None:
    keys = path.split(".")
    current = data
    for key in keys[:-1]:
        if not isinstance(current.get(key), dict):
            current[key] = {}
        current = current[key]
    current[keys[-1]] = value


def remove_path(data: dict[str, Any], path: str) -> None:
    keys = path.split(".")
    current: Any = data
    for key in keys[:-1]:
        if not isinstance(current, dict) or key not in current:
            return
        current = current[key]
    if isinstance(current, dict):
        current.pop(keys[-1], None)


class SetNode(Node):
    id = "set"
    name = "Set"
    category = NodeCategory.TRANSFORMER
    icon = "edit"
    description = "Set, modify, or add data fields"
    tags = ("set", "data", "modify", "transform", "variables", "assign")
    properties_schema = {
        "mode": {"type": "select", "options": ["manual", "json"], "default": "manual", "required": True},
        "values": {
            "type": "array",
            "description": "Values to set",
            "items": {"type": "object", "properties": {"name": {"type": "string"}, "value": {"type": "any"}}},
        },
        "jsonData": {"type": "text", "description": "JSON object to merge"},
        "keepOnlySet": {"type": "boolean", "default": False},
        "options": {
            "type": "object",
            "properties": {
                "dotNotation": {"type": "boolean", "default": True},
                "overwrite": {"type": "boolean", "default": True},
            },
        },
    }
    max_execution_time_seconds = 30
    priority = 2

    def validate(self, properties: dict[str, Any]) -> bool:
        if not super().validate(properties):
            return False
        mode = properties.get("mode", "manual")
        if mode == "json":
            try:
                return isinstance(json.loads(properties.get("jsonData") or "{}"), dict)
            except json.JSONDecodeError:
                return False
        return all(isinstance(item, dict) and item.get("name") for item in properties.get("values") or [])

    def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        options = context.get_property("options", {})
        dot_notation = options.get("dotNotation", True)
        overwrite = options.get("overwrite", True)
        result: dict[str, Any] = {} if context.get_property("keepOnlySet", False) else copy.deepcopy(context.input_data)

        if context.get_property("mode", "manual") == "json":
            values = json.loads(context.get_property("jsonData") or "{}")
        else:
            values = {}
            for item in context.get_property("values", []):
                value = item.get("value")
                if isinstance(value, str):
                    value = render_template(value, context.input_data)
                values[item["name"]] = value

        for name, value in values.items():
            if not overwrite and get_path(result, name) is not None:
                continue
            if dot_notation and "." in name:
                set_path(result, name, value)
            else:
                result[name] = value

        context.log("Values set", fields=list(values))
        return NodeExecutionResult.single(result)


class DataTransformationNode(Node):
    id = "dataTransformation"
    name = "Data Transformation"
    category = NodeCategory.TRANSFORMER
    icon = "transform"
    description = "Transform, filter, and manipulate data"
    tags = ("transform", "data", "filter", "sort", "group", "format")
    properties_schema = {
        "operations": {
            "type": "array",
            "required": True,
            "description": "Operations applied in order",
            "items": {
                "type": "object",
                "properties": {
                    "type": {
                        "type": "select",
                        "options": [
                            "set", "get", "remove", "rename", "filter", "sort",
                            "group", "merge", "split", "join", "format", "parse",
                        ],
                    },
                    "path": {"type": "string"},
                    "value": {"type": "any"},
                    "target": {"type": "string"},
                    "condition": {"type": "string"},
                    "direction": {"type": "select", "options": ["asc", "desc"]},
                    "separator": {"type": "string"},
                    "format": {"type": "select", "options": ["json", "yaml", "csv"]},
                },
            },
        },
    }
    max_execution_time_seconds = 60
    priority = 2

    def validate(self, properties: dict[str, Any]) -> bool:
        operations = properties.get("operations")
        if not isinstance(operations, list) or not operations:
            return False
        for operation in operations:
            if not isinstance(operation, dict) or not hasattr(self, f"_op_{operation.get('type')}"):
                return False
            if operation["type"] == "filter":
                try:
                    compile_condition(operation.get("condition", ""))
                except ExpressionError:
                    return False
        return True

    def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        data: dict[str, Any] = copy.deepcopy(context.input_data)
        for index, operation in enumerate(context.get_property("operations", [])):
            handler = getattr(self, f"_op_{operation.get('type')}", None)
            if handler is None:
                return NodeExecutionResult.failure(
                    f"Unknown transformation '{operation.get('type')}'",
                    code="unknown_operation",
                    category=ErrorCategory.VALIDATION,
                )
            try:
                data = handler(data, operation)
            except (ValueError, TypeError, KeyError, yaml.YAMLError) as exc:
                return NodeExecutionResult.failure(
                    f"Operation {index} ({operation['type']}) failed: {exc}",
                    code="transformation_failed",
                    category=ErrorCategory.VALIDATION,
                )
        context.log("Transformations applied", count=len(context.get_property("operations", [])))
        return NodeExecutionResult.single(data)

    @staticmethod
    def _list_at(data: dict[str, Any], operation: dict[str, Any]) -> tuple[str, list[Any]]:
        path = operation.get("path") or "items"
        items = get_path(data, path)
        if not isinstance(items, list):
            raise ValueError(f"'{path}' is not a list")
        return path, items

    def _op_set(self, data: dict[str, Any], operation: dict[str, Any]) -> dict[str, Any]:
        set_path(data, operation["path"], operation.get("value"))
        return data

    def _op_get(self, data: dict[str, Any], operation: dict[str, Any]) -> dict[str, Any]:
        value = get_path(data, operation["path"])
        set_path(data, operation.get("target") or operation["path"].split(".")[-1], value)
        return data

    def _op_remove(self, data: dict[str, Any], operation: dict[str, Any]) -> dict[str, Any]:
        remove_path(data, operation["path"])
        return data

    def _op_rename(self, data: dict[str, Any], operation: dict[str, Any]) -> dict[str, Any]:
        value = get_path(data, operation["path"])
        if value is not None:
            remove_path(data, operation["path"])
            set_path(data, operation["target"], value)
        return data

    def _op_filter(self, data: dict[str, Any], operation: dict[str, Any]) -> dict[str, Any]:
        path, items = self._list_at(data, operation)
        condition = compile_condition(operation["condition"])
        kept = [item for item in items if condition({**item, "item": item} if isinstance(item, dict) else {"item": item})]
        set_path(data, path, kept)
        return data

    def _op_sort(self, data: dict[str, Any], operation: dict[str, Any]) -> dict[str, Any]:
        path, items = self._list_at(data, operation)
        key = operation.get("key")
        reverse = operation.get("direction", "asc") == "desc"

        def sort_key(item: Any) -> tuple[bool, Any]:
            value = get_path(item, key) if key else item
            return value is None, value

        set_path(data, path, sorted(items, key=sort_key, reverse=reverse))
        return data

    def _op_group(self, data: dict[str, Any], operation: dict[str, Any]) -> dict[str, Any]:
        path, items = self._list_at(data, operation)
        groups: dict[str, list[Any]] = {}
        for item in items:
            groups.setdefault(str(get_path(item, operation["key"])), []).append(item)
        set_path(data, operation.get("target") or path, groups)
        return data

    def _op_merge(self, data: dict[str, Any], operation: dict[str, Any]) -> dict[str, Any]:
        value = operation.get("value")
        if not isinstance(value, dict):
            raise ValueError("merge value must be an object")
        data.update(value)
        return data

    def _op_split(self, data: dict[str, Any], operation: dict[str, Any]) -> dict[str, Any]:
        value = get_path(data, operation["path"])
        if not isinstance(value, str):
            raise ValueError(f"'{operation['path']}' is not a string")
        set_path(data, operation.get("target") or operation["path"], value.split(operation.get("separator", ",")))
        return data

    def _op_join(self, data: dict[str, Any], operation: dict[str, Any]) -> dict[str, Any]:
        _, items = self._list_at(data, operation)
        joined = operation.get("separator", ",").join(str(item) for item in items)
        set_path(data, operation.get("target") or operation["path"], joined)
        return data

    def _op_format(self, data: dict[str, Any], operation: dict[str, Any]) -> dict[str, Any]:
        path = operation.get("path")
        value = get_path(data, path) if path else data
        fmt = operation.get("format", "json")
        if fmt == "json":
            text = json.dumps(value, default=str)
        elif fmt == "yaml":
            text = yaml.safe_dump(value, sort_keys=False)
        elif fmt == "csv":
            rows = value if isinstance(value, list) else [value]
            if not rows or not all(isinstance(row, dict) for row in rows):
                raise ValueError("csv format requires a list of objects")
            buffer = io.StringIO()
            writer = csv.DictWriter(buffer, fieldnames=list(rows[0]))
            writer.writeheader()
            writer.writerows(rows)
            text = buffer.getvalue()
        else:
            raise ValueError(f"Unsupported format '{fmt}'")
        set_path(data, operation.get("target") or "formatted", text)
        return data

    def _op_parse(self, data: dict[str, Any], operation: dict[str, Any]) -> dict[str, Any]:
        text = get_path(data, operation["path"])
        if not isinstance(text, str):
            raise ValueError(f"'{operation['path']}' is not a string")
        fmt = operation.get("format", "json")
        if fmt == "json":
            parsed = json.loads(text)
        elif fmt == "yaml":
            parsed = yaml.safe_load(text)
        elif fmt == "csv":
            parsed = list(csv.DictReader(io.StringIO(text)))
        else:
            raise ValueError(f"Unsupported format '{fmt}'")
        set_path(data, operation.get("target") or operation["path"], parsed)
        return data
