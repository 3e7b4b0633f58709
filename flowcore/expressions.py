"""Condition expressions used by the switch, loop and transformation nodes.

The grammar is deliberately small: dotted field paths, literals, comparisons
(``== != < <= > >=``), membership (``in`` / ``not in`` / ``path.includes(x)``)
and ``and`` / ``or`` / ``not`` with parentheses.  JavaScript spellings such as
``===``, ``&&`` and ``!flag`` are accepted and normalised.  Expressions are
parsed and checked once, then evaluated many times against plain dicts.
"""

from __future__ import annotations

import ast
import json
import operator
import re
from functools import lru_cache
from typing import Any, Callable, Mapping


class ExpressionError(ValueError):
    """Raised when a condition uses syntax outside the supported grammar."""


_LITERAL_NAMES = {
    "true": True,
    "false": False,
    "null": None,
    "none": None,
    "True": True,
    "False": False,
    "None": None,
    "undefined": None,
}

_COMPARE_OPS: dict[type[ast.cmpop], Callable[[Any, Any], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
}

_JS_TOKENS = re.compile(
    r"""("(?:\\.|[^"\\])*"|'(?:\\.|[^'\\])*')|(===|!==|&&|\|\||!(?!=))"""
)
_JS_REPLACEMENTS = {"===": "==", "!==": "!=", "&&": " and ", "||": " or ", "!": " not "}

_MISSING = object()


def _normalize(text: str) -> str:
    def replace(match: re.Match[str]) -> str:
        if match.group(1) is not None:
            return match.group(1)
        return _JS_REPLACEMENTS[match.group(2)]

    return _JS_TOKENS.sub(replace, text).strip()


class Condition:
    def __init__(self, source: str, tree: ast.Expression) -> None:
        self.source = source
        self._tree = tree

    def __repr__(self) -> str:
        return f"Condition({self.source!r})"

    def evaluate(self, data: Mapping[str, Any]) -> bool:
        return bool(_Evaluator(data).visit(self._tree.body))

    __call__ = evaluate


def compile_condition(source: Any) -> Condition:
    if not isinstance(source, str) or not source.strip():
        raise ExpressionError("Condition must be a non-empty string")
    return _compile(source)


@lru_cache(maxsize=512)
def _compile(source: str) -> Condition:
    normalized = _normalize(source)
    try:
        tree = ast.parse(normalized, mode="eval")
    except SyntaxError as exc:
        raise ExpressionError(f"Invalid condition '{source}': {exc.msg}") from exc
    _check(tree.body, source)
    return Condition(source, tree)


def evaluate_condition(source: str, data: Mapping[str, Any]) -> bool:
    return compile_condition(source).evaluate(data)


def get_path(data: Any, path: str, default: Any = None) -> Any:
    current = data
    for key in path.split("."):
        if isinstance(current, Mapping):
            if key not in current:
                return default
            current = current[key]
        elif isinstance(current, (list, tuple)) and key.lstrip("-").isdigit():
            index = int(key)
            if not -len(current) <= index < len(current):
                return default
            current = current[index]
        else:
            return default
    return current


def _check(node: ast.AST, source: str) -> None:
    if isinstance(node, ast.BoolOp):
        for value in node.values:
            _check(value, source)
    elif isinstance(node, ast.UnaryOp) and isinstance(node.op, (ast.Not, ast.USub)):
        _check(node.operand, source)
    elif isinstance(node, ast.Compare):
        for op in node.ops:
            if type(op) not in _COMPARE_OPS and not isinstance(op, (ast.In, ast.NotIn)):
                raise ExpressionError(f"Unsupported operator in '{source}'")
        _check(node.left, source)
        for comparator in node.comparators:
            _check(comparator, source)
    elif isinstance(node, ast.Constant):
        if not isinstance(node.value, (str, int, float, bool, type(None))):
            raise ExpressionError(f"Unsupported literal in '{source}'")
    elif isinstance(node, (ast.List, ast.Tuple)):
        for element in node.elts:
            _check(element, source)
    elif isinstance(node, ast.Name):
        return
    elif isinstance(node, ast.Attribute):
        _check(node.value, source)
    elif isinstance(node, ast.Subscript):
        _check(node.value, source)
        if not isinstance(node.slice, ast.Constant) or not isinstance(node.slice.value, (int, str)):
            raise ExpressionError(f"Only constant indexes are supported in '{source}'")
    elif isinstance(node, ast.Call):
        func = node.func
        if not (
            isinstance(func, ast.Attribute)
            and func.attr in {"includes", "contains"}
            and len(node.args) == 1
            and not node.keywords
        ):
            raise ExpressionError(f"Function calls are not supported in '{source}'")
        _check(func.value, source)
        _check(node.args[0], source)
    else:
        raise ExpressionError(f"Unsupported syntax '{type(node).__name__}' in '{source}'")


class _Evaluator:
    def __init__(self, data: Mapping[str, Any]) -> None:
        self.data = data

    def visit(self, node: ast.AST) -> Any:
        if isinstance(node, ast.BoolOp):
            if isinstance(node.op, ast.And):
                return all(self.visit(value) for value in node.values)
            return any(self.visit(value) for value in node.values)
        if isinstance(node, ast.UnaryOp):
            operand = self.visit(node.operand)
            if isinstance(node.op, ast.Not):
                return not operand
            return -operand if isinstance(operand, (int, float)) else None
        if isinstance(node, ast.Compare):
            return self._compare(node)
        if isinstance(node, ast.Constant):
            return node.value
        if isinstance(node, (ast.List, ast.Tuple)):
            return [self.visit(element) for element in node.elts]
        if isinstance(node, ast.Name):
            if node.id in self.data:
                return self.data[node.id]
            return _LITERAL_NAMES.get(node.id)
        if isinstance(node, ast.Attribute):
            return self._lookup(self.visit(node.value), node.attr)
        if isinstance(node, ast.Subscript):
            return self._lookup(self.visit(node.value), node.slice.value)
        if isinstance(node, ast.Call):
            container = self.visit(node.func.value)
            return _contains(container, self.visit(node.args[0]))
        raise ExpressionError(f"Unsupported syntax '{type(node).__name__}'")

    @staticmethod
    def _lookup(value: Any, key: Any) -> Any:
        if isinstance(value, Mapping):
            return value.get(key)
        if isinstance(value, (list, tuple)) and isinstance(key, int):
            return value[key] if -len(value) <= key < len(value) else None
        if key == "length" and isinstance(value, (str, list, tuple)):
            return len(value)
        return None

    def _compare(self, node: ast.Compare) -> bool:
        left = self.visit(node.left)
        for op, comparator in zip(node.ops, node.comparators):
            right = self.visit(comparator)
            if isinstance(op, ast.In):
                result = _contains(right, left)
            elif isinstance(op, ast.NotIn):
                result = not _contains(right, left)
            else:
                result = _apply(_COMPARE_OPS[type(op)], left, right, ordering=not isinstance(op, (ast.Eq, ast.NotEq)))
            if not result:
                return False
            left = right
        return True


def _apply(fn: Callable[[Any, Any], bool], left: Any, right: Any, *, ordering: bool) -> bool:
    left, right = _coerce_numbers(left, right)
    if ordering and (left is None or right is None):
        return False
    try:
        return bool(fn(left, right))
    except TypeError:
        return False


def _coerce_numbers(left: Any, right: Any) -> tuple[Any, Any]:
    if _is_number(left) and isinstance(right, str):
        converted = _to_number(right)
        if converted is not _MISSING:
            return left, converted
    if _is_number(right) and isinstance(left, str):
        converted = _to_number(left)
        if converted is not _MISSING:
            return converted, right
    return left, right


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _to_number(value: str) -> Any:
    try:
        return float(value) if any(ch in value for ch in ".eE") else int(value)
    except ValueError:
        return _MISSING


def _contains(container: Any, item: Any) -> bool:
    if isinstance(container, str):
        return isinstance(item, str) and item in container
    if isinstance(container, Mapping):
        return item in container
    if isinstance(container, (list, tuple, set)):
        return item in container
    return False


_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z_$][\w.$]*)\s*\}\}")


def render_template(template: str, data: Mapping[str, Any]) -> str:
    """Replace ``{{path}}`` placeholders with values looked up in ``data``.

    ``{{json}}`` renders the whole mapping. Unknown paths render as empty text.
    """

    def replace(match: re.Match[str]) -> str:
        path = match.group(1)
        if path == "json":
            return json.dumps(dict(data), ensure_ascii=True, default=str)
        value = get_path(data, path)
        if value is None:
            return ""
        if isinstance(value, (dict, list)):
            return json.dumps(value, ensure_ascii=True, default=str)
        return str(value)

    return _PLACEHOLDER.sub(replace, template)
