from __future__ import annotations

import logging
import operator
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Iterable

import yaml

from .errors import ErrorCategory
from .models import Execution, ExecutionMode

if TYPE_CHECKING:
    from .engine import WorkflowEngine
    from .store import WorkflowStore

logger = logging.getLogger(__name__)


def _numeric(fn: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def compare(actual: Any, expected: Any) -> bool:
        try:
            return fn(float(actual), float(expected))
        except (TypeError, ValueError):
            return False

    return compare


def _text(fn: Callable[[str, str], bool]) -> Callable[[Any, Any], bool]:
    def compare(actual: Any, expected: Any) -> bool:
        return isinstance(actual, str) and fn(actual, str(expected))

    return compare


_OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "equals": operator.eq,
    "not_equals": operator.ne,
    "contains": _text(operator.contains),
    "starts_with": _text(str.startswith),
    "ends_with": _text(str.endswith),
    "greater_than": _numeric(operator.gt),
    "less_than": _numeric(operator.lt),
    "in": lambda actual, expected: isinstance(expected, (list, tuple, set)) and actual in expected,
}

FIELDS = frozenset({"workflow_id", "error_message", "error_category", "execution_mode", "retry_count"})


@dataclass(frozen=True)
class ErrorCondition:
    field: str
    operator: str = "equals"
    value: Any = ""

    def __post_init__(self) -> None:
        if self.field not in FIELDS:
            raise ValueError(f"Unknown error condition field '{self.field}'")
        if self.operator not in _OPERATORS:
            raise ValueError(f"Unknown error condition operator '{self.operator}'")

    def matches(self, facts: dict[str, Any]) -> bool:
        return _OPERATORS[self.operator](facts.get(self.field), self.value)


@dataclass
class ErrorWorkflowRule:
    """Start ``workflow_id`` when a run fails with one of ``categories``.

    An empty ``categories`` set matches every category; every condition must
    hold for the rule to match.
    """

    workflow_id: str
    categories: frozenset[ErrorCategory] = frozenset()
    conditions: tuple[ErrorCondition, ...] = ()

    def matches(self, facts: dict[str, Any], category: ErrorCategory) -> bool:
        if self.categories and category not in self.categories:
            return False
        return all(condition.matches(facts) for condition in self.conditions)


@dataclass
class ErrorHandler:
    """Dispatches the error workflow registered for a permanently failed run."""

    engine: WorkflowEngine
    workflows: WorkflowStore
    rules: list[ErrorWorkflowRule] = field(default_factory=list)

    def register(
        self,
        workflow_id: str,
        categories: Iterable[ErrorCategory | str] = (),
        conditions: Iterable[ErrorCondition | dict[str, Any]] = (),
    ) -> ErrorWorkflowRule:
        rule = ErrorWorkflowRule(
            workflow_id=workflow_id,
            categories=frozenset(ErrorCategory(category) for category in categories),
            conditions=tuple(
                condition if isinstance(condition, ErrorCondition) else ErrorCondition(**condition)
                for condition in conditions
            ),
        )
        self.rules.append(rule)
        logger.info(
            "Error workflow %s registered for %s",
            workflow_id,
            ", ".join(sorted(category.value for category in rule.categories)) or "any failure",
        )
        return rule

    def clear(self) -> None:
        self.rules.clear()

    def find(self, execution: Execution, message: str, category: ErrorCategory) -> ErrorWorkflowRule | None:
        facts = {
            "workflow_id": execution.workflow_id,
            "error_message": message,
            "error_category": category.value,
            "execution_mode": execution.mode.value,
            "retry_count": execution.retry_count,
        }
        for rule in self.rules:
            if rule.matches(facts, category):
                return rule
        return None

    def handle(self, execution: Execution, message: str, category: ErrorCategory, attempts: int) -> str | None:
        """Queue the matching error workflow and return its job id, if any ran."""
        # Failures of error workflows never start another one.
        if execution.mode is ExecutionMode.ERROR:
            return None
        rule = self.find(execution, message, category)
        if rule is None:
            return None
        if rule.workflow_id == execution.workflow_id:
            logger.warning("Workflow %s is its own error workflow, not dispatching", execution.workflow_id)
            return None
        workflow = self.workflows.load(rule.workflow_id)
        if workflow is None:
            logger.error("Error workflow %s for execution %s not found", rule.workflow_id, execution.id)
            return None

        payload = {
            "original_execution": {
                "id": execution.id,
                "workflow_id": execution.workflow_id,
                "status": execution.status.value,
                "mode": execution.mode.value,
                "started_at": execution.started_at.isoformat() if execution.started_at else None,
                "retry_count": execution.retry_count,
            },
            "error": {"message": message, "category": category.value, "attempts": attempts},
            "failed_nodes": list(execution.metadata.get("failed_nodes", [])),
        }
        try:
            job_id = self.engine.dispatch_async(
                workflow,
                payload,
                priority=execution.metadata.get("priority", "normal"),
                mode=ExecutionMode.ERROR,
            )
        except Exception:
            logger.exception("Error workflow %s could not be dispatched for execution %s", rule.workflow_id, execution.id)
            return None
        logger.info("Error workflow %s queued as %s for execution %s", rule.workflow_id, job_id, execution.id)
        return job_id


def load_error_workflow_rules(path: Path) -> list[ErrorWorkflowRule]:
    """Read rules from a YAML list of ``{workflow_id, categories, conditions}`` entries."""
    if not path.exists():
        return []
    raw = yaml.safe_load(path.read_text(encoding="utf-8")) or []
    if not isinstance(raw, list):
        raise ValueError(f"Error workflow file {path} must contain a list")
    rules = []
    for entry in raw:
        rules.append(
            ErrorWorkflowRule(
                workflow_id=str(entry["workflow_id"]),
                categories=frozenset(ErrorCategory(category) for category in entry.get("categories", [])),
                conditions=tuple(ErrorCondition(**condition) for condition in entry.get("conditions", [])),
            )
        )
    return rules
