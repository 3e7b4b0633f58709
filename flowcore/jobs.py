from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Callable, Iterable

from .config import app_config
from .errors import ErrorCategory, FlowError, JobFailureError, ValidationError
from .models import Execution, ExecutionStatus, Workflow

if TYPE_CHECKING:
    from .engine import WorkflowEngine
    from .error_handling import ErrorHandler
    from .store import ExecutionStore, WorkflowStore

logger = logging.getLogger(__name__)

AlertHook = Callable[[Execution, str], None]


class JobAttemptError(FlowError):
    """The attempt failed with a retryable error; the queue should run ``next_execution_id``."""

    def __init__(self, message: str, *, next_execution_id: str, category: ErrorCategory) -> None:
        super().__init__(message)
        self.next_execution_id = next_execution_id
        self.category = category


class ProcessWorkflowExecution:
    """Queue job that runs one execution of a workflow.

    Each attempt runs the whole graph from the top. A failed attempt is left
    on its own ``error`` row; when the failure is retryable and retries
    remain, a successor row is created and ``JobAttemptError`` tells the queue
    to try again after ``backoff`` seconds.
    """

    def __init__(
        self,
        engine: WorkflowEngine,
        executions: ExecutionStore,
        workflows: WorkflowStore | None = None,
        settings: dict[str, Any] | None = None,
        alert_hooks: Iterable[AlertHook] = (),
        error_handler: ErrorHandler | None = None,
    ) -> None:
        self.engine = engine
        self.executions = executions
        self.workflows = workflows
        settings = {**app_config.queue_settings(), **(settings or {})}
        self.tries = int(settings["tries"])
        self.timeout = int(settings["timeout_seconds"])
        self.backoff = int(settings["backoff_seconds"])
        self.alert_hooks = list(alert_hooks)
        self.error_handler = error_handler

    def handle(self, payload: dict[str, Any]) -> dict[str, Any]:
        execution_id = payload["execution_id"]
        execution = self.executions.get(execution_id)
        if execution is None:
            raise JobFailureError(
                f"Execution {execution_id} not found",
                execution_id=execution_id,
                category=ErrorCategory.CONFIGURATION,
            )
        if execution.is_completed:
            logger.info("Execution %s already %s, skipping job", execution.id, execution.status.value)
            return self._summary(execution)
        if execution.status is ExecutionStatus.RUNNING:
            # Redelivered after the worker died mid-run (late ack).
            raise self.interrupted(execution_id, "Attempt was interrupted before it finished")

        workflow = self._workflow(payload)
        try:
            if payload.get("kind") == "resume":
                result = self.engine.resume(workflow, execution)
            else:
                result = self.engine.execute(workflow, execution)
        except ValidationError as exc:
            execution.mark_running()
            execution.mark_error(str(exc), ErrorCategory.VALIDATION)
            self.executions.update(execution)
            raise self.failed(execution, str(exc), ErrorCategory.VALIDATION) from exc

        if result.status is not ExecutionStatus.ERROR:
            return {**self._summary(execution), "result": result.to_dict()}

        category = result.error_category or ErrorCategory.INTERNAL
        raise self._next_attempt(execution, result.error_message or "Execution failed", category)

    def interrupted(self, execution_id: str, message: str) -> FlowError:
        """Close out an attempt that stopped without finishing its run.

        The stranded ``running`` row becomes a ``timeout`` error and goes
        through the usual retry decision.
        """
        execution = self.executions.get(execution_id)
        if execution is None or execution.status is not ExecutionStatus.RUNNING:
            return JobFailureError(message, execution_id=execution_id, category=ErrorCategory.TIMEOUT)
        execution.mark_error(message, ErrorCategory.TIMEOUT)
        self.executions.update(execution)
        logger.warning("Execution %s was left running: %s", execution.id, message)
        return self._next_attempt(execution, message, ErrorCategory.TIMEOUT)

    def _next_attempt(self, execution: Execution, message: str, category: ErrorCategory) -> FlowError:
        if category.is_retryable and execution.can_be_retried():
            successor = execution.retry()
            self.executions.create(successor)
            logger.warning(
                "Execution %s failed (attempt %d/%d): %s; retrying as %s in %ss",
                execution.id,
                execution.retry_count + 1,
                self.tries,
                message,
                successor.id,
                self.backoff,
            )
            return JobAttemptError(message, next_execution_id=successor.id, category=category)
        return self.failed(execution, message, category)

    def failed(self, execution: Execution, message: str, category: ErrorCategory) -> JobFailureError:
        """Record a permanent failure and build the error the queue job ends with."""
        attempts = execution.retry_count + 1
        summary = f"Job failed after {attempts} attempts: {message}"
        execution.error_message = summary
        execution.metadata["permanently_failed"] = True
        if self.error_handler is not None:
            job_id = self.error_handler.handle(execution, message, category, attempts)
            if job_id is not None:
                execution.metadata["error_workflow_job"] = job_id
        self.executions.update(execution)

        if category.is_critical:
            logger.critical("Critical failure in execution %s of workflow %s: %s", execution.id, execution.workflow_id, message)
            for hook in self.alert_hooks:
                try:
                    hook(execution, summary)
                except Exception:
                    logger.exception("Alert hook %r failed", hook)
        else:
            logger.error("Execution %s permanently failed: %s", execution.id, summary)

        return JobFailureError(summary, execution_id=execution.id, attempts=attempts, category=category)

    def _workflow(self, payload: dict[str, Any]) -> Workflow:
        if payload.get("workflow"):
            return Workflow.model_validate(payload["workflow"])
        workflow = self.workflows.load(payload["workflow_id"]) if self.workflows else None
        if workflow is None:
            raise JobFailureError(
                f"Workflow {payload.get('workflow_id')} not found",
                execution_id=payload.get("execution_id"),
                category=ErrorCategory.CONFIGURATION,
            )
        return workflow

    @staticmethod
    def _summary(execution: Execution) -> dict[str, Any]:
        return {
            "execution_id": execution.id,
            "workflow_id": execution.workflow_id,
            "status": execution.status.value,
            "retry_count": execution.retry_count,
        }
