from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Protocol

from .config import app_config
from .models import Execution, ExecutionMode, Workflow, new_id

if TYPE_CHECKING:
    from celery import Celery

    from .store import ExecutionStore

logger = logging.getLogger(__name__)

TASK_NAME = "flowcore.process_workflow_execution"

HIGH_PRIORITY_QUEUE = "high-priority"
DEFAULT_QUEUE = "default"
LOW_PRIORITY_QUEUE = "low-priority"


def queue_for_priority(priority: str | None) -> str:
    if priority == "high":
        return HIGH_PRIORITY_QUEUE
    if priority == "low":
        return LOW_PRIORITY_QUEUE
    return DEFAULT_QUEUE


class QueueClient(Protocol):
    def enqueue(
        self,
        queue_name: str,
        payload: dict[str, Any],
        countdown: int | None = None,
        job_id: str | None = None,
    ) -> str: ...


class CeleryQueueClient:
    def __init__(self, app: Celery, task_name: str = TASK_NAME) -> None:
        self.app = app
        self.task_name = task_name

    def enqueue(
        self,
        queue_name: str,
        payload: dict[str, Any],
        countdown: int | None = None,
        job_id: str | None = None,
    ) -> str:
        result = self.app.send_task(
            self.task_name,
            kwargs={"payload": payload},
            queue=queue_name,
            countdown=countdown,
            task_id=job_id or new_id(),
        )
        return result.id


class Dispatcher:
    """Creates ``waiting`` executions and hands them to the queue."""

    def __init__(
        self,
        queue: QueueClient,
        executions: ExecutionStore,
        settings: dict[str, Any] | None = None,
    ) -> None:
        self.queue = queue
        self.executions = executions
        settings = {**app_config.queue_settings(), **(settings or {})}
        self.max_retries = int(settings.get("default_max_retries", max(int(settings["tries"]) - 1, 0)))

    def dispatch(
        self,
        workflow: Workflow,
        trigger_payload: dict[str, Any],
        priority: str = "normal",
        mode: ExecutionMode = ExecutionMode.API,
    ) -> str:
        execution = Execution(
            workflow_id=workflow.id,
            mode=mode,
            input_data=dict(trigger_payload),
            max_retries=self.max_retries,
            metadata={"priority": priority},
        )
        self.executions.create(execution)
        return self._enqueue("run", workflow, execution, job_id=execution.id)

    def retry(self, workflow: Workflow, execution: Execution) -> Execution:
        """Queue a fresh attempt of a failed execution as a new record."""
        successor = execution.retry()
        self.executions.create(successor)
        self._enqueue("run", workflow, successor, job_id=successor.id)
        return successor

    def schedule_resume(self, workflow: Workflow, execution: Execution, countdown: int) -> str:
        return self._enqueue("resume", workflow, execution, countdown=countdown)

    def _enqueue(
        self,
        kind: str,
        workflow: Workflow,
        execution: Execution,
        countdown: int | None = None,
        job_id: str | None = None,
    ) -> str:
        priority = execution.metadata.get("priority", "normal")
        queue_name = queue_for_priority(priority)
        payload = {
            "kind": kind,
            "workflow_id": workflow.id,
            "workflow": workflow.model_dump(mode="json"),
            "execution_id": execution.id,
            "priority": priority,
        }
        job_id = self.queue.enqueue(queue_name, payload, countdown=countdown, job_id=job_id)
        logger.info(
            "Queued %s job %s for execution %s on %s%s",
            kind,
            job_id,
            execution.id,
            queue_name,
            f" (countdown {countdown}s)" if countdown else "",
        )
        return job_id
