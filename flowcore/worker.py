from __future__ import annotations

import logging
from typing import Any

from celery import Celery
from celery.exceptions import SoftTimeLimitExceeded

from .bootstrap import get_runtime
from .config import app_config, configure_logging
from .dispatch import TASK_NAME
from .jobs import JobAttemptError

configure_logging()
logger = logging.getLogger(__name__)

_queue = app_config.queue_settings()

celery_app = Celery(
    "flowcore",
    broker=_queue["broker_url"],
    backend=_queue["result_backend"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_default_queue="default",
    task_acks_late=True,
    worker_prefetch_multiplier=1,
)


@celery_app.task(
    name=TASK_NAME,
    bind=True,
    max_retries=max(int(_queue["tries"]) - 1, 0),
    default_retry_delay=int(_queue["backoff_seconds"]),
    soft_time_limit=int(_queue["timeout_seconds"]),
    time_limit=int(_queue["timeout_seconds"]) + int(_queue["hard_limit_grace_seconds"]),
)
def process_workflow_execution(self, payload: dict[str, Any]) -> dict[str, Any]:
    job = get_runtime().job
    try:
        try:
            return job.handle(payload)
        except SoftTimeLimitExceeded as exc:
            raise job.interrupted(payload["execution_id"], f"Job exceeded its {job.timeout}s time limit") from exc
    except JobAttemptError as exc:
        next_payload = {**payload, "kind": "run", "execution_id": exc.next_execution_id}
        logger.info("Retrying workflow %s as execution %s", payload.get("workflow_id"), exc.next_execution_id)
        raise self.retry(kwargs={"payload": next_payload}, countdown=job.backoff, exc=exc)
