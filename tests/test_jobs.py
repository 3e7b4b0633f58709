from __future__ import annotations

import logging

import pytest
from celery.exceptions import SoftTimeLimitExceeded

from flowcore.dispatch import (
    DEFAULT_QUEUE,
    HIGH_PRIORITY_QUEUE,
    LOW_PRIORITY_QUEUE,
    CeleryQueueClient,
    queue_for_priority,
)
from flowcore.errors import ErrorCategory, JobFailureError, ValidationError, categorize_exception
from flowcore.jobs import JobAttemptError, ProcessWorkflowExecution
from flowcore.models import ExecutionMode, ExecutionStatus

from conftest import QUEUE_SETTINGS, make_workflow


@pytest.fixture
def alerts() -> list[tuple[str, str]]:
    return []


@pytest.fixture
def job(engine, store, alerts) -> ProcessWorkflowExecution:
    return ProcessWorkflowExecution(
        engine,
        store,
        workflows=store,
        settings=QUEUE_SETTINGS,
        alert_hooks=[lambda execution, message: alerts.append((execution.id, message))],
    )


def _failing_workflow(category: str):
    return make_workflow(
        [("t", "manualTrigger"), ("f", "failing", {"category": category, "message": f"{category} trouble"})],
        [("t", "f")],
    )


def _run_until_done(job, queue, payload):
    """Drive the job the way the worker does, following retry successors."""
    attempts = []
    while True:
        attempts.append(payload["execution_id"])
        try:
            return job.handle(payload), attempts
        except JobAttemptError as exc:
            payload = {**payload, "kind": "run", "execution_id": exc.next_execution_id}


@pytest.mark.parametrize(
    "priority, expected",
    [("high", HIGH_PRIORITY_QUEUE), ("low", LOW_PRIORITY_QUEUE), ("normal", DEFAULT_QUEUE), (None, DEFAULT_QUEUE), ("urgent", DEFAULT_QUEUE)],
)
def test_queue_for_priority(priority, expected):
    assert queue_for_priority(priority) == expected


class TestDispatcher:
    def test_dispatch_creates_waiting_execution_and_routes_by_priority(self, dispatcher, store, queue):
        workflow = make_workflow([("t", "manualTrigger")])
        job_id = dispatcher.dispatch(workflow, {"a": 1}, priority="high")

        job = queue.jobs[0]
        assert job["queue"] == HIGH_PRIORITY_QUEUE
        assert job["job_id"] == job_id
        assert job["payload"]["kind"] == "run"
        assert job["payload"]["workflow"]["id"] == workflow.id
        execution = store.get(job["payload"]["execution_id"])
        assert execution.status is ExecutionStatus.WAITING
        assert execution.input_data == {"a": 1}
        assert execution.max_retries == 2
        assert execution.mode is ExecutionMode.API

    def test_engine_dispatch_async_uses_dispatcher(self, engine, queue):
        workflow = make_workflow([("t", "manualTrigger")])
        job_id = engine.dispatch_async(workflow, {"b": 2}, priority="low")
        assert queue.jobs[0]["queue"] == LOW_PRIORITY_QUEUE
        assert queue.jobs[0]["job_id"] == job_id

    def test_engine_dispatch_async_rejects_invalid_graph_before_queueing(self, engine, store, queue):
        workflow = make_workflow([("a", "recorder")], [("a", "a")])

        with pytest.raises(ValidationError) as excinfo:
            engine.dispatch_async(workflow, {"x": 1})

        assert "Cycle detected: a -> a" in excinfo.value.errors
        assert store.list_for_workflow(workflow.id) == []
        assert queue.jobs == []

    def test_celery_client_sends_named_task(self):
        class FakeCelery:
            def __init__(self):
                self.sent = []

            def send_task(self, name, kwargs=None, queue=None, countdown=None, task_id=None):
                self.sent.append((name, kwargs, queue, countdown, task_id))

                class Result:
                    id = task_id

                return Result()

        app = FakeCelery()
        job_id = CeleryQueueClient(app).enqueue("default", {"x": 1}, countdown=5, job_id="job-1")
        assert job_id == "job-1"
        assert app.sent == [("flowcore.process_workflow_execution", {"payload": {"x": 1}}, "default", 5, "job-1")]


class TestProcessWorkflowExecution:
    def test_settings(self, job):
        assert (job.tries, job.timeout, job.backoff) == (3, 3600, 60)

    def test_successful_run(self, job, dispatcher, queue, store, recorder):
        workflow = make_workflow([("t", "manualTrigger"), ("a", "recorder")], [("t", "a")])
        dispatcher.dispatch(workflow, {"x": 1})

        outcome = job.handle(queue.jobs[0]["payload"])

        assert outcome["status"] == "success"
        assert outcome["result"]["output_data"] == {"a": {"main": {"x": 1, "recorded_by": "a"}}}
        assert store.get(outcome["execution_id"]).status is ExecutionStatus.SUCCESS

    def test_retryable_failure_creates_successor(self, job, dispatcher, queue, store):
        workflow = _failing_workflow("network")
        dispatcher.dispatch(workflow, {})
        payload = queue.jobs[0]["payload"]

        with pytest.raises(JobAttemptError) as excinfo:
            job.handle(payload)

        first = store.get(payload["execution_id"])
        successor = store.get(excinfo.value.next_execution_id)
        assert first.status is ExecutionStatus.ERROR
        assert successor.status is ExecutionStatus.WAITING
        assert successor.retry_count == 1
        assert successor.metadata["retry_of"] == first.id
        assert excinfo.value.category is ErrorCategory.NETWORK

    def test_retries_are_exhausted_after_three_attempts(self, job, dispatcher, queue, store):
        workflow = _failing_workflow("timeout")
        dispatcher.dispatch(workflow, {})

        with pytest.raises(JobFailureError) as excinfo:
            _run_until_done(job, queue, queue.jobs[0]["payload"])

        error = excinfo.value
        assert str(error) == "Job failed after 3 attempts: timeout trouble"
        assert error.attempts == 3
        assert error.category is ErrorCategory.TIMEOUT
        executions = store.list_for_workflow(workflow.id)
        assert [execution.retry_count for execution in executions] == [0, 1, 2]
        assert all(execution.status is ExecutionStatus.ERROR for execution in executions)
        assert store.get(error.execution_id).metadata["permanently_failed"] is True

    def test_fatal_failure_is_not_retried(self, job, dispatcher, queue, store):
        workflow = _failing_workflow("authentication")
        dispatcher.dispatch(workflow, {})

        with pytest.raises(JobFailureError) as excinfo:
            job.handle(queue.jobs[0]["payload"])

        assert excinfo.value.attempts == 1
        assert len(store.list_for_workflow(workflow.id)) == 1

    def test_critical_failure_alerts(self, job, dispatcher, queue, alerts, caplog):
        workflow = _failing_workflow("critical")
        dispatcher.dispatch(workflow, {})

        with caplog.at_level(logging.CRITICAL, logger="flowcore.jobs"):
            with pytest.raises(JobFailureError) as excinfo:
                job.handle(queue.jobs[0]["payload"])

        assert alerts == [(excinfo.value.execution_id, "Job failed after 1 attempts: critical trouble")]
        assert any(record.levelno == logging.CRITICAL for record in caplog.records)

    def test_failing_alert_hook_does_not_mask_the_failure(self, engine, store, dispatcher, queue):
        def broken_hook(execution, message):
            raise RuntimeError("pager offline")

        job = ProcessWorkflowExecution(engine, store, settings=QUEUE_SETTINGS, alert_hooks=[broken_hook])
        dispatcher.dispatch(_failing_workflow("critical"), {})
        with pytest.raises(JobFailureError):
            job.handle(queue.jobs[0]["payload"])

    def test_completed_execution_is_skipped(self, job, dispatcher, queue, recorder):
        workflow = make_workflow([("t", "manualTrigger"), ("a", "recorder")], [("t", "a")])
        dispatcher.dispatch(workflow, {})
        payload = queue.jobs[0]["payload"]
        job.handle(payload)

        again = job.handle(payload)

        assert again["status"] == "success"
        assert "result" not in again
        assert recorder.invoked() == ["a"]

    def test_resume_job_continues_suspended_execution(self, job, dispatcher, queue, store, recorder):
        workflow = make_workflow(
            [("t", "manualTrigger"), ("w", "wait", {"waitTime": 10}), ("after", "recorder")],
            [("t", "w"), ("w", "after")],
        )
        dispatcher.dispatch(workflow, {})
        suspended = job.handle(queue.jobs[0]["payload"])
        assert suspended["status"] == "waiting"

        resume = queue.jobs[-1]
        assert resume["payload"]["kind"] == "resume"
        assert resume["countdown"] == 10

        finished = job.handle(resume["payload"])
        assert finished["status"] == "success"
        assert recorder.invoked() == ["after"]

    def test_invalid_workflow_fails_permanently(self, job, dispatcher, queue, store):
        workflow = make_workflow([("a", "recorder")])
        dispatcher.dispatch(workflow, {})

        with pytest.raises(JobFailureError) as excinfo:
            job.handle(queue.jobs[0]["payload"])

        assert excinfo.value.category is ErrorCategory.VALIDATION
        stored = store.get(excinfo.value.execution_id)
        assert stored.status is ExecutionStatus.ERROR
        assert stored.metadata["error_category"] == "validation"

    def test_missing_execution(self, job):
        with pytest.raises(JobFailureError, match="not found"):
            job.handle({"execution_id": "nope", "workflow_id": "wf"})

    def test_workflow_is_loaded_from_store_when_not_in_payload(self, job, dispatcher, queue, store, recorder):
        workflow = make_workflow([("t", "manualTrigger"), ("a", "recorder")], [("t", "a")])
        store.save_workflow(workflow)
        dispatcher.dispatch(workflow, {})
        payload = {key: value for key, value in queue.jobs[0]["payload"].items() if key != "workflow"}

        assert job.handle(payload)["status"] == "success"


class TestInterruptedAttempts:
    def _stranded(self, dispatcher, queue, store, retry_count=0):
        dispatcher.dispatch(make_workflow([("t", "manualTrigger"), ("a", "recorder")], [("t", "a")]), {})
        payload = queue.jobs[0]["payload"]
        execution = store.get(payload["execution_id"])
        execution.retry_count = retry_count
        execution.mark_running()
        store.update(execution)
        return payload

    def test_redelivered_job_retries_the_stranded_run(self, job, dispatcher, queue, store, recorder):
        payload = self._stranded(dispatcher, queue, store)

        with pytest.raises(JobAttemptError) as excinfo:
            job.handle(payload)

        stranded = store.get(payload["execution_id"])
        assert stranded.status is ExecutionStatus.ERROR
        assert stranded.metadata["error_category"] == "timeout"
        assert store.get(excinfo.value.next_execution_id).status is ExecutionStatus.WAITING
        assert recorder.invoked() == []

        outcome = job.handle({**payload, "execution_id": excinfo.value.next_execution_id})
        assert outcome["status"] == "success"

    def test_stranded_last_attempt_fails_permanently(self, job, dispatcher, queue, store):
        payload = self._stranded(dispatcher, queue, store, retry_count=2)

        with pytest.raises(JobFailureError) as excinfo:
            job.handle(payload)

        assert str(excinfo.value) == "Job failed after 3 attempts: Attempt was interrupted before it finished"
        stranded = store.get(payload["execution_id"])
        assert stranded.status is ExecutionStatus.ERROR
        assert stranded.metadata["permanently_failed"] is True

    def test_time_limit_finalizes_the_running_row(self, job, dispatcher, queue, store):
        payload = self._stranded(dispatcher, queue, store)

        error = job.interrupted(payload["execution_id"], "Job exceeded its 3600s time limit")

        assert isinstance(error, JobAttemptError)
        assert store.get(payload["execution_id"]).error_message == "Job exceeded its 3600s time limit"

    def test_finished_row_is_left_alone(self, job, dispatcher, queue, store):
        dispatcher.dispatch(make_workflow([("t", "manualTrigger")]), {})
        payload = queue.jobs[0]["payload"]
        job.handle(payload)

        error = job.interrupted(payload["execution_id"], "late")

        assert isinstance(error, JobFailureError)
        assert store.get(payload["execution_id"]).status is ExecutionStatus.SUCCESS


def test_soft_time_limit_is_a_timeout():
    assert categorize_exception(SoftTimeLimitExceeded()) is ErrorCategory.TIMEOUT
