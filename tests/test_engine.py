from __future__ import annotations

from datetime import timedelta
from typing import Any

import pytest

from flowcore.credentials import MappingCredentialProvider
from flowcore.engine import WorkflowEngine
from flowcore.errors import ErrorCategory, InvalidTransitionError, ValidationError
from flowcore.execution_log import InMemoryLogSink
from flowcore.models import Execution, ExecutionMode, ExecutionStatus, LogLevel, utcnow
from flowcore.nodes.base import Node, NodeCategory, NodeExecutionContext, NodeExecutionResult

from conftest import ENGINE_SETTINGS, FakeResponse, make_workflow


def _persisted_run(engine: WorkflowEngine, store, workflow, payload=None, **kwargs) -> tuple[Execution, Any]:
    execution = Execution(workflow_id=workflow.id, input_data=payload or {}, **kwargs)
    store.create(execution)
    return execution, engine.execute(workflow, execution)


class TestWebhookToHttp:
    def test_response_envelope_reaches_terminal_output(self, engine, monkeypatch):
        calls = []

        def fake_request(method, url, **kwargs):
            calls.append((method, url, kwargs))
            return FakeResponse(200, {"ok": True})

        monkeypatch.setattr("flowcore.nodes.actions.requests.request", fake_request)
        workflow = make_workflow(
            [
                ("W", "webhookTrigger", {"responseCode": 202, "responseBody": {"accepted": True}}),
                ("H", "httpRequest", {"url": "https://api.example.com/orders", "method": "POST"}),
            ],
            [("W", "H")],
        )

        result = engine.execute_sync(workflow, {"body": {"order": 7}, "headers": {"X-Trace": "t"}}, ExecutionMode.WEBHOOK)

        assert result.success is True
        assert result.status is ExecutionStatus.SUCCESS
        response = result.output_data["H"]["main"]
        assert response["status"] == 200
        assert response["body"] == {"ok": True}
        method, url, kwargs = calls[0]
        assert (method, url) == ("POST", "https://api.example.com/orders")
        assert kwargs["json"]["body"] == {"order": 7}
        assert result.metadata["response"]["code"] == 202
        assert result.metadata["node_executions"] == {"W": "success", "H": "success"}

    def test_http_error_status_routes_to_error_port(self, engine, recorder, monkeypatch):
        monkeypatch.setattr(
            "flowcore.nodes.actions.requests.request",
            lambda method, url, **kwargs: FakeResponse(404, {"error": "missing"}, "Not Found"),
        )
        workflow = make_workflow(
            [
                ("t", "manualTrigger"),
                ("h", "httpRequest", {"url": "https://api.example.com/x"}),
                ("ok", "recorder"),
                ("handler", "recorder"),
            ],
            [("t", "h"), ("h", "ok"), ("h", "handler", "error")],
        )

        result = engine.execute_sync(workflow)

        assert result.success is True
        assert recorder.invoked() == ["handler"]
        assert result.metadata["node_executions"]["ok"] == "skipped"


class TestLinearPipelines:
    def test_recorders_run_in_order_and_see_upstream_output(self, engine, recorder):
        workflow = make_workflow(
            [("t", "manualTrigger"), ("a", "recorder"), ("b", "recorder")],
            [("t", "a"), ("a", "b")],
        )
        result = engine.execute_sync(workflow, {"x": 1})

        assert result.success is True
        assert recorder.invoked() == ["a", "b"]
        assert recorder.calls[1][1] == {"x": 1, "recorded_by": "a"}
        assert result.output_data == {"b": {"main": {"x": 1, "recorded_by": "b"}}}

    def test_email_fan_out(self, registry, store, fake_smtp):
        credentials = MappingCredentialProvider(
            {"smtp": {"host": "smtp.example.com", "port": 587, "username": "bot", "password": "pw"}}
        )
        engine = WorkflowEngine(registry, executions=store, logs=store, credentials=credentials, settings=ENGINE_SETTINGS)
        workflow = make_workflow(
            [
                ("t", "manualTrigger"),
                ("ops", "email", {"to": "ops@example.com", "subject": "Order {{id}}", "body": "b", "credential": "smtp"}),
                ("sales", "email", {"to": "sales@example.com", "subject": "Order {{id}}", "body": "b", "credential": "smtp"}),
            ],
            [("t", "ops"), ("t", "sales")],
        )

        result = engine.execute_sync(workflow, {"id": 42})

        assert result.success is True
        assert [mail["to"] for mail in fake_smtp.sent] == [["ops@example.com"], ["sales@example.com"]]
        assert {mail["subject"] for mail in fake_smtp.sent} == {"Order 42"}
        assert set(result.output_data) == {"ops", "sales"}


class TestFailures:
    def test_fatal_failure_persists_error_row(self, engine, store):
        workflow = make_workflow(
            [("t", "manualTrigger"), ("f", "failing", {"category": "validation", "message": "bad input"})],
            [("t", "f")],
        )
        execution, result = _persisted_run(engine, store, workflow, max_retries=2)

        assert result.success is False
        assert result.error_category is ErrorCategory.VALIDATION
        assert result.metadata["failures"][0]["node_id"] == "f"
        stored = store.get(execution.id)
        assert stored.status is ExecutionStatus.ERROR
        assert stored.error_message == "bad input"
        assert stored.retry_count == 0
        assert stored.can_be_retried() is True
        assert stored.retry().retry_count == 1

    def test_exceptions_become_structured_failures(self, engine):
        workflow = make_workflow(
            [("t", "manualTrigger"), ("f", "failing", {"raise": True, "message": "kaboom"})],
            [("t", "f")],
        )
        result = engine.execute_sync(workflow)

        assert result.success is False
        assert result.error_message == "kaboom"
        assert result.error_category is ErrorCategory.INTERNAL
        assert result.metadata["failures"][0]["code"] == "RuntimeError"

    def test_critical_failure_aborts_and_skips_downstream(self, engine, recorder):
        workflow = make_workflow(
            [("t", "manualTrigger"), ("f", "failing", {"category": "network"}), ("after", "recorder"), ("side", "recorder")],
            [("t", "f"), ("f", "after"), ("t", "side")],
        )
        result = engine.execute_sync(workflow)

        assert result.success is False
        assert result.error_category is ErrorCategory.NETWORK
        assert recorder.invoked() == []
        assert "after" not in result.metadata["node_executions"]

    def test_non_critical_retryable_failure_lets_other_branches_finish(self, engine, recorder):
        workflow = make_workflow(
            [
                ("t", "manualTrigger"),
                ("notify", "flakyNotifier", {"category": "network", "message": "smtp down"}),
                ("after", "recorder"),
                ("side", "recorder"),
            ],
            [("t", "notify"), ("notify", "after"), ("t", "side")],
        )
        result = engine.execute_sync(workflow)

        assert recorder.invoked() == ["side"]
        assert result.success is False
        assert result.status is ExecutionStatus.ERROR
        assert result.error_message == "smtp down"
        assert result.metadata["node_executions"]["after"] == "skipped"

    def test_non_critical_fatal_failure_still_aborts(self, engine, recorder):
        workflow = make_workflow(
            [("t", "manualTrigger"), ("notify", "flakyNotifier", {"category": "authentication"}), ("side", "recorder")],
            [("t", "notify"), ("t", "side")],
        )
        result = engine.execute_sync(workflow)

        assert result.success is False
        assert recorder.invoked() == []

    def test_ignore_errors_passes_input_through(self, engine, recorder):
        workflow = make_workflow(
            [("t", "manualTrigger"), ("f", "failing", {"ignoreErrors": True}), ("after", "recorder")],
            [("t", "f"), ("f", "after")],
        )
        result = engine.execute_sync(workflow, {"k": "v"})

        assert result.success is True
        assert recorder.calls == [("after", {"k": "v"})]
        assert result.metadata["node_executions"]["f"] == "ignored"
        assert any("failed and was ignored" in warning for warning in result.warnings)

    def test_slow_node_times_out(self, engine):
        workflow = make_workflow([("t", "manualTrigger"), ("s", "slow", {"seconds": 3})], [("t", "s")])
        result = engine.execute_sync(workflow)

        assert result.success is False
        assert result.error_category is ErrorCategory.TIMEOUT
        assert "exceeded its 1s execution limit" in result.error_message

    def test_invalid_graph_fails_without_running(self, engine, recorder):
        workflow = make_workflow([("a", "recorder")])
        result = engine.execute_sync(workflow)

        assert result.success is False
        assert result.error_category is ErrorCategory.VALIDATION
        assert result.metadata["validation_errors"]
        assert recorder.invoked() == []

    def test_execute_rejects_invalid_graph_before_touching_record(self, engine, store):
        workflow = make_workflow([("a", "recorder")])
        execution = Execution(workflow_id=workflow.id)
        store.create(execution)

        with pytest.raises(ValidationError):
            engine.execute(workflow, execution)
        assert store.get(execution.id).status is ExecutionStatus.WAITING


class TestRouting:
    def test_switch_only_runs_selected_branch(self, engine, recorder):
        workflow = make_workflow(
            [
                ("t", "manualTrigger"),
                ("s", "switch", {"condition": "priority > 2"}),
                ("urgent", "recorder"),
                ("normal", "recorder"),
            ],
            [("t", "s"), ("s", "urgent", "true"), ("s", "normal", "false")],
        )
        engine.execute_sync(workflow, {"priority": 5})
        assert recorder.invoked() == ["urgent"]

    def test_merge_later_connection_wins(self, engine, recorder):
        workflow = make_workflow(
            [
                ("t", "manualTrigger"),
                ("a", "set", {"values": [{"name": "who", "value": "a"}, {"name": "from_a", "value": 1}]}),
                ("b", "set", {"values": [{"name": "who", "value": "b"}]}),
                ("m", "recorder"),
            ],
            [("t", "a"), ("t", "b"), ("a", "m"), ("b", "m")],
        )
        result = engine.execute_sync(workflow)

        assert result.success is True
        merged = recorder.calls[0][1]
        assert merged["who"] == "b"
        assert merged["from_a"] == 1
        assert any("receives 2 connections" in warning for warning in result.warnings)

    def test_other_triggers_are_skipped(self, engine, recorder):
        workflow = make_workflow(
            [("manual", "manualTrigger"), ("hook", "webhookTrigger"), ("work", "recorder")],
            [("manual", "work"), ("hook", "work")],
        )
        result = engine.execute_sync(workflow, {"n": 1}, ExecutionMode.MANUAL)

        assert result.metadata["node_executions"]["hook"] == "skipped"
        assert recorder.calls == [("work", {"n": 1})]


class TestWait:
    def test_sync_run_does_not_sleep_past_inline_limit(self, engine, recorder):
        workflow = make_workflow(
            [("t", "manualTrigger"), ("w", "wait", {"waitTime": 30}), ("after", "recorder")],
            [("t", "w"), ("w", "after")],
        )
        result = engine.execute_sync(workflow)

        assert result.success is True
        assert recorder.invoked() == ["after"]
        assert any("requested a 30s wait" in warning for warning in result.warnings)

    def test_async_run_suspends_and_resumes(self, engine, store, queue, recorder):
        workflow = make_workflow(
            [("t", "manualTrigger"), ("before", "recorder"), ("w", "wait", {"waitTime": 2, "timeUnit": "minutes"}), ("after", "recorder")],
            [("t", "before"), ("before", "w"), ("w", "after")],
        )
        execution, result = _persisted_run(engine, store, workflow, {"x": 1})

        assert result.success is True
        assert result.status is ExecutionStatus.WAITING
        assert result.metadata["suspended"] is True
        assert recorder.invoked() == ["before"]
        job = queue.jobs[-1]
        assert job["payload"]["kind"] == "resume"
        assert job["payload"]["execution_id"] == execution.id
        assert 119 <= job["countdown"] <= 120

        suspended = store.get(execution.id)
        assert suspended.status is ExecutionStatus.WAITING
        assert suspended.metadata["checkpoint"]["suspended_node"] == "w"

        resumed = engine.resume(workflow, suspended)

        assert resumed.success is True
        assert recorder.invoked() == ["before", "after"]
        final = store.get(execution.id)
        assert final.status is ExecutionStatus.SUCCESS
        assert "checkpoint" not in final.metadata
        assert final.output_data["after"]["main"]["wait"]["waitedFor"] == 120

    def test_resume_without_checkpoint_is_rejected(self, engine):
        workflow = make_workflow([("t", "manualTrigger")])
        with pytest.raises(InvalidTransitionError):
            engine.resume(workflow, Execution(workflow_id=workflow.id))


class _CancelingNode(Node):
    id = "canceler"
    name = "Canceler"
    category = NodeCategory.ACTION

    def __init__(self) -> None:
        self.engine: WorkflowEngine | None = None

    def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        self.engine.cancel(context.execution_id)
        return NodeExecutionResult.single(dict(context.input_data))


class TestCancel:
    def test_cancel_stops_before_next_node(self, engine, registry, store, recorder):
        canceler = _CancelingNode()
        canceler.engine = engine
        registry.register(canceler)
        workflow = make_workflow(
            [("t", "manualTrigger"), ("c", "canceler"), ("after", "recorder")],
            [("t", "c"), ("c", "after")],
        )
        execution, result = _persisted_run(engine, store, workflow)

        assert result.success is False
        assert result.status is ExecutionStatus.CANCELED
        assert recorder.invoked() == []
        assert store.get(execution.id).status is ExecutionStatus.CANCELED

    def test_cancel_requires_a_running_execution(self, engine, store):
        execution = Execution(workflow_id="wf")
        store.create(execution)
        with pytest.raises(InvalidTransitionError):
            engine.cancel(execution.id)
        assert engine.cancel("missing") is None


class TestLogging:
    def test_each_node_writes_execution_logs(self, registry):
        sink = InMemoryLogSink()
        engine = WorkflowEngine(registry, logs=sink, settings=ENGINE_SETTINGS)
        workflow = make_workflow(
            [("t", "manualTrigger"), ("f", "failing", {"ignoreErrors": True})],
            [("t", "f")],
        )
        result = engine.execute_sync(workflow)

        entries = sink.for_execution(result.execution_id)
        assert {entry.node_id for entry in entries} == {"t", "f"}
        failed = sink.for_node(result.execution_id, "f")
        assert [entry.level for entry in failed] == [LogLevel.ERROR, LogLevel.WARNING]
        assert failed[0].context["category"] == "validation"
        assert "execution_time_ms" in sink.for_node(result.execution_id, "t")[0].context

    def test_suspend_until_in_the_past_is_ignored(self, engine, registry, recorder):
        class PastWait(Node):
            id = "pastWait"
            name = "Past wait"
            category = NodeCategory.LOGIC

            def execute(self, context):
                return NodeExecutionResult.single(dict(context.input_data), suspend_until=utcnow() - timedelta(seconds=1))

        registry.register(PastWait())
        workflow = make_workflow(
            [("t", "manualTrigger"), ("p", "pastWait"), ("after", "recorder")],
            [("t", "p"), ("p", "after")],
        )
        result = engine.execute_sync(workflow)
        assert result.success is True
        assert result.warnings == []
        assert recorder.invoked() == ["after"]
