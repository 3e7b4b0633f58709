from __future__ import annotations

import imaplib
import smtplib
import time
from typing import Any

import pytest

from flowcore.dispatch import Dispatcher
from flowcore.engine import WorkflowEngine
from flowcore.errors import ErrorCategory
from flowcore.execution_log import InMemoryLogSink, NodeLogger
from flowcore.models import ConnectionSpec, ExecutionMode, NodeSpec, Workflow, new_id
from flowcore.nodes import NodeRegistry, register_builtin_nodes
from flowcore.nodes.base import Node, NodeCategory, NodeExecutionContext, NodeExecutionResult
from flowcore.store import InMemoryStore

ENGINE_SETTINGS = {
    "enforce_node_timeouts": True,
    "default_node_timeout_seconds": 30,
    "reject_ambiguous_inputs": False,
    "inline_wait_limit_seconds": 0.0,
}
QUEUE_SETTINGS = {"tries": 3, "timeout_seconds": 3600, "backoff_seconds": 60, "default_max_retries": 2}


class RecorderNode(Node):
    id = "recorder"
    name = "Recorder"
    category = NodeCategory.ACTION
    description = "Records every invocation for assertions"
    tags = ("test",)

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def invoked(self) -> list[str]:
        return [node_id for node_id, _ in self.calls]

    def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        self.calls.append((context.node_id, dict(context.input_data)))
        return NodeExecutionResult.single({**context.input_data, "recorded_by": context.node_id})


class FailingNode(Node):
    """Fails with ``properties["category"]``; raises instead when ``raise`` is set."""

    id = "failing"
    name = "Failing"
    category = NodeCategory.ACTION
    tags = ("test",)

    def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        message = context.get_property("message", "boom")
        if context.get_property("raise"):
            raise RuntimeError(message)
        return NodeExecutionResult.failure(
            message,
            code="test_failure",
            category=ErrorCategory(context.get_property("category", "validation")),
        )


class FlakyNotifierNode(FailingNode):
    id = "flakyNotifier"
    name = "Flaky Notifier"
    critical = False


class SlowNode(Node):
    id = "slow"
    name = "Slow"
    category = NodeCategory.ACTION
    tags = ("test",)
    max_execution_time_seconds = 1

    def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        time.sleep(context.get_property("seconds", 0))
        return NodeExecutionResult.single(dict(context.input_data))


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, reason: str = "OK") -> None:
        self.status_code = status_code
        self.reason = reason
        self.headers = {"Content-Type": "application/json"}
        self._payload = payload

    def json(self) -> Any:
        if self._payload is None:
            raise ValueError("no json")
        return self._payload

    @property
    def text(self) -> str:
        return "" if self._payload is None else str(self._payload)


class FakeSMTP:
    """Stands in for ``smtplib.SMTP``; set ``fail_login`` to raise on login."""

    sent: list[dict[str, Any]] = []
    fail_login: Exception | None = None

    def __init__(self, host: str, port: int, timeout: float | None = None) -> None:
        self.host = host
        self.port = port

    def __enter__(self) -> FakeSMTP:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        return None

    def starttls(self) -> None:
        pass

    def login(self, username: str, password: str) -> None:
        if FakeSMTP.fail_login is not None:
            raise FakeSMTP.fail_login

    def send_message(self, message, from_addr=None, to_addrs=None) -> None:
        FakeSMTP.sent.append(
            {"subject": message["Subject"], "to": list(to_addrs), "from": from_addr, "host": self.host, "port": self.port}
        )


class FakeIMAP:
    """Stands in for ``imaplib.IMAP4_SSL`` and ``imaplib.IMAP4`` over in-memory mailboxes."""

    error = imaplib.IMAP4.error
    mailboxes: dict[str, list[bytes]] = {}
    fail_login = False
    instances: list[FakeIMAP] = []

    def __init__(self, host: str, port: int, timeout: float | None = None) -> None:
        self.host = host
        self.port = port
        self.tls = False
        self.selected: str | None = None
        self.readonly: bool | None = None
        self.searches: list[tuple[str, tuple[str, ...]]] = []
        self.flags: list[tuple[str, bytes, str]] = []
        self.expunged = False
        self.logged_out = False
        FakeIMAP.instances.append(self)

    def starttls(self) -> None:
        self.tls = True

    def login(self, user: str, password: str):
        if FakeIMAP.fail_login:
            raise imaplib.IMAP4.error("[AUTHENTICATIONFAILED] Invalid credentials")
        return "OK", [b"Logged in"]

    def select(self, mailbox: str, readonly: bool = False):
        if mailbox not in FakeIMAP.mailboxes:
            return "NO", [b"Mailbox doesn't exist"]
        self.selected = mailbox
        self.readonly = readonly
        return "OK", [str(len(FakeIMAP.mailboxes[mailbox])).encode()]

    def search(self, charset, *criteria: str):
        self.searches.append((self.selected, criteria))
        count = len(FakeIMAP.mailboxes[self.selected])
        return "OK", [" ".join(str(number) for number in range(1, count + 1)).encode()]

    def fetch(self, number: bytes, parts: str):
        raw = FakeIMAP.mailboxes[self.selected][int(number) - 1]
        return "OK", [(number + b" (BODY[] {%d}" % len(raw), raw), b")"]

    def store(self, number: bytes, command: str, flag: str):
        self.flags.append((self.selected, number, flag))
        return "OK", []

    def expunge(self):
        self.expunged = True
        return "OK", []

    def logout(self):
        self.logged_out = True
        return "BYE", []


class FakeQueue:
    def __init__(self) -> None:
        self.jobs: list[dict[str, Any]] = []

    def enqueue(
        self,
        queue_name: str,
        payload: dict[str, Any],
        countdown: int | None = None,
        job_id: str | None = None,
    ) -> str:
        job_id = job_id or new_id()
        self.jobs.append({"queue": queue_name, "payload": payload, "countdown": countdown, "job_id": job_id})
        return job_id


def make_workflow(nodes: list[tuple], connections: list[tuple] = (), **kwargs: Any) -> Workflow:
    """Build a workflow from ``(id, type, properties)`` and ``(source, target[, output[, input]])`` tuples."""
    node_specs = [
        NodeSpec(id=node[0], type=node[1], properties=node[2] if len(node) > 2 else {})
        for node in nodes
    ]
    connection_specs = []
    for connection in connections:
        source, target, *ports = connection
        connection_specs.append(
            ConnectionSpec(
                source_node_id=source,
                target_node_id=target,
                source_output=ports[0] if ports else "main",
                target_input=ports[1] if len(ports) > 1 else "main",
            )
        )
    return Workflow(nodes=node_specs, connections=connection_specs, **kwargs)


def make_context(
    node_type: str,
    properties: dict[str, Any] | None = None,
    input_data: dict[str, Any] | None = None,
    **kwargs: Any,
) -> NodeExecutionContext:
    sink = kwargs.pop("sink", None) or InMemoryLogSink()
    node_id = kwargs.pop("node_id", "node")
    return NodeExecutionContext(
        node_id=node_id,
        node_type=node_type,
        properties=dict(properties or {}),
        input_data=dict(input_data or {}),
        logger=NodeLogger(sink, "exec-1", node_id),
        execution_id="exec-1",
        workflow_id="wf-1",
        mode=kwargs.pop("mode", ExecutionMode.MANUAL),
        **kwargs,
    )


@pytest.fixture
def fake_smtp(monkeypatch) -> type[FakeSMTP]:
    FakeSMTP.sent = []
    FakeSMTP.fail_login = None
    monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
    return FakeSMTP


@pytest.fixture
def fake_imap(monkeypatch) -> type[FakeIMAP]:
    FakeIMAP.mailboxes = {}
    FakeIMAP.fail_login = False
    FakeIMAP.instances = []
    monkeypatch.setattr(imaplib, "IMAP4_SSL", FakeIMAP)
    monkeypatch.setattr(imaplib, "IMAP4", FakeIMAP)
    return FakeIMAP


@pytest.fixture
def recorder() -> RecorderNode:
    return RecorderNode()


@pytest.fixture
def registry(recorder: RecorderNode) -> NodeRegistry:
    registry = register_builtin_nodes(NodeRegistry())
    registry.register_all([recorder, FailingNode(), FlakyNotifierNode(), SlowNode()])
    return registry


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def queue() -> FakeQueue:
    return FakeQueue()


@pytest.fixture
def dispatcher(queue: FakeQueue, store: InMemoryStore) -> Dispatcher:
    return Dispatcher(queue, store, settings=QUEUE_SETTINGS)


@pytest.fixture
def engine(registry: NodeRegistry, store: InMemoryStore, dispatcher: Dispatcher) -> WorkflowEngine:
    return WorkflowEngine(
        registry,
        executions=store,
        logs=store,
        dispatcher=dispatcher,
        settings=ENGINE_SETTINGS,
    )
