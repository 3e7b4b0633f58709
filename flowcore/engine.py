from __future__ import annotations

import logging
import math
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .config import app_config
from .errors import ErrorCategory, FlowError, InvalidTransitionError, ValidationError
from .execution_log import LogSink, NodeLogger, NullLogSink
from .models import (
    ConnectionSpec,
    Execution,
    ExecutionMode,
    ExecutionResult,
    ExecutionStatus,
    ValidationResult,
    Workflow,
    utcnow,
)
from .nodes.base import ErrorInfo, Node, NodeCategory, NodeExecutionContext, NodeExecutionResult
from .nodes.registry import NodeRegistry
from .resolver import ExecutionPlan, GraphResolver

if TYPE_CHECKING:
    from .credentials import CredentialProvider
    from .dispatch import Dispatcher
    from .store import ExecutionStore

logger = logging.getLogger(__name__)

SUCCESS, FAILED, IGNORED, SKIPPED = "success", "failed", "ignored", "skipped"


@dataclass(slots=True)
class _RunState:
    outputs: dict[str, dict[str, Any]] = field(default_factory=dict)
    statuses: dict[str, str] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    failures: list[dict[str, Any]] = field(default_factory=list)
    response: dict[str, Any] | None = None

    @classmethod
    def from_checkpoint(cls, checkpoint: dict[str, Any]) -> _RunState:
        return cls(
            outputs=dict(checkpoint.get("outputs", {})),
            statuses=dict(checkpoint.get("statuses", {})),
            warnings=list(checkpoint.get("warnings", [])),
            failures=list(checkpoint.get("failures", [])),
            response=checkpoint.get("response"),
        )

    def checkpoint(self, suspended_node: str) -> dict[str, Any]:
        return {
            "outputs": self.outputs,
            "statuses": self.statuses,
            "warnings": self.warnings,
            "failures": self.failures,
            "response": self.response,
            "suspended_node": suspended_node,
        }


class WorkflowEngine:
    """Runs a validated workflow graph node by node.

    Nodes run strictly sequentially in resolver order. A node runs only when
    at least one incoming connection fired, so branches that a switch did not
    select, or that sit below a failed node, are skipped.
    """

    def __init__(
        self,
        registry: NodeRegistry,
        executions: ExecutionStore | None = None,
        logs: LogSink | None = None,
        credentials: CredentialProvider | None = None,
        dispatcher: Dispatcher | None = None,
        settings: dict[str, Any] | None = None,
    ) -> None:
        self.registry = registry
        self.settings = {**app_config.engine_settings(), **(settings or {})}
        self.resolver = GraphResolver(registry, reject_ambiguous_inputs=bool(self.settings["reject_ambiguous_inputs"]))
        self.executions = executions
        self.logs = logs or NullLogSink()
        self.credentials = credentials
        self.dispatcher = dispatcher
        self._cancel_requests: set[str] = set()
        self._cancel_lock = threading.Lock()

    def validate(self, workflow: Workflow) -> ValidationResult:
        return self.resolver.validate(workflow)

    def execute_sync(
        self,
        workflow: Workflow,
        trigger_payload: dict[str, Any] | None = None,
        mode: ExecutionMode = ExecutionMode.MANUAL,
    ) -> ExecutionResult:
        """Test execution: the caller blocks and nothing is persisted."""
        execution = Execution(
            workflow_id=workflow.id,
            mode=mode,
            input_data=dict(trigger_payload or {}),
            metadata={"test": True},
        )
        try:
            plan = self.resolver.resolve(workflow, mode)
        except ValidationError as exc:
            return ExecutionResult.failure(
                str(exc),
                ErrorCategory.VALIDATION,
                execution_id=execution.id,
                metadata={"validation_errors": exc.errors},
            )
        execution.mark_running()
        return self._run(workflow, plan, execution, _RunState(), persist=False)

    def execute(self, workflow: Workflow, execution: Execution) -> ExecutionResult:
        """Run ``execution`` (status ``waiting``) to completion or suspension.

        Raises ``ValidationError`` before the record is touched when the
        graph is invalid.
        """
        plan = self.resolver.resolve(workflow, execution.mode)
        execution.mark_running()
        self._save(execution)
        logger.info("Execution %s of workflow %s started (attempt %d)", execution.id, workflow.id, execution.retry_count + 1)
        return self._run(workflow, plan, execution, _RunState(), persist=True)

    def resume(self, workflow: Workflow, execution: Execution) -> ExecutionResult:
        checkpoint = execution.metadata.get("checkpoint")
        if not checkpoint:
            raise InvalidTransitionError(f"Execution {execution.id} has no checkpoint to resume from")
        plan = self.resolver.resolve(workflow, execution.mode)
        execution.mark_running()
        execution.metadata.pop("checkpoint", None)
        self._save(execution)
        logger.info("Execution %s resumed after node %s", execution.id, checkpoint.get("suspended_node"))
        return self._run(workflow, plan, execution, _RunState.from_checkpoint(checkpoint), persist=True)

    def dispatch_async(
        self,
        workflow: Workflow,
        trigger_payload: dict[str, Any] | None = None,
        priority: str = "normal",
        mode: ExecutionMode = ExecutionMode.API,
    ) -> str:
        if self.dispatcher is None:
            raise FlowError("No dispatcher configured for asynchronous execution")
        result = self.resolver.validate(workflow)
        if not result.valid:
            raise ValidationError(result.errors)
        return self.dispatcher.dispatch(workflow, trigger_payload or {}, priority=priority, mode=mode)

    def cancel(self, execution_id: str) -> Execution | None:
        """Cancel a running execution; the run stops before its next node."""
        if self.executions is None:
            raise FlowError("No execution store configured")
        execution = self.executions.get(execution_id)
        if execution is None:
            return None
        execution.mark_canceled()
        self.executions.update(execution)
        with self._cancel_lock:
            self._cancel_requests.add(execution_id)
        logger.info("Execution %s canceled", execution_id)
        return execution

    def _run(
        self,
        workflow: Workflow,
        plan: ExecutionPlan,
        execution: Execution,
        state: _RunState,
        *,
        persist: bool,
    ) -> ExecutionResult:
        for warning in plan.warnings:
            if warning not in state.warnings:
                state.warnings.append(warning)

        for node_id in plan.order:
            if node_id in state.statuses:
                continue
            if self._cancel_requested(execution.id, persist):
                return self._canceled(execution, state)

            spec = workflow.node(node_id)
            node = self.registry.get(spec.type)
            node_log = NodeLogger(self.logs, execution.id, node_id)

            if node.category is NodeCategory.TRIGGER and not plan.incoming[node_id]:
                if node_id != plan.seed_node_id:
                    state.statuses[node_id] = SKIPPED
                    node_log.debug("Trigger skipped, another trigger seeds this run", mode=execution.mode.value)
                    continue
                ports = {"main": dict(execution.input_data)}
            else:
                fired = [
                    connection
                    for connection in plan.incoming[node_id]
                    if connection.source_output in state.outputs.get(connection.source_node_id, {})
                ]
                if not fired:
                    state.statuses[node_id] = SKIPPED
                    node_log.debug("Node skipped, no incoming connection fired")
                    continue
                ports = self._gather_inputs(fired, state.outputs)

            context = NodeExecutionContext(
                node_id=node_id,
                node_type=spec.type,
                properties=dict(spec.properties),
                input_data=dict(ports.get("main") or next(iter(ports.values()), {})),
                logger=node_log,
                execution_id=execution.id,
                workflow_id=workflow.id,
                mode=execution.mode,
                credentials=self.credentials,
                is_test=not persist,
                ports=ports,
                as_user=execution.metadata.get("as_user"),
            )
            result = self._invoke(node, context)

            if node_id == plan.seed_node_id and "response" in result.metadata:
                state.response = result.metadata["response"]
            state.warnings.extend(f"{node_id}: {warning}" for warning in result.warnings)

            if result.success:
                state.outputs[node_id] = dict(result.outputs)
                state.statuses[node_id] = SUCCESS
                node_log.info(
                    "Node executed successfully",
                    ports=result.emitted_ports,
                    execution_time_ms=result.execution_time_ms,
                )
                if result.suspend_until is not None:
                    suspended = self._suspend(workflow, execution, state, node_id, result, persist=persist)
                    if suspended is not None:
                        return suspended
                continue

            error = result.error or ErrorInfo(message=f"Node '{node_id}' failed")
            node_log.error(
                f"Node failed: {error.message}",
                code=error.code,
                category=error.category.value,
                execution_time_ms=result.execution_time_ms,
            )
            if spec.properties.get("ignoreErrors"):
                state.statuses[node_id] = IGNORED
                if "main" in node.output_ports(spec.properties):
                    state.outputs[node_id] = {"main": dict(context.input_data)}
                state.warnings.append(f"Node '{node_id}' failed and was ignored: {error.message}")
                node_log.warning("Failure ignored (ignoreErrors)")
                continue

            state.statuses[node_id] = FAILED
            state.failures.append({"node_id": node_id, **error.to_dict()})
            if error.retryable and not node.critical:
                node_log.warning("Non-critical node failed with a retryable error, continuing other branches")
                continue
            return self._failed(execution, state, persist=persist)

        if self._cancel_requested(execution.id, persist):
            return self._canceled(execution, state)
        if state.failures:
            return self._failed(execution, state, persist=persist)

        output_data = {
            node_id: state.outputs[node_id]
            for node_id in plan.terminal_node_ids
            if node_id in state.outputs
        }
        execution.mark_success(output_data)
        execution.metadata["node_executions"] = state.statuses
        self._save(execution, persist)
        logger.info("Execution %s succeeded in %sms", execution.id, execution.duration_ms)
        return ExecutionResult.success_result(
            output_data,
            execution_id=execution.id,
            status=execution.status,
            warnings=state.warnings,
            metadata=self._result_metadata(state),
        )

    @staticmethod
    def _gather_inputs(
        connections: list[ConnectionSpec],
        outputs: dict[str, dict[str, Any]],
    ) -> dict[str, dict[str, Any]]:
        # Same-port payloads merge in connection order; later keys win.
        ports: dict[str, dict[str, Any]] = {}
        for connection in connections:
            payload = outputs[connection.source_node_id][connection.source_output]
            if not isinstance(payload, dict):
                payload = {"value": payload}
            ports.setdefault(connection.target_input, {}).update(payload)
        return ports

    def _invoke(self, node: Node, context: NodeExecutionContext) -> NodeExecutionResult:
        started = time.perf_counter()
        timeout = node.max_execution_time_seconds or self.settings["default_node_timeout_seconds"]
        try:
            if self.settings["enforce_node_timeouts"]:
                result = self._call_with_deadline(node, context, timeout)
            else:
                result = node.execute(context)
        except Exception as exc:
            logger.exception("Node %s (%s) raised", context.node_id, context.node_type)
            result = NodeExecutionResult.from_exception(exc)
        if not isinstance(result, NodeExecutionResult):
            result = NodeExecutionResult.failure(
                f"Node '{context.node_id}' returned {type(result).__name__} instead of a result",
                code="invalid_result",
                category=ErrorCategory.INTERNAL,
            )
        result.execution_time_ms = round((time.perf_counter() - started) * 1000, 2)
        return result

    @staticmethod
    def _call_with_deadline(node: Node, context: NodeExecutionContext, timeout: float) -> NodeExecutionResult:
        # The worker thread cannot be killed; an overrunning node keeps running detached.
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"flowcore-node-{context.node_id}")
        try:
            future = executor.submit(node.execute, context)
            try:
                return future.result(timeout=timeout)
            except FutureTimeoutError:
                return NodeExecutionResult.failure(
                    f"Node '{context.node_id}' exceeded its {timeout}s execution limit",
                    code="node_timeout",
                    category=ErrorCategory.TIMEOUT,
                )
        finally:
            executor.shutdown(wait=False)

    def _suspend(
        self,
        workflow: Workflow,
        execution: Execution,
        state: _RunState,
        node_id: str,
        result: NodeExecutionResult,
        *,
        persist: bool,
    ) -> ExecutionResult | None:
        resume_at = result.suspend_until
        delay = (resume_at - utcnow()).total_seconds()
        if delay <= 0:
            return None

        if not persist or self.dispatcher is None or self.executions is None:
            limit = float(self.settings["inline_wait_limit_seconds"])
            if delay <= limit:
                time.sleep(delay)
            else:
                state.warnings.append(f"Node '{node_id}' requested a {math.ceil(delay)}s wait; not applied in a synchronous run")
            return None

        execution.mark_suspended(resume_at, state.checkpoint(node_id))
        execution.metadata["node_executions"] = state.statuses
        self._save(execution)
        self.dispatcher.schedule_resume(workflow, execution, countdown=math.ceil(delay))
        NodeLogger(self.logs, execution.id, node_id).info("Execution suspended", resume_at=resume_at.isoformat())
        logger.info("Execution %s suspended at node %s until %s", execution.id, node_id, resume_at.isoformat())
        return ExecutionResult(
            success=True,
            execution_id=execution.id,
            status=execution.status,
            warnings=state.warnings,
            metadata={**self._result_metadata(state), "suspended": True, "resume_at": resume_at.isoformat()},
        )

    def _failed(self, execution: Execution, state: _RunState, *, persist: bool) -> ExecutionResult:
        first = state.failures[0]
        message = "; ".join(failure["message"] for failure in state.failures)
        category = ErrorCategory(first["category"])
        execution.mark_error(message, category)
        execution.metadata["failed_nodes"] = [failure["node_id"] for failure in state.failures]
        execution.metadata["node_executions"] = state.statuses
        self._save(execution, persist)
        logger.warning("Execution %s failed at node %s: %s", execution.id, first["node_id"], message)
        return ExecutionResult.failure(
            message,
            category,
            execution_id=execution.id,
            status=execution.status,
            warnings=state.warnings,
            metadata={**self._result_metadata(state), "failures": state.failures},
        )

    def _canceled(self, execution: Execution, state: _RunState) -> ExecutionResult:
        with self._cancel_lock:
            self._cancel_requests.discard(execution.id)
        if execution.is_running:
            execution.mark_canceled()
        logger.info("Execution %s stopped after cancellation", execution.id)
        return ExecutionResult.failure(
            "Execution canceled",
            execution_id=execution.id,
            status=ExecutionStatus.CANCELED,
            warnings=state.warnings,
            metadata=self._result_metadata(state),
        )

    def _cancel_requested(self, execution_id: str, persist: bool) -> bool:
        with self._cancel_lock:
            if execution_id in self._cancel_requests:
                return True
        if not persist or self.executions is None:
            return False
        stored = self.executions.get(execution_id)
        return stored is not None and stored.status is ExecutionStatus.CANCELED

    @staticmethod
    def _result_metadata(state: _RunState) -> dict[str, Any]:
        metadata: dict[str, Any] = {"node_executions": dict(state.statuses)}
        if state.response is not None:
            metadata["response"] = state.response
        return metadata

    def _save(self, execution: Execution, persist: bool = True) -> None:
        if persist and self.executions is not None:
            self.executions.update(execution)
