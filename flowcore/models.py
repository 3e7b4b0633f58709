from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .errors import ErrorCategory, InvalidTransitionError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class ExecutionStatus(str, Enum):
    WAITING = "waiting"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    CANCELED = "canceled"


class ExecutionMode(str, Enum):
    MANUAL = "manual"
    WEBHOOK = "webhook"
    SCHEDULE = "schedule"
    API = "api"
    ERROR = "error"


class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


TERMINAL_STATUSES = frozenset({ExecutionStatus.SUCCESS, ExecutionStatus.ERROR, ExecutionStatus.CANCELED})


class NodeSpec(BaseModel):
    id: str
    type: str
    name: str | None = None
    properties: dict[str, Any] = Field(default_factory=dict)


class ConnectionSpec(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    source_node_id: str = Field(alias="sourceNodeId")
    source_output: str = Field(default="main", alias="sourceOutput")
    target_node_id: str = Field(alias="targetNodeId")
    target_input: str = Field(default="main", alias="targetInput")

    @model_validator(mode="before")
    @classmethod
    def _accept_short_form(cls, data: Any) -> Any:
        # Stored graphs also use {"source": ..., "target": ...}.
        if isinstance(data, dict):
            data = dict(data)
            if "source" in data and "sourceNodeId" not in data and "source_node_id" not in data:
                data["sourceNodeId"] = data.pop("source")
            if "target" in data and "targetNodeId" not in data and "target_node_id" not in data:
                data["targetNodeId"] = data.pop("target")
        return data


class Workflow(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str = "Untitled workflow"
    nodes: list[NodeSpec] = Field(default_factory=list)
    connections: list[ConnectionSpec] = Field(default_factory=list)
    settings: dict[str, Any] = Field(default_factory=dict)
    active: bool = False
    created_at: datetime = Field(default_factory=utcnow)

    def node(self, node_id: str) -> NodeSpec | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None


class Execution(BaseModel):
    id: str = Field(default_factory=new_id)
    workflow_id: str
    status: ExecutionStatus = ExecutionStatus.WAITING
    mode: ExecutionMode = ExecutionMode.API
    started_at: datetime | None = None
    finished_at: datetime | None = None
    duration_ms: int | None = None
    input_data: dict[str, Any] = Field(default_factory=dict)
    output_data: dict[str, Any] | None = None
    error_message: str | None = None
    retry_count: int = 0
    max_retries: int = 0
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def is_running(self) -> bool:
        return self.status is ExecutionStatus.RUNNING

    @property
    def is_completed(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def has_failed(self) -> bool:
        return self.status is ExecutionStatus.ERROR

    def can_be_retried(self) -> bool:
        return self.has_failed and self.retry_count < self.max_retries

    def mark_running(self) -> None:
        if self.status is not ExecutionStatus.WAITING:
            raise InvalidTransitionError(f"Cannot start execution {self.id} from status '{self.status.value}'")
        self.status = ExecutionStatus.RUNNING
        if self.started_at is None:
            self.started_at = utcnow()
        self.metadata.pop("resume_at", None)

    def mark_success(self, output_data: dict[str, Any] | None = None) -> None:
        self._finish(ExecutionStatus.SUCCESS)
        self.output_data = output_data

    def mark_error(self, message: str | None, category: ErrorCategory | None = None) -> None:
        self._finish(ExecutionStatus.ERROR)
        self.error_message = message
        if category is not None:
            self.metadata["error_category"] = category.value

    def mark_canceled(self) -> None:
        self._finish(ExecutionStatus.CANCELED)

    def mark_suspended(self, resume_at: datetime, checkpoint: dict[str, Any]) -> None:
        if self.status is not ExecutionStatus.RUNNING:
            raise InvalidTransitionError(f"Cannot suspend execution {self.id} from status '{self.status.value}'")
        self.status = ExecutionStatus.WAITING
        self.metadata["resume_at"] = resume_at.isoformat()
        self.metadata["checkpoint"] = checkpoint

    def retry(self) -> Execution:
        """Return a fresh ``waiting`` execution for the next attempt.

        The failed record is left untouched; the new one carries the same
        input and an incremented ``retry_count``.
        """
        if not self.can_be_retried():
            raise InvalidTransitionError(
                f"Execution {self.id} cannot be retried "
                f"(status={self.status.value}, retry_count={self.retry_count}, max_retries={self.max_retries})"
            )
        metadata = {key: value for key, value in self.metadata.items() if key not in _RUN_SCOPED_METADATA}
        metadata["retry_of"] = self.id
        return Execution(
            workflow_id=self.workflow_id,
            mode=self.mode,
            input_data=dict(self.input_data),
            retry_count=self.retry_count + 1,
            max_retries=self.max_retries,
            metadata=metadata,
        )

    def _finish(self, status: ExecutionStatus) -> None:
        if self.status is not ExecutionStatus.RUNNING:
            raise InvalidTransitionError(
                f"Cannot move execution {self.id} from '{self.status.value}' to '{status.value}'"
            )
        self.status = status
        self.finished_at = utcnow()
        if self.started_at is not None:
            self.duration_ms = int((self.finished_at - self.started_at).total_seconds() * 1000)


_RUN_SCOPED_METADATA = frozenset(
    {
        "checkpoint",
        "resume_at",
        "error_category",
        "node_executions",
        "job_id",
        "failed_nodes",
        "permanently_failed",
        "error_workflow_job",
    }
)


class ExecutionLog(BaseModel):
    model_config = ConfigDict(frozen=True)

    execution_id: str
    node_id: str
    level: LogLevel = LogLevel.INFO
    message: str
    context: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)


class ExecutionResult(BaseModel):
    success: bool
    output_data: dict[str, Any] = Field(default_factory=dict)
    error_message: str | None = None
    error_category: ErrorCategory | None = None
    execution_id: str | None = None
    status: ExecutionStatus | None = None
    warnings: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def success_result(cls, output_data: dict[str, Any], **kwargs: Any) -> ExecutionResult:
        return cls(success=True, output_data=output_data, **kwargs)

    @classmethod
    def failure(
        cls,
        message: str,
        category: ErrorCategory | None = None,
        **kwargs: Any,
    ) -> ExecutionResult:
        return cls(success=False, error_message=message, error_category=category, **kwargs)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class ValidationResult(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class RunRequest(BaseModel):
    input_data: dict[str, Any] = Field(default_factory=dict)
    priority: str = "normal"
    mode: ExecutionMode = ExecutionMode.API
