from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar

from ..errors import ErrorCategory, NodeExecutionError, categorize_exception
from ..execution_log import NodeLogger
from ..models import ExecutionMode, LogLevel

if TYPE_CHECKING:
    from ..credentials import CredentialProvider


class NodeCategory(str, Enum):
    TRIGGER = "trigger"
    ACTION = "action"
    TRANSFORMER = "transformer"
    LOGIC = "logic"
    DATA = "data"
    CUSTOM = "custom"


PortMap = dict[str, dict[str, Any]]


@dataclass(slots=True, frozen=True)
class NodeDescriptor:
    id: str
    name: str
    version: str
    category: NodeCategory
    icon: str
    description: str
    properties: dict[str, Any]
    inputs: PortMap
    outputs: PortMap
    tags: tuple[str, ...]
    max_execution_time_seconds: int
    supports_async: bool
    priority: int
    critical: bool
    trigger_modes: tuple[ExecutionMode, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "version": self.version,
            "category": self.category.value,
            "icon": self.icon,
            "description": self.description,
            "properties": self.properties,
            "inputs": self.inputs,
            "outputs": self.outputs,
            "tags": list(self.tags),
            "max_execution_time": self.max_execution_time_seconds,
            "supports_async": self.supports_async,
            "priority": self.priority,
            "critical": self.critical,
            "trigger_modes": [mode.value for mode in self.trigger_modes],
        }


@dataclass(slots=True)
class ErrorInfo:
    message: str
    code: str = "node_error"
    category: ErrorCategory = ErrorCategory.INTERNAL

    @property
    def retryable(self) -> bool:
        return self.category.is_retryable

    def to_dict(self) -> dict[str, Any]:
        return {"message": self.message, "code": self.code, "category": self.category.value}


@dataclass(slots=True)
class NodeExecutionResult:
    success: bool
    outputs: dict[str, Any] = field(default_factory=dict)
    error: ErrorInfo | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    suspend_until: datetime | None = None
    execution_time_ms: float = 0.0

    @classmethod
    def ok(
        cls,
        outputs: dict[str, Any] | None = None,
        *,
        metadata: dict[str, Any] | None = None,
        warnings: list[str] | None = None,
        suspend_until: datetime | None = None,
    ) -> NodeExecutionResult:
        return cls(
            success=True,
            outputs=dict(outputs or {}),
            metadata=dict(metadata or {}),
            warnings=list(warnings or []),
            suspend_until=suspend_until,
        )

    @classmethod
    def single(cls, payload: Any, port: str = "main", **kwargs: Any) -> NodeExecutionResult:
        return cls.ok({port: payload}, **kwargs)

    @classmethod
    def failure(
        cls,
        message: str,
        *,
        code: str = "node_error",
        category: ErrorCategory = ErrorCategory.INTERNAL,
        metadata: dict[str, Any] | None = None,
    ) -> NodeExecutionResult:
        return cls(
            success=False,
            error=ErrorInfo(message=message, code=code, category=category),
            metadata=dict(metadata or {}),
        )

    @classmethod
    def from_exception(cls, exc: BaseException, metadata: dict[str, Any] | None = None) -> NodeExecutionResult:
        code = exc.code if isinstance(exc, NodeExecutionError) else type(exc).__name__
        return cls.failure(str(exc) or type(exc).__name__, code=code, category=categorize_exception(exc), metadata=metadata)

    @property
    def error_message(self) -> str | None:
        return self.error.message if self.error else None

    @property
    def emitted_ports(self) -> list[str]:
        return list(self.outputs)

    def add_warning(self, warning: str) -> NodeExecutionResult:
        self.warnings.append(warning)
        return self

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["error"] = self.error.to_dict() if self.error else None
        data["suspend_until"] = self.suspend_until.isoformat() if self.suspend_until else None
        return data


@dataclass(slots=True)
class NodeExecutionContext:
    node_id: str
    node_type: str
    properties: dict[str, Any]
    input_data: dict[str, Any]
    logger: NodeLogger
    execution_id: str
    workflow_id: str
    mode: ExecutionMode = ExecutionMode.MANUAL
    credentials: CredentialProvider | None = None
    is_test: bool = False
    ports: dict[str, dict[str, Any]] = field(default_factory=dict)
    as_user: str | None = None

    def get_property(self, key: str, default: Any = None) -> Any:
        value = self.properties.get(key, default)
        return default if value is None else value

    def credential(self, credential_ref: str) -> dict[str, str]:
        if self.credentials is None:
            raise NodeExecutionError(
                "No credential provider configured",
                code="credentials_unavailable",
                category=ErrorCategory.CONFIGURATION,
            )
        try:
            return self.credentials.resolve(credential_ref, self.as_user)
        except LookupError as exc:
            raise NodeExecutionError(str(exc), code="credential_not_found", category=ErrorCategory.AUTHENTICATION) from exc

    def log(self, message: str, level: LogLevel | str = LogLevel.INFO, **context: Any) -> None:
        self.logger.log(level, message, **context)


class Node(ABC):
    """Contract every node type implements.

    The engine only ever calls ``descriptor()``, ``validate()``,
    ``output_ports()`` and ``execute()``; it never special-cases a type.
    """

    id: ClassVar[str]
    name: ClassVar[str]
    category: ClassVar[NodeCategory]
    version: ClassVar[str] = "1.0.0"
    icon: ClassVar[str] = ""
    description: ClassVar[str] = ""
    tags: ClassVar[tuple[str, ...]] = ()
    properties_schema: ClassVar[dict[str, Any]] = {}
    inputs: ClassVar[PortMap] = {"main": {"type": "object", "description": "Input data"}}
    outputs: ClassVar[PortMap] = {"main": {"type": "object", "description": "Output data"}}
    max_execution_time_seconds: ClassVar[int] = 300
    supports_async: ClassVar[bool] = False
    priority: ClassVar[int] = 1
    critical: ClassVar[bool] = True
    trigger_modes: ClassVar[tuple[ExecutionMode, ...]] = ()
    dynamic_outputs: ClassVar[bool] = False

    def identity(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "version": self.version,
            "category": self.category.value,
            "icon": self.icon,
            "description": self.description,
            "tags": list(self.tags),
        }

    def schema(self) -> dict[str, Any]:
        return {"properties": self.properties_schema, "inputs": self.inputs, "outputs": self.outputs}

    def descriptor(self) -> NodeDescriptor:
        return NodeDescriptor(
            id=self.id,
            name=self.name,
            version=self.version,
            category=self.category,
            icon=self.icon,
            description=self.description,
            properties=self.properties_schema,
            inputs=self.inputs,
            outputs=self.outputs,
            tags=tuple(self.tags),
            max_execution_time_seconds=self.max_execution_time_seconds,
            supports_async=self.supports_async,
            priority=self.priority,
            critical=self.critical,
            trigger_modes=tuple(self.trigger_modes),
        )

    def output_ports(self, properties: dict[str, Any]) -> set[str]:
        return set(self.outputs)

    def validate(self, properties: dict[str, Any]) -> bool:
        for key, spec in self.properties_schema.items():
            value = properties.get(key)
            if value is None or value == "" or value == [] or value == {}:
                if spec.get("required") and "default" not in spec:
                    return False
                continue
            options = spec.get("options")
            if options and spec.get("type") == "select" and value not in options:
                return False
        return True

    @abstractmethod
    def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        raise NotImplementedError
