from __future__ import annotations

from enum import Enum

import requests
from celery.exceptions import SoftTimeLimitExceeded


class ErrorCategory(str, Enum):
    TIMEOUT = "timeout"
    NETWORK = "network"
    RATE_LIMIT = "rate_limit"
    VALIDATION = "validation"
    AUTHENTICATION = "authentication"
    CONFIGURATION = "configuration"
    INTERNAL = "internal"
    CRITICAL = "critical"

    @property
    def is_retryable(self) -> bool:
        return self in _RETRYABLE

    @property
    def is_critical(self) -> bool:
        return self is ErrorCategory.CRITICAL


_RETRYABLE = frozenset({ErrorCategory.TIMEOUT, ErrorCategory.NETWORK, ErrorCategory.RATE_LIMIT})


class FlowError(Exception):
    """Base class for every error raised by flowcore."""


class ValidationError(FlowError):
    """A workflow graph failed validation before any execution started."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "Invalid workflow")


class NodeExecutionError(FlowError):
    """Raised inside node code; never escapes the node boundary."""

    def __init__(
        self,
        message: str,
        *,
        code: str = "node_error",
        category: ErrorCategory = ErrorCategory.INTERNAL,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.category = category


class JobFailureError(FlowError):
    """A queued run failed permanently after its retries were exhausted."""

    def __init__(
        self,
        message: str,
        *,
        execution_id: str | None = None,
        attempts: int = 0,
        category: ErrorCategory = ErrorCategory.INTERNAL,
    ) -> None:
        super().__init__(message)
        self.execution_id = execution_id
        self.attempts = attempts
        self.category = category


class InvalidTransitionError(FlowError):
    pass


class UnknownNodeTypeError(FlowError, KeyError):
    def __init__(self, node_type: str) -> None:
        super().__init__(f"Unknown node type: {node_type}")
        self.node_type = node_type

    def __str__(self) -> str:
        return self.args[0]


def categorize_exception(exc: BaseException) -> ErrorCategory:
    if isinstance(exc, NodeExecutionError):
        return exc.category
    if isinstance(exc, (TimeoutError, requests.Timeout, SoftTimeLimitExceeded)):
        return ErrorCategory.TIMEOUT
    if isinstance(exc, (ConnectionError, requests.ConnectionError)):
        return ErrorCategory.NETWORK
    if isinstance(exc, PermissionError):
        return ErrorCategory.AUTHENTICATION
    if isinstance(exc, (ValueError, TypeError, KeyError)):
        return ErrorCategory.VALIDATION
    return ErrorCategory.INTERNAL
