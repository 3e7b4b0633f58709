from __future__ import annotations

import logging
import threading
from typing import Any, Protocol

from .models import ExecutionLog, LogLevel

logger = logging.getLogger(__name__)

_PY_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARNING: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


class LogSink(Protocol):
    def append(self, entry: ExecutionLog) -> None: ...


class InMemoryLogSink:
    """Append-only list of trace records, safe to share between worker threads."""

    def __init__(self) -> None:
        self._entries: list[ExecutionLog] = []
        self._lock = threading.Lock()

    def append(self, entry: ExecutionLog) -> None:
        with self._lock:
            self._entries.append(entry)

    def all(self) -> list[ExecutionLog]:
        with self._lock:
            return list(self._entries)

    def for_execution(self, execution_id: str) -> list[ExecutionLog]:
        return [entry for entry in self.all() if entry.execution_id == execution_id]

    def for_node(self, execution_id: str, node_id: str) -> list[ExecutionLog]:
        return [entry for entry in self.for_execution(execution_id) if entry.node_id == node_id]


class NullLogSink:
    def append(self, entry: ExecutionLog) -> None:
        return None


class NodeLogger:
    """Writes ``ExecutionLog`` entries for one node of one execution."""

    def __init__(self, sink: LogSink, execution_id: str, node_id: str) -> None:
        self.sink = sink
        self.execution_id = execution_id
        self.node_id = node_id

    def log(self, level: LogLevel | str, message: str, **context: Any) -> ExecutionLog:
        level = LogLevel(level)
        entry = ExecutionLog(
            execution_id=self.execution_id,
            node_id=self.node_id,
            level=level,
            message=message,
            context=context,
        )
        self.sink.append(entry)
        logger.log(
            _PY_LEVELS[level],
            "[%s:%s] %s",
            self.execution_id,
            self.node_id,
            message,
            extra={"flow_context": context},
        )
        return entry

    def debug(self, message: str, **context: Any) -> ExecutionLog:
        return self.log(LogLevel.DEBUG, message, **context)

    def info(self, message: str, **context: Any) -> ExecutionLog:
        return self.log(LogLevel.INFO, message, **context)

    def warning(self, message: str, **context: Any) -> ExecutionLog:
        return self.log(LogLevel.WARNING, message, **context)

    def error(self, message: str, **context: Any) -> ExecutionLog:
        return self.log(LogLevel.ERROR, message, **context)
