from __future__ import annotations

import json
import sqlite3
import threading
from pathlib import Path
from typing import Protocol

from .models import Execution, ExecutionLog, Workflow


class WorkflowStore(Protocol):
    def save_workflow(self, workflow: Workflow) -> Workflow: ...

    def load(self, workflow_id: str) -> Workflow | None: ...

    def list_workflows(self) -> list[Workflow]: ...


class ExecutionStore(Protocol):
    def create(self, execution: Execution) -> Execution: ...

    def update(self, execution: Execution) -> Execution: ...

    def get(self, execution_id: str) -> Execution | None: ...

    def list_for_workflow(self, workflow_id: str) -> list[Execution]: ...


class SQLiteStore:
    """Workflows, executions and execution logs in one SQLite file.

    Models are stored as JSON next to the columns used for lookups; a
    connection is opened per call so the store can be shared across threads.
    """

    def __init__(self, db_path: str | Path = "data/flowcore.db") -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS workflows (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    active INTEGER NOT NULL DEFAULT 0,
                    definition TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS executions (
                    id TEXT PRIMARY KEY,
                    workflow_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    mode TEXT NOT NULL,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    data TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS execution_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    execution_id TEXT NOT NULL,
                    node_id TEXT NOT NULL,
                    level TEXT NOT NULL,
                    message TEXT NOT NULL,
                    context TEXT NOT NULL,
                    timestamp TEXT NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_executions_workflow ON executions (workflow_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_logs_execution ON execution_logs (execution_id)")

    def save_workflow(self, workflow: Workflow) -> Workflow:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO workflows (id, name, active, definition, created_at) VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET name = excluded.name, active = excluded.active,
                    definition = excluded.definition
                """,
                (
                    workflow.id,
                    workflow.name,
                    int(workflow.active),
                    workflow.model_dump_json(),
                    workflow.created_at.isoformat(),
                ),
            )
        return workflow

    def load(self, workflow_id: str) -> Workflow | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT definition FROM workflows WHERE id = ?",
                (workflow_id,),
            ).fetchone()

        if not row:
            return None
        return Workflow.model_validate_json(row["definition"])

    def list_workflows(self) -> list[Workflow]:
        with self._connect() as conn:
            rows = conn.execute("SELECT definition FROM workflows ORDER BY created_at DESC").fetchall()

        return [Workflow.model_validate_json(row["definition"]) for row in rows]

    def create(self, execution: Execution) -> Execution:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO executions (id, workflow_id, status, mode, retry_count, data, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    execution.id,
                    execution.workflow_id,
                    execution.status.value,
                    execution.mode.value,
                    execution.retry_count,
                    execution.model_dump_json(),
                    execution.created_at.isoformat(),
                ),
            )
        return execution

    def update(self, execution: Execution) -> Execution:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE executions SET status = ?, retry_count = ?, data = ? WHERE id = ?",
                (execution.status.value, execution.retry_count, execution.model_dump_json(), execution.id),
            )
            if cursor.rowcount == 0:
                raise KeyError(f"Execution {execution.id} does not exist")
        return execution

    def get(self, execution_id: str) -> Execution | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT data FROM executions WHERE id = ?",
                (execution_id,),
            ).fetchone()

        if not row:
            return None
        return Execution.model_validate_json(row["data"])

    def list_for_workflow(self, workflow_id: str) -> list[Execution]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT data FROM executions WHERE workflow_id = ? ORDER BY created_at",
                (workflow_id,),
            ).fetchall()

        return [Execution.model_validate_json(row["data"]) for row in rows]

    def append(self, entry: ExecutionLog) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO execution_logs (execution_id, node_id, level, message, context, timestamp)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.execution_id,
                    entry.node_id,
                    entry.level.value,
                    entry.message,
                    json.dumps(entry.context, default=str),
                    entry.timestamp.isoformat(),
                ),
            )

    def for_execution(self, execution_id: str) -> list[ExecutionLog]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM execution_logs WHERE execution_id = ? ORDER BY id",
                (execution_id,),
            ).fetchall()

        return [
            ExecutionLog(
                execution_id=row["execution_id"],
                node_id=row["node_id"],
                level=row["level"],
                message=row["message"],
                context=json.loads(row["context"]),
                timestamp=row["timestamp"],
            )
            for row in rows
        ]


class InMemoryStore:
    """Dict-backed store with the same surface as ``SQLiteStore``."""

    def __init__(self) -> None:
        self._workflows: dict[str, Workflow] = {}
        self._executions: dict[str, Execution] = {}
        self._logs: list[ExecutionLog] = []
        self._lock = threading.Lock()

    def save_workflow(self, workflow: Workflow) -> Workflow:
        with self._lock:
            self._workflows[workflow.id] = workflow.model_copy(deep=True)
        return workflow

    def load(self, workflow_id: str) -> Workflow | None:
        workflow = self._workflows.get(workflow_id)
        return workflow.model_copy(deep=True) if workflow else None

    def list_workflows(self) -> list[Workflow]:
        return [workflow.model_copy(deep=True) for workflow in self._workflows.values()]

    def create(self, execution: Execution) -> Execution:
        with self._lock:
            if execution.id in self._executions:
                raise KeyError(f"Execution {execution.id} already exists")
            self._executions[execution.id] = execution.model_copy(deep=True)
        return execution

    def update(self, execution: Execution) -> Execution:
        with self._lock:
            if execution.id not in self._executions:
                raise KeyError(f"Execution {execution.id} does not exist")
            self._executions[execution.id] = execution.model_copy(deep=True)
        return execution

    def get(self, execution_id: str) -> Execution | None:
        execution = self._executions.get(execution_id)
        return execution.model_copy(deep=True) if execution else None

    def list_for_workflow(self, workflow_id: str) -> list[Execution]:
        return [
            execution.model_copy(deep=True)
            for execution in self._executions.values()
            if execution.workflow_id == workflow_id
        ]

    def append(self, entry: ExecutionLog) -> None:
        with self._lock:
            self._logs.append(entry)

    def for_execution(self, execution_id: str) -> list[ExecutionLog]:
        with self._lock:
            return [entry for entry in self._logs if entry.execution_id == execution_id]
