from __future__ import annotations

import re
import threading
from typing import Any

from sqlalchemy import column, create_engine, delete, insert, literal_column, select, table, text, update
from sqlalchemy.engine import URL, Engine, make_url
from sqlalchemy.exc import ArgumentError, DBAPIError, NoSuchModuleError, OperationalError, SQLAlchemyError
from sqlalchemy.sql import Executable

from ..errors import ErrorCategory
from .base import Node, NodeCategory, NodeExecutionContext, NodeExecutionResult

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# connection option -> SQLAlchemy driver name
DRIVERS = {
    "sqlite": "sqlite",
    "mysql": "mysql+pymysql",
    "pgsql": "postgresql+psycopg",
}
DEFAULT_PORTS = {"mysql": 3306, "pgsql": 5432}


def _identifier(name: Any) -> str:
    name = str(name)
    if not _IDENTIFIER.match(name):
        raise ValueError(f"Invalid SQL identifier '{name}'")
    return name


def connection_url(connection: str, settings: dict[str, Any]) -> URL:
    """Build the database URL for ``connection`` from credential-style settings.

    A ``url`` entry wins over the individual fields.
    """
    if settings.get("url"):
        return make_url(str(settings["url"]))
    if connection not in DRIVERS:
        raise ValueError(f"Unsupported connection '{connection}'")
    if connection == "sqlite":
        return URL.create("sqlite", database=str(settings.get("database") or ""))
    port = settings.get("port") or DEFAULT_PORTS[connection]
    return URL.create(
        DRIVERS[connection],
        username=settings.get("username") or None,
        password=settings.get("password") or None,
        host=settings.get("host") or "localhost",
        port=int(port),
        database=settings.get("database") or None,
    )


def _error_category(exc: SQLAlchemyError) -> ErrorCategory:
    if isinstance(exc, OperationalError):
        message = str(exc.orig if exc.orig is not None else exc).lower()
        if "locked" in message or "timeout" in message or "timed out" in message:
            return ErrorCategory.TIMEOUT
        if exc.connection_invalidated or "connect" in message:
            return ErrorCategory.NETWORK
        return ErrorCategory.VALIDATION
    if isinstance(exc, DBAPIError):
        return ErrorCategory.VALIDATION
    return ErrorCategory.INTERNAL


class DatabaseQueryNode(Node):
    """Runs parameterized statements through SQLAlchemy Core.

    ``select``/``insert``/``update``/``delete`` build the statement from
    ``table``, ``columns``, ``where`` (equality only) and ``data``; ``raw``
    executes ``query`` with ``parameters``: a list binds positionally in the
    driver's own placeholder style, a mapping binds ``:name`` placeholders.
    """

    id = "databaseQuery"
    name = "Database Query"
    category = NodeCategory.DATA
    icon = "database"
    description = "Run select, insert, update, delete or raw SQL against a database"
    tags = ("database", "sql", "query", "sqlite", "mysql", "postgres", "data")
    properties_schema = {
        "operation": {
            "type": "select",
            "options": ["select", "insert", "update", "delete", "raw"],
            "default": "select",
            "required": True,
        },
        "connection": {"type": "select", "options": list(DRIVERS), "default": "sqlite"},
        "database": {"type": "string", "description": "SQLite file path or database name"},
        "credential": {
            "type": "credential",
            "description": "Credential with 'url', or host/port/username/password/database",
        },
        "table": {"type": "string"},
        "columns": {"type": "array", "default": []},
        "where": {"type": "object", "default": {}},
        "data": {"type": "object", "default": {}},
        "query": {"type": "text"},
        "parameters": {"type": "array", "default": []},
        "limit": {"type": "number", "default": 0, "min": 0},
        "useInputData": {"type": "boolean", "default": False, "description": "Use input data as insert/update values"},
    }
    outputs = {
        "main": {
            "type": "object",
            "properties": {
                "rows": {"type": "array"},
                "rowCount": {"type": "number"},
                "affectedRows": {"type": "number"},
                "lastInsertId": {"type": "number"},
            },
        }
    }
    max_execution_time_seconds = 120
    supports_async = True
    priority = 4

    def __init__(self) -> None:
        self._engines: dict[str, Engine] = {}
        self._lock = threading.Lock()

    def validate(self, properties: dict[str, Any]) -> bool:
        if not super().validate(properties):
            return False
        if not properties.get("database") and not properties.get("credential"):
            return False
        operation = properties.get("operation", "select")
        if operation == "raw":
            return bool(properties.get("query"))
        table_name = properties.get("table")
        if not table_name or not _IDENTIFIER.match(str(table_name)):
            return False
        return all(_IDENTIFIER.match(str(name)) for name in properties.get("columns") or [])

    def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        settings: dict[str, Any] = {}
        if context.get_property("credential"):
            settings.update(context.credential(context.get_property("credential")))
        if context.get_property("database"):
            settings["database"] = context.get_property("database")
        connection = context.get_property("connection") or settings.get("connection") or "sqlite"
        if not settings.get("url") and not settings.get("database"):
            return NodeExecutionResult.failure(
                "No database configured", code="database_not_configured", category=ErrorCategory.CONFIGURATION
            )

        operation = context.get_property("operation", "select")
        try:
            url = connection_url(connection, settings)
            statement, params = self.build_statement(operation, context)
        except (ValueError, ArgumentError) as exc:
            return NodeExecutionResult.failure(str(exc), code="invalid_query", category=ErrorCategory.VALIDATION)

        context.log("Executing database query", operation=operation, backend=url.get_backend_name())
        try:
            engine = self._engine(url)
            with engine.begin() as conn:
                if isinstance(statement, str):
                    result = conn.exec_driver_sql(statement, params)
                else:
                    result = conn.execute(statement, params) if params else conn.execute(statement)
                if result.returns_rows:
                    rows = [dict(row._mapping) for row in result]
                    return NodeExecutionResult.single({"operation": operation, "rows": rows, "rowCount": len(rows)})
                payload = {"operation": operation, "affectedRows": result.rowcount, "lastInsertId": result.lastrowid}
        except (NoSuchModuleError, ImportError) as exc:
            return NodeExecutionResult.failure(
                f"Database driver unavailable: {exc}", code="database_driver", category=ErrorCategory.CONFIGURATION
            )
        except SQLAlchemyError as exc:
            detail = exc.orig if isinstance(exc, DBAPIError) and exc.orig is not None else exc
            return NodeExecutionResult.failure(f"Database error: {detail}", code="database_error", category=_error_category(exc))

        context.log("Database statement applied", affected_rows=payload["affectedRows"])
        return NodeExecutionResult.single(payload)

    def _engine(self, url: URL) -> Engine:
        key = url.render_as_string(hide_password=False)
        with self._lock:
            if key not in self._engines:
                options: dict[str, Any] = {"pool_pre_ping": True}
                if url.get_backend_name() == "sqlite":
                    options["connect_args"] = {"timeout": 30}
                self._engines[key] = create_engine(url, **options)
            return self._engines[key]

    @staticmethod
    def build_statement(operation: str, context: NodeExecutionContext) -> tuple[Executable | str, Any]:
        if operation == "raw":
            query = str(context.get_property("query"))
            parameters = context.get_property("parameters", [])
            if isinstance(parameters, dict):
                return text(query), parameters
            return query, tuple(parameters)

        where: dict[str, Any] = dict(context.get_property("where", {}))
        data: dict[str, Any] = dict(context.get_property("data", {}))
        if context.get_property("useInputData", False):
            data = {**context.input_data, **data}
        target = table(_identifier(context.get_property("table", "")))
        conditions = [column(_identifier(key)) == value for key, value in where.items()]

        if operation == "select":
            columns = context.get_property("columns", [])
            selected = [column(_identifier(name)) for name in columns] or [literal_column("*")]
            statement = select(*selected).select_from(target)
            if conditions:
                statement = statement.where(*conditions)
            limit = int(context.get_property("limit", 0))
            if limit > 0:
                statement = statement.limit(limit)
            return statement, None
        if operation == "insert":
            if not data:
                raise ValueError("Insert requires data")
            values = {_identifier(key): value for key, value in data.items()}
            return insert(table(target.name, *(column(key) for key in values))).values(values), None
        if operation == "update":
            if not data:
                raise ValueError("Update requires data")
            values = {_identifier(key): value for key, value in data.items()}
            columns = {*values, *where}
            statement = update(table(target.name, *(column(key) for key in columns))).values(values)
            return (statement.where(*conditions) if conditions else statement), None
        if operation == "delete":
            if not where:
                raise ValueError("Delete requires a where clause")
            return delete(target).where(*conditions), None
        raise ValueError(f"Unsupported operation '{operation}'")
