from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

from .config import AppConfig, app_config
from .credentials import YamlCredentialProvider
from .dispatch import CeleryQueueClient, Dispatcher, QueueClient
from .engine import WorkflowEngine
from .error_handling import ErrorHandler, load_error_workflow_rules
from .jobs import ProcessWorkflowExecution
from .nodes import NodeRegistry, register_builtin_nodes
from .store import InMemoryStore, SQLiteStore


@dataclass(slots=True)
class Runtime:
    registry: NodeRegistry
    store: SQLiteStore | InMemoryStore
    dispatcher: Dispatcher
    engine: WorkflowEngine
    job: ProcessWorkflowExecution


def build_runtime(config: AppConfig = app_config, queue: QueueClient | None = None) -> Runtime:
    registry = register_builtin_nodes(NodeRegistry())
    store = SQLiteStore(config.store_settings()["db_path"])
    if queue is None:
        from .worker import celery_app

        queue = CeleryQueueClient(celery_app)
    dispatcher = Dispatcher(queue, store, settings=config.queue_settings())
    engine = WorkflowEngine(
        registry,
        executions=store,
        logs=store,
        credentials=YamlCredentialProvider(config.credentials_path()),
        dispatcher=dispatcher,
        settings=config.engine_settings(),
    )
    error_handler = ErrorHandler(engine, store, rules=load_error_workflow_rules(config.error_workflows_path()))
    job = ProcessWorkflowExecution(
        engine,
        store,
        workflows=store,
        settings=config.queue_settings(),
        error_handler=error_handler,
    )
    return Runtime(registry=registry, store=store, dispatcher=dispatcher, engine=engine, job=job)


@lru_cache(maxsize=1)
def get_runtime() -> Runtime:
    return build_runtime()
