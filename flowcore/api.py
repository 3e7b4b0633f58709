from __future__ import annotations

import json
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .bootstrap import Runtime, get_runtime
from .errors import InvalidTransitionError, ValidationError
from .models import Execution, ExecutionLog, ExecutionMode, RunRequest, ValidationResult, Workflow

app = FastAPI(title="flowcore", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://127.0.0.1:5173", "http://localhost:5173"],
    allow_origin_regex=r"^https?://(127\.0\.0\.1|localhost):\d+$",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _workflow_or_404(runtime: Runtime, workflow_id: str) -> Workflow:
    workflow = runtime.store.load(workflow_id)
    if workflow is None:
        raise HTTPException(status_code=404, detail="Workflow not found")
    return workflow


def _execution_or_404(runtime: Runtime, execution_id: str) -> Execution:
    execution = runtime.store.get(execution_id)
    if execution is None:
        raise HTTPException(status_code=404, detail="Execution not found")
    return execution


def _require_valid(runtime: Runtime, workflow: Workflow) -> None:
    result = runtime.engine.validate(workflow)
    if not result.valid:
        raise HTTPException(status_code=422, detail={"message": "Workflow is invalid", "errors": result.errors})


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/nodes")
def list_nodes(runtime: Runtime = Depends(get_runtime)) -> list[dict[str, Any]]:
    return runtime.registry.manifest()


@app.get("/nodes/search")
def search_nodes(q: str = "", runtime: Runtime = Depends(get_runtime)) -> list[dict[str, Any]]:
    return [node.descriptor().to_dict() for node in runtime.registry.search(q)]


@app.get("/nodes/{node_id}/recommendations")
def recommend_nodes(node_id: str, limit: int = 5, runtime: Runtime = Depends(get_runtime)) -> dict[str, Any]:
    if node_id not in runtime.registry:
        raise HTTPException(status_code=404, detail="Node type not found")
    return {"node_id": node_id, "recommendations": runtime.registry.recommend(node_id, limit=limit)}


@app.get("/workflows", response_model=list[Workflow])
def list_workflows(runtime: Runtime = Depends(get_runtime)) -> list[Workflow]:
    return runtime.store.list_workflows()


@app.post("/workflows", response_model=Workflow, status_code=201)
def create_workflow(workflow: Workflow, runtime: Runtime = Depends(get_runtime)) -> Workflow:
    if runtime.store.load(workflow.id) is not None:
        raise HTTPException(status_code=409, detail="Workflow id already exists")
    if workflow.active:
        _require_valid(runtime, workflow)
    return runtime.store.save_workflow(workflow)


@app.get("/workflows/{workflow_id}", response_model=Workflow)
def get_workflow(workflow_id: str, runtime: Runtime = Depends(get_runtime)) -> Workflow:
    return _workflow_or_404(runtime, workflow_id)


@app.put("/workflows/{workflow_id}", response_model=Workflow)
def update_workflow(workflow_id: str, workflow: Workflow, runtime: Runtime = Depends(get_runtime)) -> Workflow:
    if workflow.id != workflow_id:
        raise HTTPException(status_code=400, detail="Workflow id mismatch")
    _workflow_or_404(runtime, workflow_id)
    if workflow.active:
        _require_valid(runtime, workflow)
    return runtime.store.save_workflow(workflow)


@app.post("/workflows/{workflow_id}/validate", response_model=ValidationResult)
def validate_workflow(workflow_id: str, runtime: Runtime = Depends(get_runtime)) -> ValidationResult:
    return runtime.engine.validate(_workflow_or_404(runtime, workflow_id))


@app.post("/workflows/{workflow_id}/test")
def test_workflow(workflow_id: str, request: RunRequest, runtime: Runtime = Depends(get_runtime)) -> dict[str, Any]:
    workflow = _workflow_or_404(runtime, workflow_id)
    mode = request.mode if request.mode is not ExecutionMode.API else ExecutionMode.MANUAL
    return runtime.engine.execute_sync(workflow, request.input_data, mode=mode).to_dict()


@app.post("/workflows/{workflow_id}/dispatch", status_code=202)
def dispatch_workflow(workflow_id: str, request: RunRequest, runtime: Runtime = Depends(get_runtime)) -> dict[str, str]:
    workflow = _workflow_or_404(runtime, workflow_id)
    try:
        job_id = runtime.engine.dispatch_async(workflow, request.input_data, priority=request.priority, mode=request.mode)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail={"message": "Workflow is invalid", "errors": exc.errors}) from exc
    return {"job_id": job_id, "workflow_id": workflow_id}


@app.api_route("/webhook/{workflow_id}", methods=["GET", "POST", "PUT", "PATCH"])
async def receive_webhook(workflow_id: str, request: Request, runtime: Runtime = Depends(get_runtime)) -> JSONResponse:
    workflow = runtime.store.load(workflow_id)
    if workflow is None or not workflow.active:
        raise HTTPException(status_code=404, detail="Workflow not found or inactive")

    raw = await request.body()
    try:
        body = json.loads(raw) if raw else {}
    except json.JSONDecodeError:
        body = {"raw": raw.decode("utf-8", errors="replace")}
    envelope = {
        "headers": dict(request.headers),
        "body": body,
        "query": dict(request.query_params),
        "method": request.method,
        "url": str(request.url),
    }

    result = await run_in_threadpool(runtime.engine.execute_sync, workflow, envelope, ExecutionMode.WEBHOOK)
    response = result.metadata.get("response") or {}
    if result.success:
        return JSONResponse(
            status_code=int(response.get("code", 200)),
            content=response.get("body", {"message": "Workflow executed successfully"}),
        )
    # A trigger that rejected the request (e.g. failed auth) declares its own error status.
    if int(response.get("code", 0)) >= 400:
        return JSONResponse(status_code=int(response["code"]), content=response.get("body", {}))
    return JSONResponse(status_code=500, content={"error": result.error_message})


@app.get("/executions/{execution_id}", response_model=Execution)
def get_execution(execution_id: str, runtime: Runtime = Depends(get_runtime)) -> Execution:
    return _execution_or_404(runtime, execution_id)


@app.get("/executions/{execution_id}/logs", response_model=list[ExecutionLog])
def get_execution_logs(execution_id: str, runtime: Runtime = Depends(get_runtime)) -> list[ExecutionLog]:
    _execution_or_404(runtime, execution_id)
    return runtime.store.for_execution(execution_id)


@app.post("/executions/{execution_id}/retry", response_model=Execution, status_code=202)
def retry_execution(execution_id: str, runtime: Runtime = Depends(get_runtime)) -> Execution:
    execution = _execution_or_404(runtime, execution_id)
    workflow = _workflow_or_404(runtime, execution.workflow_id)
    _require_valid(runtime, workflow)
    try:
        return runtime.dispatcher.retry(workflow, execution)
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc


@app.post("/executions/{execution_id}/cancel", response_model=Execution)
def cancel_execution(execution_id: str, runtime: Runtime = Depends(get_runtime)) -> Execution:
    try:
        execution = runtime.engine.cancel(execution_id)
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    if execution is None:
        raise HTTPException(status_code=404, detail="Execution not found")
    return execution
