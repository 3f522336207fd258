from __future__ import annotations

import uuid

import structlog
from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware

from .collaborators import ModuleRegistry, NotificationSender, WorkflowRunner
from .config import AppConfig, app_config
from .engine import FlowExecutionEngine
from .errors import AuthoringError, FlowNotActiveError, FlowNotFoundError
from .interpolation import allowed_env_vars
from .log_setup import configure_logging
from .models import DuplicateRequest, Execution, ExecutionLog, ExecutionResult, Flow, FlowStatus, RunRequest
from .operations import default_registry
from .operations.base import OperationRegistry
from .store import SQLiteStore
from .validation import validate_flow

logger = structlog.get_logger(__name__)

DATA_CHAIN_VARIABLES = [
    {"name": "$trigger", "description": "Trigger payload, event and timestamp"},
    {"name": "$last", "description": "Output of the previous operation"},
    {"name": "$input", "description": "The whole data chain"},
    {"name": "$env", "description": "Allow-listed environment variables"},
]


def _seed_flows(config: AppConfig, store: SQLiteStore, registry: OperationRegistry) -> None:
    for raw in config.seed_flows():
        flow = Flow.model_validate(raw)
        if store.get_flow(flow.id) is not None:
            continue
        try:
            store.create_flow(validate_flow(flow, registry))
        except AuthoringError as exc:
            logger.warning("seed_flow_rejected", flow_id=flow.id, problems=exc.problems)
            continue
        logger.info("seed_flow_created", flow_id=flow.id, name=flow.name)


def create_app(
    *,
    config: AppConfig = app_config,
    store: SQLiteStore | None = None,
    registry: OperationRegistry | None = None,
    modules: ModuleRegistry | None = None,
    notifier: NotificationSender | None = None,
    workflows: WorkflowRunner | None = None,
    engine: FlowExecutionEngine | None = None,
) -> FastAPI:
    registry = registry or default_registry()
    store = store or SQLiteStore(config.db_path())
    modules = modules or ModuleRegistry()
    if engine is None:
        settings = config.engine_settings()
        engine = FlowExecutionEngine(
            registry,
            store,
            settings=settings,
            env=allowed_env_vars(settings.env_allow_list),
            modules=modules,
            notifier=notifier,
            workflows=workflows,
        )
    _seed_flows(config, store, registry)

    app = FastAPI(title="Visual Flows", version="0.3.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://127.0.0.1:5173", "http://localhost:5173"],
        allow_origin_regex=r"^https?://(127\.0\.0\.1|localhost):\d+$",
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.store = store
    app.state.registry = registry
    app.state.engine = engine
    app.state.modules = modules

    def _validated(flow: Flow) -> Flow:
        try:
            return validate_flow(flow, registry)
        except AuthoringError as exc:
            raise HTTPException(status_code=422, detail=exc.problems) from exc

    def _require_flow(flow_id: str) -> Flow:
        flow = store.get_flow(flow_id)
        if flow is None:
            raise HTTPException(status_code=404, detail="Flow not found")
        return flow

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/operation-types")
    def list_operation_types() -> list[str]:
        return registry.list_types()

    @app.get("/operation-catalog")
    def operation_catalog() -> list[dict[str, object]]:
        return registry.list_specs()

    @app.get("/config")
    def get_config() -> dict[str, object]:
        return config.as_dict()

    @app.get("/metadata")
    def get_metadata() -> dict[str, object]:
        return {
            "modules": modules.describe(),
            "operation_types": registry.list_types(),
            "triggerable_flows": [
                {"id": flow.id, "name": flow.name} for flow in store.list_flows() if flow.status == FlowStatus.ACTIVE
            ],
            "data_chain_variables": DATA_CHAIN_VARIABLES,
        }

    @app.post("/flows", response_model=Flow)
    def create_flow(flow: Flow) -> Flow:
        if store.get_flow(flow.id) is not None:
            raise HTTPException(status_code=409, detail="Flow id already exists")
        return store.create_flow(_validated(flow))

    @app.post("/flows/new", response_model=Flow)
    def create_flow_with_generated_id(flow: Flow) -> Flow:
        created = flow.model_copy(update={"id": str(uuid.uuid4())})
        return store.create_flow(_validated(created))

    @app.get("/flows", response_model=list[Flow])
    def list_flows() -> list[Flow]:
        return store.list_flows()

    @app.get("/flows/{flow_id}", response_model=Flow)
    def get_flow(flow_id: str) -> Flow:
        return _require_flow(flow_id)

    @app.put("/flows/{flow_id}", response_model=Flow)
    def update_flow(flow_id: str, flow: Flow) -> Flow:
        if flow.id != flow_id:
            raise HTTPException(status_code=400, detail="Flow id mismatch")
        updated = store.update_flow(flow_id, _validated(flow))
        if updated is None:
            raise HTTPException(status_code=404, detail="Flow not found")
        return updated

    @app.delete("/flows/{flow_id}")
    def delete_flow(flow_id: str) -> dict[str, object]:
        if not store.delete_flow(flow_id):
            raise HTTPException(status_code=404, detail="Flow not found")
        return {"id": flow_id, "deleted": True}

    @app.post("/flows/{flow_id}/duplicate", response_model=Flow)
    def duplicate_flow(flow_id: str, request: DuplicateRequest | None = None) -> Flow:
        duplicate = store.duplicate_flow(flow_id, request.name if request else None)
        if duplicate is None:
            raise HTTPException(status_code=404, detail="Flow not found")
        return duplicate

    @app.post("/flows/{flow_id}/execute", response_model=ExecutionResult)
    async def execute_flow(flow_id: str, request: RunRequest) -> ExecutionResult:
        try:
            return await engine.execute(
                flow_id,
                request.trigger_payload,
                triggered_by=request.triggered_by,
                metadata=request.metadata,
            )
        except FlowNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except FlowNotActiveError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc

    @app.get("/flows/{flow_id}/executions", response_model=list[Execution])
    def list_flow_executions(
        flow_id: str,
        limit: int = Query(50, ge=1, le=500),
        offset: int = Query(0, ge=0),
    ) -> list[Execution]:
        _require_flow(flow_id)
        return store.list_executions(flow_id, limit=limit, offset=offset)

    @app.get("/executions/{execution_id}", response_model=Execution)
    def get_execution(execution_id: str) -> Execution:
        execution = store.get_execution(execution_id)
        if execution is None:
            raise HTTPException(status_code=404, detail="Execution not found")
        return execution

    @app.get("/executions/{execution_id}/logs", response_model=list[ExecutionLog])
    def get_execution_logs(execution_id: str) -> list[ExecutionLog]:
        if store.get_execution(execution_id) is None:
            raise HTTPException(status_code=404, detail="Execution not found")
        return store.list_logs(execution_id)

    @app.post("/executions/{execution_id}/cancel")
    def cancel_execution(execution_id: str) -> dict[str, object]:
        execution = store.get_execution(execution_id)
        if execution is None:
            raise HTTPException(status_code=404, detail="Execution not found")
        if not engine.cancel(execution_id):
            raise HTTPException(status_code=409, detail=f"Execution is not running (status: {execution.status.value})")
        return {"id": execution_id, "cancel_requested": True}

    return app


def build_default_app() -> FastAPI:
    configure_logging(**app_config.logging_settings())
    return create_app()
