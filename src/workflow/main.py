"""FastAPI application entry point for the workflow service.

This module exposes the workflow engine over HTTP: the stage catalog,
board projections, work item reads, and every stage-changing operation.
Identity comes from a header set by the auth proxy in front of the
service; notification delivery stays with the caller, which receives the
notification hint in each applied outcome.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Type

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from src.workflow.config import WorkflowSettings, get_settings
from src.workflow.errors import (
    ConcurrentModificationError,
    DuplicateWorkItemError,
    InvalidBranchStateError,
    InvalidDueDateError,
    InvalidRequestError,
    NoOpTransitionError,
    UnknownPipelineError,
    UnknownStageError,
    WorkflowError,
    WorkItemNotFoundError,
)
from src.workflow.events.emitter import EventEmitter, create_event_emitter
from src.workflow.events.metrics import generate_metrics_output
from src.workflow.schemas import (
    BoardResponse,
    CreateWorkItemRequest,
    ErrorResponse,
    ExtensionDecisionRequest,
    ExtensionRequestCreate,
    FeedbackRequest,
    HealthResponse,
    PipelineSummary,
    ReadyResponse,
    RequestApprovalRequest,
    TransitionRequest,
)
from src.workflow.stages.models import Stage
from src.workflow.state.models import (
    HistoryEntry,
    PendingJustification,
    TransitionOutcome,
    WorkItem,
)
from src.workflow.state.repository import (
    DatabaseError,
    InMemoryWorkItemRepository,
    PostgresWorkItemRepository,
    WorkItemRepository,
)
from src.workflow.state.service import WorkflowService

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


ERROR_STATUS: Dict[Type[WorkflowError], int] = {
    UnknownPipelineError: 404,
    UnknownStageError: 404,
    WorkItemNotFoundError: 404,
    NoOpTransitionError: 422,
    InvalidBranchStateError: 422,
    InvalidDueDateError: 422,
    InvalidRequestError: 422,
    ConcurrentModificationError: 409,
    DuplicateWorkItemError: 409,
}


def _redact_secret(value: str, visible_chars: int = 4) -> str:
    """Redact a secret value, showing only the first few characters."""
    if len(value) <= visible_chars:
        return "*" * len(value)
    return value[:visible_chars] + "*" * (len(value) - visible_chars)


def _log_configuration(settings: WorkflowSettings) -> None:
    """Log configuration values with secrets redacted."""
    logger.info("Workflow configuration:")
    if settings.database_url:
        logger.info(f"  Database URL: {_redact_secret(settings.database_url)}")
        logger.info(
            f"  DB Pool Size: {settings.db_min_pool_size}-{settings.db_max_pool_size}"
        )
    else:
        logger.info("  Database URL: not set, using in-memory store")
    logger.info(f"  Default Actor: {settings.default_actor}")
    logger.info(f"  Actor Header: {settings.actor_header}")
    logger.info(
        f"  Event Sinks: {', '.join(s.value for s in settings.event_sinks)}"
    )
    logger.info(f"  Host: {settings.host}")
    logger.info(f"  Port: {settings.port}")


def create_app(
    settings: Optional[WorkflowSettings] = None,
    repository: Optional[WorkItemRepository] = None,
    event_emitter: Optional[EventEmitter] = None,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        settings: Configuration; read from the environment at startup
                  when omitted.
        repository: Work item store; chosen from settings when omitted.
        event_emitter: Event sink; built from settings when omitted.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Wire settings, repository, emitter and service for the app's lifetime."""
        logger.info("Workflow service starting up...")

        cfg = settings or get_settings()
        _log_configuration(cfg)

        owned_repository: Optional[PostgresWorkItemRepository] = None
        store = repository
        if store is None:
            if cfg.database_url:
                owned_repository = PostgresWorkItemRepository(
                    cfg.database_url,
                    min_pool_size=cfg.db_min_pool_size,
                    max_pool_size=cfg.db_max_pool_size,
                )
                await owned_repository.connect()
                await owned_repository.ensure_schema()
                store = owned_repository
            else:
                store = InMemoryWorkItemRepository()

        emitter = event_emitter or create_event_emitter(cfg.event_sinks)

        app.state.settings = cfg
        app.state.repository = store
        app.state.service = WorkflowService(store, event_emitter=emitter)

        logger.info("Workflow service started successfully")

        yield

        logger.info("Workflow service shutting down...")
        await emitter.close()
        if owned_repository is not None:
            await owned_repository.disconnect()
        logger.info("Workflow service shutdown complete")

    app = FastAPI(
        title="Service Shop Workflow",
        description="Stage transitions, branching and boards for shop work items",
        version="1.0.0",
        lifespan=lifespan,
    )

    @app.exception_handler(WorkflowError)
    async def workflow_error_handler(request: Request, exc: WorkflowError):
        status_code = ERROR_STATUS.get(type(exc), 422)
        details = {
            key: value
            for key, value in vars(exc).items()
            if key != "message" and not key.startswith("_")
        }
        body = ErrorResponse(
            error=type(exc).__name__,
            message=exc.message,
            details=details,
        )
        return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))

    @app.exception_handler(DatabaseError)
    async def database_error_handler(request: Request, exc: DatabaseError):
        logger.error(
            "Database failure while handling request",
            extra={"path": request.url.path, "error": exc.message},
        )
        body = ErrorResponse(error="DatabaseError", message="Work item store unavailable")
        return JSONResponse(status_code=503, content=body.model_dump(mode="json"))

    _register_routes(app)
    return app


def get_service(request: Request) -> WorkflowService:
    return request.app.state.service


def current_actor(request: Request) -> str:
    """Identity of the caller, from the configured actor header."""
    settings: WorkflowSettings = request.app.state.settings
    actor = request.headers.get(settings.actor_header, "").strip()
    return actor or settings.default_actor


def _outcome_response(outcome: TransitionOutcome) -> Any:
    """Applied outcomes return 200; held backward moves return 202."""
    if isinstance(outcome, PendingJustification):
        return JSONResponse(status_code=202, content=outcome.model_dump(mode="json"))
    return outcome


def _register_routes(app: FastAPI) -> None:
    @app.get("/health", response_model=HealthResponse)
    async def health():
        """Liveness probe endpoint."""
        return HealthResponse(status="healthy")

    @app.get("/ready", response_model=ReadyResponse)
    async def ready(request: Request):
        """Readiness probe endpoint.

        Returns 503 when the configured database does not answer.
        """
        repository = request.app.state.repository
        database_status = "in_memory"
        if isinstance(repository, PostgresWorkItemRepository):
            database_status = "healthy" if await repository.ping() else "unavailable"

        if database_status == "unavailable":
            return JSONResponse(
                status_code=503,
                content=ReadyResponse(
                    status="not_ready",
                    dependencies={"database": database_status},
                ).model_dump(),
            )

        return ReadyResponse(status="ready", dependencies={"database": database_status})

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics():
        """Prometheus metrics endpoint."""
        return PlainTextResponse(generate_metrics_output().decode("utf-8"))

    @app.get("/pipelines", response_model=List[PipelineSummary])
    async def list_pipelines(service: WorkflowService = Depends(get_service)):
        registry = service.registry
        summaries = []
        for kind in registry.pipelines:
            definition = registry.definition(kind)
            summaries.append(
                PipelineSummary(
                    kind=kind,
                    label=definition.label,
                    ordered=definition.ordered,
                    category=definition.category,
                    entry_stage=definition.entry.id,
                    stage_count=len(definition.stages),
                )
            )
        return summaries

    @app.get("/pipelines/{pipeline}/stages", response_model=List[Stage])
    async def list_stages(
        pipeline: str,
        service: WorkflowService = Depends(get_service),
    ):
        return service.registry.stages_of(pipeline)

    @app.get("/pipelines/{pipeline}/board", response_model=BoardResponse)
    async def board(
        pipeline: str,
        pending: bool = Query(default=False),
        service: WorkflowService = Depends(get_service),
    ):
        columns = await service.board(pipeline, pending=pending)
        return BoardResponse(
            pipeline=service.registry.definition(pipeline).kind,
            pending_only=pending,
            columns=columns,
        )

    @app.post("/work-items", response_model=WorkItem, status_code=201)
    async def create_work_item(
        body: CreateWorkItemRequest,
        service: WorkflowService = Depends(get_service),
    ):
        return await service.create_work_item(
            body.id, body.pipeline, kind=body.kind, attributes=body.attributes
        )

    @app.get("/work-items/{item_id}", response_model=WorkItem)
    async def get_work_item(
        item_id: str,
        service: WorkflowService = Depends(get_service),
    ):
        return await service.get_work_item(item_id)

    @app.get("/work-items/{item_id}/history", response_model=List[HistoryEntry])
    async def get_history(
        item_id: str,
        service: WorkflowService = Depends(get_service),
    ):
        return list(await service.history(item_id))

    @app.post("/work-items/{item_id}/transitions")
    async def transition(
        item_id: str,
        body: TransitionRequest,
        service: WorkflowService = Depends(get_service),
        actor: str = Depends(current_actor),
    ):
        """Move a work item; 202 means a reason is required to confirm."""
        outcome = await service.transition(
            item_id,
            body.target_stage_id,
            actor,
            reason=body.reason,
            expected_version=body.expected_version,
        )
        return _outcome_response(outcome)

    @app.post("/work-items/{item_id}/feedback")
    async def feedback(
        item_id: str,
        body: FeedbackRequest,
        service: WorkflowService = Depends(get_service),
        actor: str = Depends(current_actor),
    ):
        return await service.resolve_feedback(
            item_id, body.outcome, actor, expected_version=body.expected_version
        )

    @app.post("/work-items/{item_id}/extension-decision")
    async def extension_decision(
        item_id: str,
        body: ExtensionDecisionRequest,
        service: WorkflowService = Depends(get_service),
        actor: str = Depends(current_actor),
    ):
        return await service.resolve_extension_approval(
            item_id,
            body.decision,
            actor,
            new_due_at=body.new_due_at,
            valid_reason=body.valid_reason,
            customer_contact_result=body.customer_contact_result,
            expected_version=body.expected_version,
        )

    @app.post("/work-items/{item_id}/approve")
    async def approve_request(
        item_id: str,
        body: RequestApprovalRequest,
        service: WorkflowService = Depends(get_service),
        actor: str = Depends(current_actor),
    ):
        outcome = await service.resolve_request_approval(
            item_id,
            body.target_stage_id,
            actor,
            notes=body.notes,
            reason=body.reason,
            expected_version=body.expected_version,
        )
        return _outcome_response(outcome)

    @app.post(
        "/orders/{order_id}/extension-requests",
        response_model=WorkItem,
        status_code=201,
    )
    async def open_extension_request(
        order_id: str,
        body: ExtensionRequestCreate,
        service: WorkflowService = Depends(get_service),
        actor: str = Depends(current_actor),
    ):
        return await service.open_extension_request(
            order_id,
            body.reason,
            actor,
            due_at=body.due_at,
            request_id=body.request_id,
        )


app = create_app()


if __name__ == "__main__":
    import uvicorn

    # For local development, load settings to get host/port
    dev_settings = get_settings()
    uvicorn.run(
        "src.workflow.main:app",
        host=dev_settings.host,
        port=dev_settings.port,
        reload=True,
    )
