import asyncio
import logging
import os

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from api import state
from api.routers import events, imports, notifications, ops, rules, schedule
from api.workers import _notification_worker, _stale_recovery_worker
from llm.llm_client import LLMClient, LLMScheduleOptimizer, LLMTextAnalyzer, get_provider
from schedule_ai.config import USE_POSTGRES, PipelineSettings
from schedule_ai.errors import (
    CollaboratorError,
    ConflictError,
    NotFoundError,
    ScheduleError,
    StorageError,
    ValidationError,
)
from schedule_ai.metrics import REQUESTS_TOTAL
from storage import db

# Logging configuration
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s"
)
logger = logging.getLogger(__name__)

RUN_WORKERS = os.getenv("RUN_WORKERS", "true").lower() in {"1", "true", "yes"}

app = FastAPI(title="Schedule AI")

app.include_router(ops.router)
app.include_router(imports.router)
app.include_router(events.router)
app.include_router(schedule.router)
app.include_router(notifications.router)
app.include_router(rules.router)

_STATUS_BY_ERROR = (
    (NotFoundError, 404),
    (ValidationError, 422),
    (ConflictError, 409),
    (CollaboratorError, 502),
    (StorageError, 503),
)


@app.exception_handler(ScheduleError)
async def schedule_error_handler(request: Request, exc: ScheduleError) -> JSONResponse:
    status_code = next((code for cls, code in _STATUS_BY_ERROR if isinstance(exc, cls)), 500)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(
        status_code=status_code,
        content={"error": exc.kind, "detail": exc.message},
    )


@app.middleware("http")
async def count_requests(request: Request, call_next):
    response = await call_next(request)
    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)
    REQUESTS_TOTAL.labels(endpoint=endpoint, status=str(response.status_code)).inc()
    return response


@app.on_event("startup")
async def startup() -> None:
    if state.services is None:
        settings = PipelineSettings.from_env()
        if USE_POSTGRES:
            await db.init_db_pool()
            await db.init_schema()
            stores = state.postgres_stores()
            logger.info("Using PostgreSQL storage")
        else:
            stores = state.memory_stores()
            logger.info("Using in-memory storage")

        client = LLMClient(get_provider(timeout_s=max(settings.ai_call_timeout_s, settings.optimizer_timeout_s)))
        logger.info(f"LLM provider ready (model: {client.model_name})")
        state.services = state.build_services(
            stores,
            analyzer=LLMTextAnalyzer(client),
            optimizer_ai=LLMScheduleOptimizer(client),
            settings=settings,
        )

    if RUN_WORKERS:
        asyncio.create_task(_notification_worker())
        asyncio.create_task(_stale_recovery_worker())


@app.on_event("shutdown")
async def shutdown() -> None:
    if USE_POSTGRES:
        await db.close_db_pool()
