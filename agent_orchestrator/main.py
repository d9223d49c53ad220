"""FastAPI entry-point exposing orchestrator controls."""
from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request, status
from fastapi.responses import JSONResponse

from agent_orchestrator.api.agents import router as agents_router
from agent_orchestrator.api.monitoring import router as monitoring_router
from agent_orchestrator.api.tasks import router as tasks_router
from agent_orchestrator.core.errors import (
    JobNotFoundError,
    JobStateError,
    NotInitializedError,
    OrchestratorError,
    PoolClosedError,
    StoreUnavailableError,
    ValidationError,
)
from agent_orchestrator.orchestration.orchestrator import UNHEALTHY, Orchestrator
from agent_orchestrator.runtime import configure_logging, get_llm_pool, get_metrics, get_orchestrator

logger = logging.getLogger(__name__)

_ERROR_STATUS = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    JobNotFoundError: status.HTTP_404_NOT_FOUND,
    JobStateError: status.HTTP_409_CONFLICT,
    PoolClosedError: status.HTTP_503_SERVICE_UNAVAILABLE,
    StoreUnavailableError: status.HTTP_503_SERVICE_UNAVAILABLE,
    NotInitializedError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for FastAPI application."""
    configure_logging()
    metrics = get_metrics()
    orchestrator = get_orchestrator()
    # Startup: a failed initialize aborts the app after cleaning up
    await orchestrator.initialize()
    metrics.start()
    yield
    # Shutdown: drain pools, release the store and model clients
    await orchestrator.shutdown()
    await metrics.stop()
    await get_llm_pool().close()


app = FastAPI(title="Agent Task Orchestrator", lifespan=lifespan)
app.include_router(tasks_router)
app.include_router(agents_router)
app.include_router(monitoring_router)
app.state.active_requests = 0


@app.middleware("http")
async def record_request_timing(request: Request, call_next):
    state = request.app.state
    metrics = get_metrics()
    state.active_requests += 1
    metrics.record_active_connections(state.active_requests)
    started = time.perf_counter()
    success = False
    try:
        response = await call_next(request)
        success = response.status_code < 500
        return response
    finally:
        state.active_requests -= 1
        metrics.record_active_connections(state.active_requests)
        metrics.record_request((time.perf_counter() - started) * 1000, success)


@app.exception_handler(OrchestratorError)
async def orchestrator_error_handler(request: Request, exc: OrchestratorError) -> JSONResponse:
    code = next(
        (status_code for error_type, status_code in _ERROR_STATUS.items() if isinstance(exc, error_type)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    if code >= 500:
        logger.error("Request failed", extra={"path": request.url.path, "error": str(exc)})
    return JSONResponse(status_code=code, content={"detail": str(exc), "error": type(exc).__name__})


@app.get("/health")
async def health(orchestrator: Orchestrator = Depends(get_orchestrator)) -> JSONResponse:
    stats = await orchestrator.get_orchestrator_stats()
    health = stats.system_health
    body = {
        "status": health.overall,
        "agents": health.agents,
        "queues": health.queues,
        "database": health.database,
    }
    code = status.HTTP_503_SERVICE_UNAVAILABLE if health.overall == UNHEALTHY else status.HTTP_200_OK
    return JSONResponse(status_code=code, content=body)
