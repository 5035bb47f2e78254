"""
Regulatory Truth Service - Main Application
===========================================

FastAPI application serving the published rule set, the human review
queue and release verification, with the pipeline stages running as
background workers.

Version: 0.1.0
"""

from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from services.regulatory_truth.errors import (
    ApprovalRequired,
    ConflictNotOpen,
    InvalidPredicate,
    InvalidTransition,
    NotFound,
    RegulatoryTruthError,
)
from services.regulatory_truth.models import Stage
from services.regulatory_truth.pipeline import Pipeline
from services.regulatory_truth.queues import RedisWorkQueue
from services.regulatory_truth.routes import conflicts, endpoints, pipeline, releases, rules
from shared.config import QueueBackend, StoreBackend, settings
from shared.database.postgres import PostgresClient
from shared.database.redis import RedisClient
from shared.logging import get_logger, setup_logging
from shared.models.common import ErrorResponse, HealthResponse


# Setup logging
setup_logging(
    log_level=settings.log_level.value,
    json_logs=settings.is_production,
    service_name="regulatory-truth",
)

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> Any:
    """Application lifespan manager."""
    logger.info(
        "regulatory_truth_starting",
        environment=settings.environment.value,
        port=settings.ports.regulatory_truth,
        store_backend=settings.pipeline.store_backend.value,
        queue_backend=settings.pipeline.queue_backend.value,
    )

    # Startup
    try:
        if settings.pipeline.store_backend == StoreBackend.POSTGRES:
            # Row models register on Base when the store module is imported
            import services.regulatory_truth.store.postgres  # noqa: F401

            await PostgresClient.create_all()
            logger.info("postgres_connected")

        if settings.pipeline.queue_backend == QueueBackend.REDIS:
            RedisClient.get_client()
            logger.info("redis_connected")

        regulatory_pipeline = Pipeline()
        app.state.pipeline = regulatory_pipeline
        if settings.pipeline.run_workers:
            await regulatory_pipeline.start()
        else:
            await regulatory_pipeline.seed()

    except Exception as e:
        logger.error("startup_failed", error=str(e))
        raise

    yield

    # Shutdown
    logger.info("regulatory_truth_shutting_down")
    await regulatory_pipeline.stop()
    if settings.pipeline.store_backend == StoreBackend.POSTGRES:
        await PostgresClient.close()
    if settings.pipeline.queue_backend == QueueBackend.REDIS:
        await RedisClient.close()


# Create FastAPI application
app = FastAPI(
    title="Regulatory Truth Service",
    description="Evidence-backed regulatory rules with human-gated releases",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors.origins_list,
    allow_credentials=settings.cors.allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# Health Check Endpoints
# ============================================================================


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check() -> HealthResponse:
    """
    Service health check.

    Returns health status of the service and its configured backends.
    """
    components: dict[str, dict[str, Any]] = {}

    if settings.pipeline.store_backend == StoreBackend.POSTGRES:
        components["postgres"] = await PostgresClient.health_check()
    else:
        components["store"] = {"status": "healthy", "backend": "memory"}

    if settings.pipeline.queue_backend == QueueBackend.REDIS:
        queue = RedisWorkQueue(RedisClient.get_client())
        components["redis"] = await RedisClient.health_check(queue_keys=[queue.key(stage) for stage in Stage])
    else:
        components["queue"] = {"status": "healthy", "backend": "memory"}

    return HealthResponse.from_components("regulatory-truth", "0.1.0", components)


@app.get("/", tags=["Health"])
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": "Regulatory Truth Service",
        "version": "0.1.0",
        "docs": "/docs",
    }


# ============================================================================
# Include Routers
# ============================================================================

app.include_router(
    rules.router,
    prefix="/api/v1/rules",
    tags=["Rules"],
)

app.include_router(
    conflicts.router,
    prefix="/api/v1/conflicts",
    tags=["Conflicts"],
)

app.include_router(
    releases.router,
    prefix="/api/v1/releases",
    tags=["Releases"],
)

app.include_router(
    endpoints.router,
    prefix="/api/v1/endpoints",
    tags=["Endpoints"],
)

app.include_router(
    pipeline.router,
    prefix="/api/v1/pipeline",
    tags=["Pipeline"],
)


# ============================================================================
# Error Handlers
# ============================================================================


def status_for(exc: RegulatoryTruthError) -> int:
    """HTTP status for a pipeline error."""
    if isinstance(exc, NotFound):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, ApprovalRequired | InvalidTransition | ConflictNotOpen):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, InvalidPredicate):
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    return status.HTTP_400_BAD_REQUEST


@app.exception_handler(RegulatoryTruthError)
async def pipeline_exception_handler(request: Any, exc: RegulatoryTruthError) -> Any:
    """Handle pipeline errors."""
    status_code = status_for(exc)
    logger.warning(
        "pipeline_exception",
        status_code=status_code,
        code=exc.code,
        error=exc.message,
        path=request.url.path,
    )
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(
            error=exc.message,
            code=exc.code,
            status_code=status_code,
            details=exc.to_dict(),
        ).model_dump(mode="json"),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Any, exc: HTTPException) -> Any:
    """Handle HTTP exceptions."""
    logger.warning(
        "http_exception",
        status_code=exc.status_code,
        detail=exc.detail,
        path=request.url.path,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": exc.detail,
            "status_code": exc.status_code,
        },
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Any, exc: Exception) -> Any:
    """Handle unexpected exceptions."""
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "success": False,
            "error": "Internal server error",
            "status_code": 500,
        },
    )


# ============================================================================
# Run with Uvicorn
# ============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "services.regulatory_truth.main:app",
        host="0.0.0.0",
        port=settings.ports.regulatory_truth,
        reload=settings.debug,
        log_level=settings.log_level.value.lower(),
    )
