import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from api.config.logging import setup_logging
from api.config.settings import settings
from api.infra.database import Database
from api.v1.core.exceptions import (
    RequestContextMiddleware,
    StreamVibeException,
    general_exception_handler,
    http_exception_handler,
    request_validation_exception_handler,
    streamvibe_exception_handler,
)
from api.v1.core.registries import job_registry, webhook_processor_registry
from api.v1.healthz import router as health_router
from api.v1.infra.jobs.notifier import PostgresJobEventListener, job_events
from api.v1.infra.jobs.routes import maintenance_router
from api.v1.infra.jobs.routes import router as jobs_router
from api.v1.infra.jobs.routes import worker_router
from api.v1.infra.webhooks.routes import admin_router as webhook_admin_router
from api.v1.infra.webhooks.routes import router as webhooks_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Relay cross-process job notifications into this process on PostgreSQL."""
    listener = None
    if settings.database_url.startswith("postgresql"):
        database = Database(settings)
        listener = PostgresJobEventListener(database.engine, job_events)
        try:
            await listener.start()
        except Exception:
            # The change stream is best-effort; the API serves without it
            logger.exception("Job event listener failed to start")
            await database.close()
            listener = None
    try:
        yield
    finally:
        if listener is not None:
            await listener.stop()
            await listener.engine.dispose()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""

    # Initialize structured logging
    setup_logging()

    app = FastAPI(
        title=settings.app_name,
        description="Asynchronous job engine and idempotent billing event ledger",
        version=settings.version,
        debug=settings.debug,
        lifespan=lifespan,
        # All endpoints will be under /v1/ prefix
        openapi_url="/v1/openapi.json" if settings.debug else None,
        docs_url="/v1/docs" if settings.debug else None,
        redoc_url="/v1/redoc" if settings.debug else None,
    )

    # Add middleware
    app.add_middleware(RequestContextMiddleware)

    # Add CORS middleware for development
    if settings.debug:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    # Add exception handlers
    app.add_exception_handler(StreamVibeException, streamvibe_exception_handler)
    app.add_exception_handler(
        RequestValidationError, request_validation_exception_handler
    )
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    # Include routers with /v1 prefix
    app.include_router(health_router, prefix="/v1", tags=["health"])
    app.include_router(jobs_router, prefix="/v1")
    app.include_router(worker_router, prefix="/v1")
    app.include_router(maintenance_router, prefix="/v1")
    app.include_router(webhooks_router, prefix="/v1")
    app.include_router(webhook_admin_router, prefix="/v1")

    # Freeze registries in non-development environments to prevent runtime modifications
    if settings.environment != "development":
        job_registry.freeze()
        webhook_processor_registry.freeze()

    return app


# Create the app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "api.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.workers,
    )
