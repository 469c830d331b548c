from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from racky.config.logging import setup_logging
from racky.config.settings import settings
from racky.infra.database import get_database
from racky.v1.core.exceptions import (
    RackyException,
    RequestContextMiddleware,
    general_exception_handler,
    http_exception_handler,
    racky_exception_handler,
)
from racky.v1.core.registries import job_processor_registry
from racky.v1.healthz import router as health_router
from racky.v1.infra.jobs.routes import router as jobs_router
from racky.v1.infra.jobs.service import JobQueueService, build_job_queue_service


def create_app(job_queue: JobQueueService | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        job_queue: Prebuilt service (tests); built from settings otherwise
    """

    # Initialize structured logging
    setup_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        database = get_database(settings)
        if settings.database_url.startswith("sqlite"):
            await database.create_all()

        service = job_queue or build_job_queue_service(settings, database.SessionLocal)
        app.state.job_queue = service
        # Degraded mode is fine here: submits return placeholders until connected
        await service.initialize()
        try:
            yield
        finally:
            await service.shutdown()
            await database.close()

    app = FastAPI(
        title=settings.app_name,
        description="Asynchronous job execution over RabbitMQ",
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
    app.add_exception_handler(RackyException, racky_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    # Include routers with /v1 prefix
    app.include_router(health_router, prefix="/v1", tags=["health"])
    app.include_router(jobs_router, prefix="/v1")

    # Freeze the processor registry outside development
    if settings.environment != "development":
        job_processor_registry.freeze()

    return app


# Create the app instance
app = create_app()


def main() -> None:
    import uvicorn

    uvicorn.run(
        "racky.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.workers,
    )


if __name__ == "__main__":
    main()
