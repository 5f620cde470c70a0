"""FastAPI application entry point."""
import asyncio
from contextlib import asynccontextmanager, suppress
from typing import AsyncIterator

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.deps import MediaServices
from app.api.errors import generic_exception_handler, media_service_error_handler
from app.api.v1.router import api_router
from app.core.config import settings
from app.core.logging import get_logger, setup_logging
from app.models.media import HealthResponse
from app.services.errors import MediaServiceError
from app.services.job_registry import JobRegistry

# Setup logging
setup_logging()
logger = get_logger(__name__)

VERSION = "0.1.0"


async def _sweep_jobs(registry: JobRegistry, interval: float) -> None:
    """Expire finished jobs even when no request touches the registry."""
    while True:
        await asyncio.sleep(interval)
        removed = registry.purge_expired()
        if removed:
            logger.debug(f"Sweeper removed {removed} expired jobs")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan events.

    Args:
        app: FastAPI application instance

    Yields:
        None
    """
    # Startup
    logger.info(f"Starting application in {settings.ENV} mode")
    logger.info(f"API v1 prefix: {settings.API_V1_PREFIX}")
    logger.info(f"CORS origins: {settings.cors_origins_list}")
    logger.info(f"Concurrent transcodes: {settings.MAX_CONCURRENT_TRANSCODES}")

    services: MediaServices = app.state.services
    sweeper = asyncio.create_task(
        _sweep_jobs(services.registry, settings.JOB_SWEEP_INTERVAL_SECONDS)
    )

    yield

    # Shutdown
    logger.info("Shutting down application")
    sweeper.cancel()
    with suppress(asyncio.CancelledError):
        await sweeper
    await services.aclose()


def create_app(http_transport: httpx.AsyncBaseTransport | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        http_transport: Optional transport for upstream HTTP requests

    Returns:
        Configured FastAPI application instance
    """
    app = FastAPI(
        title="Media Transcode API",
        description="Fetch remote media and stream it back transcoded with ffmpeg",
        version=VERSION,
        debug=settings.DEBUG,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.services = MediaServices.create(transport=http_transport)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Content-Disposition"],
    )

    # Exception handlers
    app.add_exception_handler(MediaServiceError, media_service_error_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    # Include API routes
    app.include_router(api_router, prefix=settings.API_V1_PREFIX)

    # Health check endpoint
    @app.get(
        "/health",
        response_model=HealthResponse,
        tags=["health"],
        summary="Health check",
        description="Check if the service is running",
    )
    async def health_check() -> HealthResponse:
        """Health check endpoint.

        Returns:
            Health status response
        """
        return HealthResponse(status="healthy", version=VERSION)

    return app


# Create application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=settings.PORT,
        reload=settings.is_development,
        log_level=settings.LOG_LEVEL.lower(),
    )
