"""FastAPI application entry point."""
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from yt_dlp.version import __version__ as yt_dlp_version

from app.api.errors import downloader_error_handler, generic_exception_handler
from app.api.router import api_router
from app.core.config import settings
from app.core.logging import get_logger, setup_logging
from app.models.video import HealthResponse
from app.services.errors import DownloaderError

API_VERSION = "0.1.0"

# Setup logging
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan events.

    Args:
        app: FastAPI application instance

    Yields:
        None
    """
    # Startup
    Path(settings.DOWNLOAD_DIR).mkdir(parents=True, exist_ok=True)
    logger.info(f"Starting application in {settings.ENV} mode")
    logger.info(f"API prefix: {settings.API_PREFIX}")
    logger.info(f"CORS origins: {settings.cors_origins_list}")
    logger.info(f"Download directory: {settings.DOWNLOAD_DIR}")

    yield

    # Shutdown
    logger.info("Shutting down application")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    app = FastAPI(
        title="Media Fetch API",
        description="Download, merge and stream videos using yt-dlp and ffmpeg",
        version=API_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # CORS middleware; requests without an Origin header pass through untouched
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Content-Disposition", "Content-Length"],
    )

    # Exception handlers
    app.add_exception_handler(DownloaderError, downloader_error_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    # Include API routes
    app.include_router(api_router, prefix=settings.API_PREFIX)

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
        return HealthResponse(
            status="healthy",
            version=API_VERSION,
            yt_dlp_version=yt_dlp_version,
        )

    # Built frontend, mounted last so API routes take precedence
    if settings.STATIC_DIR and Path(settings.STATIC_DIR).is_dir():
        app.mount("/", StaticFiles(directory=settings.STATIC_DIR, html=True), name="static")

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
