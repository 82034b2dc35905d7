"""FastAPI application setup with lifespan and exception handlers."""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from songreel import __version__, validate_dependencies
from songreel.db import init_database, shutdown
from songreel.api.routes import router
from songreel.services.media_encoder import FfmpegEncoder
from songreel.services.providers import get_provider

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager.

    Startup:
        - Validate system dependencies (ffmpeg, ffprobe)
        - Initialize database schema
        - Build the content provider and media encoder once

    Shutdown:
        - Close database connections
    """
    logger.info("Starting songreel API...")
    validate_dependencies()
    await init_database()
    app.state.provider = get_provider()
    app.state.encoder = FfmpegEncoder()
    logger.info(f"API startup complete (provider: {app.state.provider.name})")

    yield

    logger.info("Shutting down songreel API...")
    await shutdown()
    logger.info("API shutdown complete")


app = FastAPI(
    title="songreel API",
    version=__version__,
    lifespan=lifespan,
)

# CORS for a local frontend dev server
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Catch-all exception handler to prevent stack traces in API responses."""
    logger.error(f"Unhandled exception in {request.method} {request.url.path}: {type(exc).__name__}: {str(exc)}")
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "detail": str(exc),
        }
    )
