"""
Backend API Service - FastAPI Application

Usage:
    uvicorn services.api.main:app --host 0.0.0.0 --port 8000 --timeout-graceful-shutdown 10
    python -m services.api.main

On SIGINT/SIGTERM the server stops accepting requests and gives an in-flight
ingestion API_GRACEFUL_SHUTDOWN_SECONDS to finish. After that the request is
cancelled; the pipeline saves what it has collected before the cancellation
completes. A run still registered when the lifespan shuts down is interrupted.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

import uvicorn
from fastapi import FastAPI

from services.api.routes import router
from utils.config import get_settings
from utils.logging import setup_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    yield

    pipeline = getattr(app.state, "active_pipeline", None)
    if pipeline is not None:
        logger.warning("Shutting down with an ingestion in progress, interrupting it")
        pipeline.interrupt()


def create_app() -> FastAPI:
    """Build the FastAPI application."""
    settings = get_settings()
    setup_logging(level=settings.LOG_LEVEL, format_type=settings.LOG_FORMAT)

    app = FastAPI(title=settings.APP_NAME, version=settings.APP_VERSION, lifespan=lifespan)
    # One ingestion at a time; the call budget assumes strictly serial model calls
    app.state.run_lock = asyncio.Lock()
    app.state.active_pipeline = None
    app.include_router(router)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    return app


app = create_app()


if __name__ == "__main__":
    settings = get_settings()
    uvicorn.run(
        "services.api.main:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        timeout_graceful_shutdown=settings.API_GRACEFUL_SHUTDOWN_SECONDS,
    )
