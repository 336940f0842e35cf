"""FastAPI application entry point for the Taskgate orchestrator.

This module initializes the FastAPI application with its middleware,
routers and lifespan configured.

Usage:
    uv run uvicorn main:app --reload
"""

import contextlib
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api import router, websocket_router
from config import settings
from orchestrator import Orchestrator

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Build the orchestrator on startup and tear it down on shutdown.

    Args:
        app: The FastAPI application instance.

    Yields:
        None during application runtime.
    """
    logger.info(
        "application_starting",
        backend_port=settings.backend_port,
        log_level=settings.log_level,
        stability_delay_seconds=settings.stability_delay_seconds,
        max_verification_retries=settings.max_verification_retries,
    )

    orchestrator = Orchestrator.from_settings(settings)
    app.state.orchestrator = orchestrator

    cleanup_task = await orchestrator.start_cleanup_loop(
        interval_seconds=settings.cleanup_interval_seconds
    )
    app.state.cleanup_task = cleanup_task

    logger.info("application_started")

    yield

    logger.info("application_shutting_down")

    if not cleanup_task.done():
        cleanup_task.cancel()
        with contextlib.suppress(Exception):
            await cleanup_task

    await orchestrator.shutdown()

    logger.info("application_shutdown_complete")


app = FastAPI(
    title="Taskgate",
    description="Dependency-aware task orchestration with debounced verification gating.",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["*"],
)

app.include_router(router, tags=["orchestration"])
app.include_router(websocket_router, tags=["websocket"])


@app.get("/", include_in_schema=False)
async def root() -> dict[str, str]:
    """Root endpoint pointing at the API documentation."""
    return {
        "message": "Taskgate API",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.backend_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
