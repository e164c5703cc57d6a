"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from autotagger.api.routes import router
from autotagger.config import get_settings
from autotagger.errors import ModelLoadError, WorkerTimeoutError
from autotagger.host.coordinator import ClassificationCoordinator
from autotagger.worker.transport import create_transport

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: start the worker on startup, stop it on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting Autotagger (model=%s, source=%s, worker=%s)",
        settings.model_name,
        settings.model_source,
        settings.worker_mode,
    )

    coordinator = ClassificationCoordinator(create_transport(settings), settings)
    app.state.coordinator = coordinator
    try:
        await coordinator.start()
    except (ModelLoadError, WorkerTimeoutError):
        # Keep serving: health reports the failure and classification answers 503.
        logger.exception("Classification worker failed to start")
    else:
        logger.info("Autotagger ready")

    yield

    logger.info("Shutting down Autotagger")
    await coordinator.close()
    logger.info("Autotagger shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="Autotagger",
        description="Automatic image tagging backed by an isolated classification worker",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    settings = get_settings()
    uvicorn.run("autotagger.main:app", host=settings.host, port=settings.port)
