"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from obscura.api.routes import router
from obscura.config import get_settings
from obscura.ml.inference import InferencePool
from obscura.ml.model_manager import OnnxModelManager
from obscura.ml.orchestrator import CaptureSessions

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting Obscura (device=%s, max_concurrent=%s, detection=%s)",
        settings.device,
        settings.max_concurrent,
        settings.face_detection_model,
    )

    inference_pool = InferencePool(settings)
    model_manager = OnnxModelManager(settings)
    app.state.inference_pool = inference_pool
    app.state.model_manager = model_manager
    app.state.capture_sessions = CaptureSessions(model_manager, inference_pool, settings)

    # Load before the first capture; captures arriving earlier wait on the same load.
    preload = asyncio.create_task(model_manager.initialize()) if settings.preload_model else None

    logger.info("Obscura ready")
    yield

    logger.info("Shutting down Obscura")
    if preload is not None and not preload.done():
        preload.cancel()
    app.state.capture_sessions.clear()
    inference_pool.shutdown()
    model_manager.shutdown()
    logger.info("Obscura shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="Obscura",
        description="Irreversible face obfuscation for captured photos",
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
    """Serve the app with uvicorn on the configured host and port."""
    settings = get_settings()
    uvicorn.run("obscura.main:app", host=settings.host, port=settings.port)
