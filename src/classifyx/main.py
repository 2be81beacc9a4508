"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from classifyx.api.routes import router
from classifyx.config import Settings, get_settings
from classifyx.ml.errors import LabelVocabularyError
from classifyx.ml.image_classifier import ClassificationPipeline
from classifyx.ml.inference import InferencePool
from classifyx.ml.invoker import InferenceInvoker
from classifyx.ml.labels import LabelVocabulary
from classifyx.ml.model_manager import ModelCache, SessionFactory
from classifyx.ml.preprocessing import PillowPreprocessor

logger = logging.getLogger(__name__)


def _load_vocabulary(settings: Settings) -> LabelVocabulary | None:
    if not Path(settings.labels_path).exists():
        logger.warning("Label file %s not found; classification disabled", settings.labels_path)
        return None
    try:
        return LabelVocabulary.from_file(settings.labels_path)
    except LabelVocabularyError:
        logger.exception("Failed to load labels; classification disabled")
        return None


def init_app_state(app: FastAPI, settings: Settings) -> None:
    """Wire settings, model cache, pipeline, labels and worker pool onto app.state."""
    model_cache = ModelCache(settings)
    session_factory = SessionFactory(settings, model_cache)
    invoker = InferenceInvoker.from_settings(settings, session_factory)

    app.state.settings = settings
    app.state.model_cache = model_cache
    app.state.session_factory = session_factory
    app.state.classifier = ClassificationPipeline(PillowPreprocessor.from_settings(settings), invoker)
    app.state.vocabulary = _load_vocabulary(settings)
    app.state.inference_pool = InferencePool(settings)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    init_app_state(app, settings)

    logger.info(
        "Starting ClassifyX (device=%s, max_concurrent=%s, model=%s:%s, reuse_session=%s)",
        settings.device,
        settings.max_concurrent,
        settings.model_source,
        app.state.model_cache.location,
        settings.reuse_session,
    )

    if settings.preload_model:
        session_factory: SessionFactory = app.state.session_factory
        await asyncio.to_thread(session_factory.warmup)

    logger.info("ClassifyX ready")
    yield

    logger.info("Shutting down ClassifyX")
    app.state.inference_pool.shutdown()
    app.state.session_factory.shutdown()
    app.state.model_cache.clear()
    logger.info("ClassifyX shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="ClassifyX",
        description="ONNX image classification API with ImageNet-style preprocessing",
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
    """Serve the API with uvicorn on the configured host and port."""
    settings = get_settings()
    uvicorn.run("classifyx.main:app", host=settings.host, port=settings.port)
