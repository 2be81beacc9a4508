"""API route definitions."""

from __future__ import annotations

from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, Request, UploadFile, status

from classifyx.api.middleware import verify_api_key
from classifyx.api.schemas import (
    ClassifyImageResponse,
    ClassifyUrlRequest,
    ErrorResponse,
    HealthResponse,
    ModelInfoResponse,
    PredictionSchema,
)
from classifyx.ml.errors import (
    ClassifyXError,
    DecodeError,
    DimensionMismatchError,
    EngineInitError,
    InferenceError,
    ModelFetchError,
    OutputShapeError,
    UnsupportedFormatError,
)

if TYPE_CHECKING:
    from classifyx.config import Settings
    from classifyx.ml.image_classifier import ImageClassifier
    from classifyx.ml.inference import InferencePool
    from classifyx.ml.labels import LabelVocabulary
    from classifyx.ml.model_manager import ModelCache
    from classifyx.ml.preprocessing import ImageSource
    from classifyx.ml.types import DetectionResult

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

_ERROR_STATUS: tuple[tuple[type[ClassifyXError], int], ...] = (
    (DecodeError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (UnsupportedFormatError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (ModelFetchError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (EngineInitError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (OutputShapeError, status.HTTP_500_INTERNAL_SERVER_ERROR),
    (DimensionMismatchError, status.HTTP_500_INTERNAL_SERVER_ERROR),
    (InferenceError, status.HTTP_500_INTERNAL_SERVER_ERROR),
)

_CLASSIFY_RESPONSES: dict[int | str, dict[str, object]] = {
    status.HTTP_413_REQUEST_ENTITY_TOO_LARGE: {"model": ErrorResponse},
    status.HTTP_422_UNPROCESSABLE_ENTITY: {"model": ErrorResponse},
    status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
    status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
}


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_model_cache(request: Request) -> ModelCache:
    cache: ModelCache = request.app.state.model_cache
    return cache


def _get_vocabulary(request: Request) -> LabelVocabulary:
    vocabulary: LabelVocabulary | None = request.app.state.vocabulary
    if vocabulary is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Label vocabulary is not loaded",
        )
    return vocabulary


def _status_for(exc: ClassifyXError) -> int:
    for error_type, status_code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def _to_response(result: DetectionResult) -> ClassifyImageResponse:
    return ClassifyImageResponse(
        predictions=[
            PredictionSchema(label=prediction.label, score=prediction.score, index=prediction.index)
            for prediction in result.predictions
        ],
        execution_time_ms=result.execution_time_ms,
    )


async def _classify(request: Request, source: ImageSource, top_k: int | None) -> ClassifyImageResponse:
    settings = _get_settings(request)
    vocabulary = _get_vocabulary(request)
    pool = _get_inference_pool(request)
    classifier: ImageClassifier = request.app.state.classifier

    k = top_k if top_k is not None else settings.top_k
    try:
        result = await pool.run(classifier.classify, source, vocabulary, k)
    except TimeoutError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Inference queue is full, retry later",
        ) from exc
    except ClassifyXError as exc:
        raise HTTPException(status_code=_status_for(exc), detail=str(exc)) from exc
    return _to_response(result)


@router.post(
    "/classify-image",
    response_model=ClassifyImageResponse,
    responses=_CLASSIFY_RESPONSES,
    summary="Classify an uploaded image",
)
async def classify_image(
    request: Request,
    file: UploadFile,
    top_k: Annotated[int | None, Query(ge=1)] = None,
) -> ClassifyImageResponse:
    """Classify an uploaded image and return the top-K labels."""
    settings = _get_settings(request)
    data = await file.read(settings.max_file_size + 1)
    if len(data) > settings.max_file_size:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File exceeds {settings.max_file_size} bytes",
        )
    return await _classify(request, data, top_k)


@router.post(
    "/classify-url",
    response_model=ClassifyImageResponse,
    responses={status.HTTP_403_FORBIDDEN: {"model": ErrorResponse}, **_CLASSIFY_RESPONSES},
    summary="Classify an image referenced by URL or data URI",
)
async def classify_url(request: Request, body: ClassifyUrlRequest) -> ClassifyImageResponse:
    """Classify an http(s) URL or an inline data URI."""
    settings = _get_settings(request)
    if body.is_remote and not settings.allow_remote_images:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Remote image URLs are disabled (set CLASSIFYX_ALLOW_REMOTE_IMAGES=true)",
        )
    return await _classify(request, body.source, body.top_k)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        model_loaded=_get_model_cache(request).is_loaded,
        labels_loaded=request.app.state.vocabulary is not None,
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get(
    "/model",
    response_model=ModelInfoResponse,
    summary="Describe the configured model",
)
async def model_info(request: Request) -> ModelInfoResponse:
    """Return the configured model source, graph boundary and label count."""
    settings = _get_settings(request)
    cache = _get_model_cache(request)
    vocabulary: LabelVocabulary | None = request.app.state.vocabulary
    return ModelInfoResponse(
        source=str(cache.source),
        location=cache.location,
        device=settings.device,
        input_name=settings.input_name,
        output_name=settings.output_name,
        num_labels=len(vocabulary) if vocabulary is not None else 0,
        reuse_session=settings.reuse_session,
        loaded=cache.is_loaded,
    )
