"""Pydantic request/response schemas for the ClassifyX API."""

from __future__ import annotations

from pydantic import BaseModel, Field, field_validator

_ACCEPTED_SOURCE_PREFIXES = ("http://", "https://", "data:")


class PredictionSchema(BaseModel):
    """A single ranked class prediction."""

    label: str
    score: float = Field(ge=0.0, le=1.0, description="Softmax probability (0.0-1.0)")
    index: int = Field(ge=0, description="Class index in the label vocabulary")


class ClassifyImageResponse(BaseModel):
    """Response for the image classification endpoints."""

    predictions: list[PredictionSchema] = Field(description="Top-K predictions, highest score first")
    execution_time_ms: float = Field(description="Total pipeline time in milliseconds")


class ClassifyUrlRequest(BaseModel):
    """Classify an image referenced by URL or embedded as a data URI."""

    source: str = Field(description="http(s) URL or data:image/...;base64,... URI")
    top_k: int | None = Field(default=None, ge=1)

    @field_validator("source")
    @classmethod
    def _check_source(cls, value: str) -> str:
        if not value.startswith(_ACCEPTED_SOURCE_PREFIXES):
            raise ValueError("source must be an http(s) URL or a data URI")
        return value

    @property
    def is_remote(self) -> bool:
        return not self.source.startswith("data:")


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    model_loaded: bool
    labels_loaded: bool
    concurrent_requests: int
    queue_depth: int


class ModelInfoResponse(BaseModel):
    """Configured classifier model and graph boundary."""

    source: str = Field(description="Model source: 'path', 'url', or 'huggingface'")
    location: str
    device: str
    input_name: str
    output_name: str
    num_labels: int
    reuse_session: bool
    loaded: bool


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
