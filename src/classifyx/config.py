"""Environment-based configuration for ClassifyX."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from CLASSIFYX_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="CLASSIFYX_",
        case_sensitive=False,
        protected_namespaces=(),
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8083
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Model source
    model_source: Literal["path", "url", "huggingface"] = "path"
    model_path: str = "models/resnet50-v1-12.onnx"
    model_url: str | None = None
    model_repo_id: str | None = None
    model_filename: str = "resnet50-v1-12.onnx"
    models_dir: str = "models"

    # Label vocabulary, index-aligned with the model output
    labels_path: str = "models/labels.json"

    # Graph boundary
    input_name: str = "data"
    output_name: str = "resnetv17_dense0_fwd"

    # Ranking
    top_k: int = Field(default=3, ge=1)

    # ONNX Runtime pass-through
    graph_optimization_level: Literal["disable", "basic", "extended", "all"] = "all"
    execution_mode: Literal["sequential", "parallel"] = "sequential"
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=0)
    enable_cpu_mem_arena: bool = True
    enable_mem_pattern: bool = True
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Session lifecycle
    reuse_session: bool = False
    preload_model: bool = False

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)
    queue_timeout: float = Field(default=5.0, gt=0)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=20_971_520, ge=1)
    image_fetch_timeout: float = Field(default=10.0, gt=0)
    allow_remote_images: bool = False


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
