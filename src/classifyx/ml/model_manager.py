"""Model manager: fetch and cache model bytes, build ONNX inference sessions.

The serialized model is fetched at most once per ``ModelCache`` instance, from
a local path, an HTTP URL or the HuggingFace Hub. ``SessionFactory`` builds
InferenceSessions from those bytes, either fresh for every call (default) or
once and reused.
"""

from __future__ import annotations

import logging
import threading
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING

import httpx
from huggingface_hub import hf_hub_download
from onnxruntime import GraphOptimizationLevel, InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from classifyx.ml.errors import EngineInitError, ModelFetchError

if TYPE_CHECKING:
    from classifyx.config import Settings

logger = logging.getLogger(__name__)

MODEL_FETCH_TIMEOUT_SECONDS: float = 60.0

_GRAPH_OPTIMIZATION_LEVELS: dict[str, GraphOptimizationLevel] = {
    "disable": GraphOptimizationLevel.ORT_DISABLE_ALL,
    "basic": GraphOptimizationLevel.ORT_ENABLE_BASIC,
    "extended": GraphOptimizationLevel.ORT_ENABLE_EXTENDED,
    "all": GraphOptimizationLevel.ORT_ENABLE_ALL,
}

_EXECUTION_MODES: dict[str, ExecutionMode] = {
    "sequential": ExecutionMode.ORT_SEQUENTIAL,
    "parallel": ExecutionMode.ORT_PARALLEL,
}


class ModelSourceKind(StrEnum):
    PATH = "path"
    URL = "url"
    HUGGINGFACE = "huggingface"


# ---------------------------------------------------------------------------
# Model bytes cache
# ---------------------------------------------------------------------------


class ModelCache:
    """Populate-once, read-many cache of the serialized model."""

    def __init__(self, settings: Settings) -> None:
        self._source = ModelSourceKind(settings.model_source)
        self._model_path = Path(settings.model_path)
        self._model_url = settings.model_url
        self._repo_id = settings.model_repo_id
        self._filename = settings.model_filename
        self._models_dir = Path(settings.models_dir)

        self._lock = threading.Lock()
        self._model_bytes: bytes | None = None

    # -- Public API ---------------------------------------------------------

    def get_model_bytes(self) -> bytes:
        """Return the cached model bytes, fetching them on first use."""
        cached = self._model_bytes
        if cached is not None:
            return cached

        with self._lock:
            # Another thread may have populated the cache while we waited.
            if self._model_bytes is None:
                self._model_bytes = self._fetch()
                logger.info("Cached %d model bytes from %s", len(self._model_bytes), self.location)
            return self._model_bytes

    @property
    def is_loaded(self) -> bool:
        return self._model_bytes is not None

    @property
    def source(self) -> ModelSourceKind:
        return self._source

    @property
    def location(self) -> str:
        """Human-readable description of where the model comes from."""
        if self._source is ModelSourceKind.URL:
            return self._model_url or "<unset>"
        if self._source is ModelSourceKind.HUGGINGFACE:
            return f"{self._repo_id or '<unset>'}/{self._filename}"
        return str(self._model_path)

    def clear(self) -> None:
        """Drop the cached bytes."""
        with self._lock:
            self._model_bytes = None

    # -- Internal -----------------------------------------------------------

    def _fetch(self) -> bytes:
        if self._source is ModelSourceKind.URL:
            data = self._fetch_url()
        elif self._source is ModelSourceKind.HUGGINGFACE:
            data = self._read_file(self._download_from_hub())
        else:
            data = self._read_file(self._model_path)

        if not data:
            raise ModelFetchError(f"Model from {self.location} is empty")
        return data

    def _fetch_url(self) -> bytes:
        if not self._model_url:
            raise ModelFetchError("CLASSIFYX_MODEL_URL must be set when model_source is 'url'")
        try:
            response = httpx.get(self._model_url, timeout=MODEL_FETCH_TIMEOUT_SECONDS, follow_redirects=True)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ModelFetchError(f"Failed to fetch model from {self._model_url}: {exc}") from exc
        return response.content

    def _download_from_hub(self) -> Path:
        if not self._repo_id:
            raise ModelFetchError("CLASSIFYX_MODEL_REPO_ID must be set when model_source is 'huggingface'")
        try:
            self._models_dir.mkdir(parents=True, exist_ok=True)
            downloaded = hf_hub_download(
                repo_id=self._repo_id,
                filename=self._filename,
                local_dir=str(self._models_dir),
            )
        except Exception as exc:
            raise ModelFetchError(f"Failed to download {self.location}: {exc}") from exc
        logger.info("Downloaded %s to %s", self.location, downloaded)
        return Path(downloaded)

    @staticmethod
    def _read_file(path: Path) -> bytes:
        try:
            return path.read_bytes()
        except OSError as exc:
            raise ModelFetchError(f"Failed to read model file {path}: {exc}") from exc


# ---------------------------------------------------------------------------
# Session factory
# ---------------------------------------------------------------------------


class SessionFactory:
    """Builds ONNX InferenceSessions from cached model bytes."""

    def __init__(self, settings: Settings, model_cache: ModelCache) -> None:
        self._settings = settings
        self._model_cache = model_cache
        self._reuse_session = settings.reuse_session

        self._lock = threading.Lock()
        self._session: InferenceSession | None = None

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    @property
    def model_cache(self) -> ModelCache:
        return self._model_cache

    @property
    def reuse_session(self) -> bool:
        return self._reuse_session

    def create_session(self) -> InferenceSession:
        """Build a new InferenceSession from the cached model bytes."""
        model_bytes = self._model_cache.get_model_bytes()
        try:
            return InferenceSession(
                model_bytes,
                sess_options=self._session_options,
                providers=self._providers,
            )
        except Exception as exc:
            raise EngineInitError(f"Failed to create inference session: {exc}") from exc

    def get_session(self) -> InferenceSession:
        """Return a session for one forward pass.

        Without ``reuse_session`` every call builds a fresh session. With it,
        the first session built is kept and handed out to every caller.
        """
        if not self._reuse_session:
            return self.create_session()

        with self._lock:
            if self._session is not None:
                return self._session

        session = self.create_session()

        with self._lock:
            # Double-check: another thread may have created it while we loaded.
            if self._session is not None:
                return self._session
            self._session = session
            logger.info("Cached inference session for reuse")
            return session

    def warmup(self) -> None:
        """Fetch the model and build one session ahead of the first request."""
        self.get_session()
        logger.info("Model warmup complete (reuse_session=%s)", self._reuse_session)

    def shutdown(self) -> None:
        """Drop any cached session."""
        with self._lock:
            self._session = None
            logger.info("Inference session cleared")

    # -- Internal -----------------------------------------------------------

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                ),
                "CPUExecutionProvider",
            ]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = _EXECUTION_MODES[self._settings.execution_mode]
        opts.enable_cpu_mem_arena = self._settings.enable_cpu_mem_arena
        opts.enable_mem_pattern = self._settings.enable_mem_pattern
        opts.graph_optimization_level = _GRAPH_OPTIMIZATION_LEVELS[self._settings.graph_optimization_level]

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts
