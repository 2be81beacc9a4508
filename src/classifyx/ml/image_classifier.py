"""Image classification: preprocess -> forward pass -> softmax top-K."""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Protocol

from classifyx.ml.errors import ClassifyXError
from classifyx.ml.postprocessing import postprocess
from classifyx.ml.types import DetectionResult

if TYPE_CHECKING:
    from collections.abc import Sequence

    from classifyx.ml.invoker import InferenceInvoker
    from classifyx.ml.preprocessing import ImagePreprocessor, ImageSource

logger = logging.getLogger(__name__)


class ImageClassifier(Protocol):
    """Protocol for image classification pipelines."""

    def classify(self, image_source: ImageSource, vocabulary: Sequence[str], k: int) -> DetectionResult:
        """Classify an image and return the top ``k`` predictions.

        Args:
            image_source: Raw bytes, a data URI, an http(s) URL or a file path.
            vocabulary: Labels index-aligned with the model output.
            k: Number of predictions to return.

        Returns:
            Predictions sorted by score (descending) and the total pipeline time.
        """
        ...


def _describe_source(image_source: ImageSource) -> str:
    if isinstance(image_source, bytes | bytearray | memoryview):
        return f"<{len(image_source)} bytes>"
    text = str(image_source)
    if text.startswith("data:"):
        return text.partition(",")[0] + ",..."
    return text


class ClassificationPipeline:
    """Sequences preprocessing, inference and postprocessing for one image."""

    def __init__(self, preprocessor: ImagePreprocessor, invoker: InferenceInvoker) -> None:
        self._preprocessor = preprocessor
        self._invoker = invoker

    @property
    def invoker(self) -> InferenceInvoker:
        return self._invoker

    def classify(self, image_source: ImageSource, vocabulary: Sequence[str], k: int) -> DetectionResult:
        """Run the full pipeline; any failure propagates and no result is returned."""
        start = time.perf_counter()
        try:
            tensor = self._preprocessor.preprocess(image_source)
            invocation = self._invoker.invoke(tensor)
            predictions = postprocess(invocation.scores, vocabulary, k)
        except ClassifyXError as exc:
            logger.warning(
                "Classification of %s failed: %s: %s",
                _describe_source(image_source),
                type(exc).__name__,
                exc,
            )
            raise
        total_ms = (time.perf_counter() - start) * 1000.0

        top = predictions[0]
        logger.info(
            "Classified %s as %r (%.4f) in %.2fms (inference %.2fms)",
            _describe_source(image_source),
            top.label,
            top.score,
            total_ms,
            invocation.execution_time_ms,
        )
        return DetectionResult(predictions=tuple(predictions), execution_time_ms=total_ms)
