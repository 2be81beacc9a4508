"""Tests for the end-to-end classification pipeline."""

from __future__ import annotations

import io
import time
from unittest.mock import MagicMock

import numpy as np
import pytest
from PIL import Image

from classifyx.ml.errors import (
    DecodeError,
    DimensionMismatchError,
    ModelFetchError,
    OutputShapeError,
)
from classifyx.ml.image_classifier import ClassificationPipeline
from classifyx.ml.preprocessing import PillowPreprocessor
from classifyx.ml.types import DetectionResult, InvocationResult

VOCABULARY = ("a", "b", "c")

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _red_png() -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (224, 224), (255, 0, 0)).save(buffer, format="PNG")
    return buffer.getvalue()


def _make_invoker(scores: list[float] | None = None) -> MagicMock:
    invoker = MagicMock()
    invoker.invoke.return_value = InvocationResult(
        scores=np.asarray(scores if scores is not None else [1.0, 2.0, 3.0], dtype=np.float32),
        execution_time_ms=1.5,
    )
    return invoker


# ---------------------------------------------------------------------------
# ClassificationPipeline tests
# ---------------------------------------------------------------------------


class TestClassificationPipeline:
    def test_classify_returns_ranked_predictions(self) -> None:
        pipeline = ClassificationPipeline(PillowPreprocessor(), _make_invoker())

        result = pipeline.classify(_red_png(), VOCABULARY, 2)

        assert isinstance(result, DetectionResult)
        assert [(p.label, p.index) for p in result.predictions] == [("c", 2), ("b", 1)]
        assert result.predictions[0].score == pytest.approx(0.6652, abs=1e-4)
        assert result.predictions[1].score == pytest.approx(0.2447, abs=1e-4)

    def test_invoker_receives_normalized_tensor(self) -> None:
        invoker = _make_invoker()
        pipeline = ClassificationPipeline(PillowPreprocessor(), invoker)

        pipeline.classify(_red_png(), VOCABULARY, 1)

        (tensor,) = invoker.invoke.call_args.args
        assert tensor.shape == (150528,)
        assert tensor[0] == pytest.approx((1.0 - 0.485) / 0.229, abs=1e-3)

    def test_execution_time_covers_whole_pipeline(self) -> None:
        invoker = _make_invoker()
        result_value = invoker.invoke.return_value

        def slow_invoke(_tensor: np.ndarray) -> InvocationResult:
            time.sleep(0.05)
            return result_value

        invoker.invoke.side_effect = slow_invoke
        pipeline = ClassificationPipeline(PillowPreprocessor(), invoker)

        result = pipeline.classify(_red_png(), VOCABULARY, 3)

        assert result.execution_time_ms >= 50.0

    def test_decode_failure_skips_inference(self) -> None:
        invoker = _make_invoker()
        pipeline = ClassificationPipeline(PillowPreprocessor(), invoker)

        with pytest.raises(DecodeError):
            pipeline.classify(b"not an image", VOCABULARY, 3)
        invoker.invoke.assert_not_called()

    @pytest.mark.parametrize("error", [OutputShapeError("no output"), ModelFetchError("offline")])
    def test_invoker_errors_propagate_unchanged(self, error: Exception) -> None:
        invoker = _make_invoker()
        invoker.invoke.side_effect = error
        pipeline = ClassificationPipeline(PillowPreprocessor(), invoker)

        with pytest.raises(type(error)) as exc_info:
            pipeline.classify(_red_png(), VOCABULARY, 3)
        assert exc_info.value is error

    def test_vocabulary_mismatch_raises(self) -> None:
        pipeline = ClassificationPipeline(PillowPreprocessor(), _make_invoker([0.1] * 1000))

        with pytest.raises(DimensionMismatchError):
            pipeline.classify(_red_png(), VOCABULARY, 3)

    def test_preprocessor_is_injected(self) -> None:
        preprocessor = MagicMock()
        preprocessor.preprocess.return_value = np.zeros(150528, dtype=np.float32)
        pipeline = ClassificationPipeline(preprocessor, _make_invoker())

        result = pipeline.classify("data:image/png;base64,AAAA", VOCABULARY, 10)

        preprocessor.preprocess.assert_called_once_with("data:image/png;base64,AAAA")
        assert len(result.predictions) == 3
