"""Single forward pass of the classifier through ONNX Runtime."""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING

import numpy as np

from classifyx.ml.errors import InferenceError, OutputShapeError
from classifyx.ml.types import INPUT_SHAPE, InvocationResult

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from classifyx.config import Settings
    from classifyx.ml.model_manager import SessionFactory

logger = logging.getLogger(__name__)


class InferenceInvoker:
    """Runs one forward pass and returns the raw logits with timing."""

    def __init__(self, session_factory: SessionFactory, *, input_name: str, output_name: str) -> None:
        self._session_factory = session_factory
        self._input_name = input_name
        self._output_name = output_name

    @classmethod
    def from_settings(cls, settings: Settings, session_factory: SessionFactory) -> InferenceInvoker:
        return cls(session_factory, input_name=settings.input_name, output_name=settings.output_name)

    @property
    def session_factory(self) -> SessionFactory:
        return self._session_factory

    @property
    def input_name(self) -> str:
        return self._input_name

    @property
    def output_name(self) -> str:
        return self._output_name

    def invoke(self, tensor: NDArray[np.float32]) -> InvocationResult:
        """Feed a flat normalized tensor through the model.

        Session construction is not included in ``execution_time_ms``.

        Raises:
            ModelFetchError: If the model bytes cannot be fetched.
            EngineInitError: If the inference session cannot be created.
            OutputShapeError: If the configured output is missing or not float32.
            InferenceError: For any other failure during the forward pass.
        """
        session = self._session_factory.get_session()

        output_names = [output.name for output in session.get_outputs()]
        if self._output_name not in output_names:
            raise OutputShapeError(f"Model has no output named {self._output_name!r} (available: {output_names})")

        try:
            batch = np.asarray(tensor, dtype=np.float32).reshape(INPUT_SHAPE)
        except ValueError as exc:
            raise InferenceError(f"Input tensor cannot be reshaped to {INPUT_SHAPE}: {exc}") from exc

        start = time.perf_counter()
        try:
            (output,) = session.run([self._output_name], {self._input_name: batch})
        except Exception as exc:
            raise InferenceError(f"Forward pass failed: {exc}") from exc
        execution_time_ms = (time.perf_counter() - start) * 1000.0

        if not isinstance(output, np.ndarray) or output.dtype != np.float32:
            found = output.dtype if isinstance(output, np.ndarray) else type(output).__name__
            raise OutputShapeError(f"Output {self._output_name!r} must be float32, got {found}")

        logger.debug("Forward pass took %.2fms", execution_time_ms)
        return InvocationResult(scores=output.ravel(), execution_time_ms=execution_time_ms)
