"""Exception hierarchy for the classification pipeline.

Every error is terminal for the request that raised it; nothing here is
retried by the pipeline itself.
"""

from __future__ import annotations


class ClassifyXError(Exception):
    """Base class for all classification pipeline failures."""


class DecodeError(ClassifyXError):
    """The input bytes could not be parsed as an image."""


class ImageFetchError(DecodeError):
    """The image source (URL, path, data URI) could not be read."""


class UnsupportedFormatError(ClassifyXError):
    """The image decoded, but is empty or outside the accepted limits."""


class ModelFetchError(ClassifyXError):
    """The serialized model could not be fetched."""


class EngineInitError(ClassifyXError):
    """ONNX Runtime failed to build an inference session."""


class OutputShapeError(ClassifyXError):
    """The named output tensor is missing or is not float32."""


class InferenceError(ClassifyXError):
    """The forward pass failed."""


class DimensionMismatchError(ClassifyXError):
    """The score vector and the label vocabulary differ in length."""


class LabelVocabularyError(ClassifyXError):
    """The label vocabulary file is missing or malformed."""
