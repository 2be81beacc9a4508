"""Value types shared across the classification pipeline."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Final

if TYPE_CHECKING:
    import numpy as np
    from numpy.typing import NDArray

INPUT_CHANNELS: Final = 3
INPUT_HEIGHT: Final = 224
INPUT_WIDTH: Final = 224
TENSOR_LENGTH: Final = INPUT_CHANNELS * INPUT_HEIGHT * INPUT_WIDTH
INPUT_SHAPE: Final = (1, INPUT_CHANNELS, INPUT_HEIGHT, INPUT_WIDTH)


@dataclass(frozen=True)
class NormalizationParams:
    """Per-channel (R, G, B) mean and standard deviation on the [0, 1] scale."""

    mean: tuple[float, float, float]
    std: tuple[float, float, float]


IMAGENET_NORMALIZATION: Final = NormalizationParams(
    mean=(0.485, 0.456, 0.406),
    std=(0.229, 0.224, 0.225),
)


@dataclass(frozen=True)
class Prediction:
    """A single ranked class prediction."""

    label: str
    score: float
    index: int


@dataclass(frozen=True)
class DetectionResult:
    """Top-K predictions for one image plus the total pipeline time."""

    predictions: tuple[Prediction, ...]
    execution_time_ms: float


@dataclass(frozen=True)
class InvocationResult:
    """Raw logits from one forward pass and the time spent in ``session.run``."""

    scores: NDArray[np.float32]
    execution_time_ms: float
