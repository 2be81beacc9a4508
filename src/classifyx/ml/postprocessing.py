"""Turn raw logits into a ranked top-K list of predictions."""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np

from classifyx.ml.errors import DimensionMismatchError
from classifyx.ml.types import Prediction

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import ArrayLike, NDArray


def compute_softmax(scores: ArrayLike) -> NDArray[np.float64]:
    """Numerically stable softmax over a 1-D score vector.

    The maximum is subtracted before exponentiating, so large logits do not
    overflow and adding a constant to every score leaves the result unchanged.
    """
    logits = np.asarray(scores, dtype=np.float64).ravel()
    exp_scores = np.exp(logits - logits.max())
    return exp_scores / exp_scores.sum()


def rank(probabilities: NDArray[np.float64], k: int) -> NDArray[np.intp]:
    """Return the indices of the top ``k`` probabilities, highest first.

    Equal probabilities keep their original order, so the lower index wins.
    """
    if k < 1:
        raise ValueError(f"k must be >= 1, got {k}")
    order = np.argsort(-probabilities, kind="stable")
    return order[:k]


def postprocess(scores: ArrayLike, vocabulary: Sequence[str], k: int) -> list[Prediction]:
    """Convert logits into the top ``k`` labelled predictions.

    Raises:
        DimensionMismatchError: If the score vector and vocabulary differ in length,
            or both are empty.
        ValueError: If ``k`` is less than 1.
    """
    logits = np.asarray(scores, dtype=np.float64).ravel()
    if logits.size != len(vocabulary):
        raise DimensionMismatchError(f"Got {logits.size} scores for a vocabulary of {len(vocabulary)} labels")
    if logits.size == 0:
        raise DimensionMismatchError("Cannot rank an empty score vector")

    probabilities = compute_softmax(logits)
    return [
        Prediction(label=vocabulary[index], score=float(probabilities[index]), index=int(index))
        for index in rank(probabilities, k)
    ]
