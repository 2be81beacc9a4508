"""Label vocabulary: the ordered class names aligned with the model output."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from classifyx.ml.errors import LabelVocabularyError

if TYPE_CHECKING:
    from collections.abc import Iterator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LabelVocabulary:
    """Immutable, index-aligned list of class labels."""

    labels: tuple[str, ...]

    def __len__(self) -> int:
        return len(self.labels)

    def __getitem__(self, index: int) -> str:
        return self.labels[index]

    def __iter__(self) -> Iterator[str]:
        return iter(self.labels)

    @classmethod
    def from_file(cls, path: str | Path) -> LabelVocabulary:
        """Load labels from a JSON array file or a one-label-per-line text file."""
        path = Path(path)
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise LabelVocabularyError(f"Cannot read label file {path}: {exc}") from exc

        if path.suffix.lower() == ".json":
            labels = _parse_json_labels(text, path)
        else:
            labels = [line.strip() for line in text.splitlines() if line.strip()]

        if not labels:
            raise LabelVocabularyError(f"Label file {path} contains no labels")

        logger.info("Loaded %d labels from %s", len(labels), path)
        return cls(labels=tuple(labels))


def _parse_json_labels(text: str, path: Path) -> list[str]:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise LabelVocabularyError(f"Label file {path} is not valid JSON: {exc}") from exc

    if not isinstance(data, list) or not all(isinstance(item, str) for item in data):
        raise LabelVocabularyError(f"Label file {path} must contain a JSON array of strings")
    return data
