from __future__ import annotations

from typing import Any, Protocol, Sequence, Tuple

# (label, probability) pairs in model class order; not guaranteed sorted.
ClassificationResult = Sequence[Tuple[str, float]]


class ModelLoadError(RuntimeError):
    """Model or metadata could not be fetched or parsed."""


class ClassificationError(RuntimeError):
    """A single inference call failed."""


class Classifier(Protocol):
    @property
    def loaded(self) -> bool: ...

    async def classify(self, frame: Any) -> ClassificationResult: ...


__all__ = [
    "Classifier",
    "ClassificationResult",
    "ClassificationError",
    "ModelLoadError",
]
