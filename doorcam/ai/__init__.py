from __future__ import annotations

from .interpret import DoorState, Prediction, StateMapping, interpret
from .types import (
    ClassificationError,
    ClassificationResult,
    Classifier,
    ModelLoadError,
)

__all__ = [
    "ClassificationError",
    "ClassificationResult",
    "Classifier",
    "ModelLoadError",
    "DoorState",
    "Prediction",
    "StateMapping",
    "interpret",
    "BrightnessClassifier",
    "TFLiteImageClassifier",
    "load_classifier",
]


def __getattr__(name: str):
    if name == "BrightnessClassifier":
        from .simple import BrightnessClassifier

        return BrightnessClassifier
    if name == "TFLiteImageClassifier":
        from .tflite_model import TFLiteImageClassifier

        return TFLiteImageClassifier
    if name == "load_classifier":
        from .loader import load_classifier

        return load_classifier
    raise AttributeError(f"module 'doorcam.ai' has no attribute {name!r}")
