from __future__ import annotations

import json
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, List

import cv2
import numpy as np

from .executor import ThreadedClassifier
from .types import ClassificationResult, ModelLoadError


logger = logging.getLogger(__name__)

UNKNOWN_LABEL = "Unknown"


def _import_interpreter() -> Any:
    try:
        from tflite_runtime.interpreter import Interpreter  # type: ignore
    except ImportError:  # fallback to full TF installation
        try:
            from tensorflow.lite.python.interpreter import Interpreter  # type: ignore
        except ImportError as exc:
            raise ModelLoadError(
                "tflite-runtime or tensorflow is required for TFLite models"
            ) from exc
    return Interpreter


def load_labels(path: Path) -> List[str]:
    """Read labels from a Teachable Machine ``metadata.json`` or ``labels.txt``."""
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ModelLoadError(f"Unable to read metadata {path}: {exc}") from exc
    if path.suffix.lower() == ".json":
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ModelLoadError(f"Invalid metadata JSON in {path}") from exc
        labels = data.get("labels") if isinstance(data, dict) else None
        if not isinstance(labels, list):
            raise ModelLoadError(f"Metadata {path} has no 'labels' list")
        return [str(label) for label in labels]
    labels = []
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        head, _, rest = line.partition(" ")
        labels.append(rest.strip() if head.isdigit() and rest else line)
    return labels


class TFLiteImageClassifier(ThreadedClassifier):
    """Image classifier backed by a TFLite interpreter (Teachable Machine export)."""

    def __init__(
        self,
        model_path: Path,
        labels: List[str] | None = None,
        executor: ThreadPoolExecutor | None = None,
    ) -> None:
        super().__init__(executor)
        Interpreter = _import_interpreter()
        try:
            self._interpreter = Interpreter(model_path=str(model_path))
            self._interpreter.allocate_tensors()
        except Exception as exc:
            raise ModelLoadError(f"Failed to load model {model_path}: {exc}") from exc
        self._input = self._interpreter.get_input_details()[0]
        self._output = self._interpreter.get_output_details()[0]
        _, height, width, _ = (int(dim) for dim in self._input["shape"])
        self.input_size = (width, height)
        self.labels = list(labels or [])
        # One interpreter is not safe to invoke from two threads at once.
        self._lock = threading.Lock()
        logger.info(
            "Loaded TFLite model %s input=%dx%d labels=%s",
            model_path,
            width,
            height,
            self.labels or "<none>",
        )

    def preprocess(self, image: np.ndarray) -> np.ndarray:
        resized = cv2.resize(image, self.input_size, interpolation=cv2.INTER_NEAREST)
        rgb = cv2.cvtColor(resized, cv2.COLOR_BGR2RGB)
        if self._input["dtype"] == np.uint8:
            return np.expand_dims(rgb.astype(np.uint8), 0)
        return np.expand_dims(rgb.astype(np.float32) / 255.0, 0)

    def predict(self, image: np.ndarray) -> ClassificationResult:
        tensor = self.preprocess(image)
        with self._lock:
            self._interpreter.set_tensor(self._input["index"], tensor)
            self._interpreter.invoke()
            raw = np.array(self._interpreter.get_tensor(self._output["index"]))
        scores = raw.reshape(-1).astype(np.float32)
        if self._output["dtype"] == np.uint8:
            scale, zero_point = self._output.get("quantization", (0.0, 0))
            scores = (scores - zero_point) * scale if scale else scores / 255.0
        return [
            (self.labels[index] if index < len(self.labels) else UNKNOWN_LABEL, float(score))
            for index, score in enumerate(scores)
        ]


__all__ = ["TFLiteImageClassifier", "load_labels", "UNKNOWN_LABEL"]
