from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import cv2
import numpy as np
from PIL import Image, ImageStat

from .executor import ThreadedClassifier
from .types import ClassificationResult


class BrightnessClassifier(ThreadedClassifier):
    """Model-free baseline: splits frames into dark and bright by mean luma."""

    def __init__(
        self,
        labels: tuple[str, str] = ("Class 1", "Class 2"),
        threshold: float = 0.5,
        executor: ThreadPoolExecutor | None = None,
    ) -> None:
        super().__init__(executor)
        self.labels = labels
        self.threshold = threshold

    def predict(self, image: np.ndarray) -> ClassificationResult:
        rgb = cv2.cvtColor(image, cv2.COLOR_BGR2RGB) if image.ndim == 3 else image
        stats = ImageStat.Stat(Image.fromarray(rgb).convert("L"))
        avg_luma = stats.mean[0] / 255.0
        # Shift so the threshold sits at 0.5 probability.
        bright = float(max(0.0, min(1.0, avg_luma + (0.5 - self.threshold))))
        return [(self.labels[0], 1.0 - bright), (self.labels[1], bright)]


__all__ = ["BrightnessClassifier"]
