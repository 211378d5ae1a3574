from __future__ import annotations

import abc
import asyncio
from concurrent.futures import ThreadPoolExecutor
from typing import Any

import numpy as np

from .types import ClassificationError, ClassificationResult


_CLASSIFY_EXECUTOR = ThreadPoolExecutor(
    max_workers=2, thread_name_prefix="doorcam-classify"
)


def frame_pixels(frame: Any) -> np.ndarray:
    """Accept a capture Frame or a bare BGR array."""
    image = getattr(frame, "image", frame)
    if not isinstance(image, np.ndarray):
        raise ClassificationError(f"Unsupported frame type {type(frame).__name__}")
    return image


class ThreadedClassifier(abc.ABC):
    """Runs a blocking ``predict`` on a worker thread so the event loop stays free."""

    def __init__(self, executor: ThreadPoolExecutor | None = None) -> None:
        self._executor = executor or _CLASSIFY_EXECUTOR

    @property
    def loaded(self) -> bool:
        return True

    @abc.abstractmethod
    def predict(self, image: np.ndarray) -> ClassificationResult:
        """Return (label, probability) pairs for one BGR image."""

    async def classify(self, frame: Any) -> ClassificationResult:
        image = frame_pixels(frame)
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(self._executor, self.predict, image)
        except ClassificationError:
            raise
        except Exception as exc:
            raise ClassificationError(f"Prediction failed: {exc}") from exc


__all__ = ["ThreadedClassifier", "frame_pixels"]
