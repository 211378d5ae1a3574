from __future__ import annotations

from dataclasses import dataclass
import itertools
import logging
import pathlib
import threading
import time
from typing import Protocol

import numpy as np


logger = logging.getLogger(__name__)

_HANDLE_IDS = itertools.count(1)


class CameraAcquisitionError(RuntimeError):
    """Camera permission denied or device unavailable."""


@dataclass
class Frame:
    """A still image sampled from the live source (BGR pixels)."""

    image: np.ndarray
    timestamp: float

    def encode(self, encoding: str = "jpeg") -> bytes:
        import cv2  # type: ignore

        success, buffer = cv2.imencode(f".{encoding.lstrip('.')}", self.image)
        if not success:
            raise RuntimeError(f"OpenCV failed to encode frame as {encoding}")
        return buffer.tobytes()


@dataclass(frozen=True)
class CameraConstraints:
    source: int | str = 0
    resolution: tuple[int, int] | None = None
    backend: str | int | None = None
    warmup_frames: int = 2


@dataclass(frozen=True)
class StreamHandle:
    id: int
    source: int | str


class VideoSource(Protocol):
    def acquire(self, constraints: CameraConstraints | None = None) -> StreamHandle: ...

    def release(self, handle: StreamHandle | None = None) -> None: ...

    def is_active(self) -> bool: ...

    def is_frame_ready(self) -> bool: ...

    def current_frame(self) -> Frame: ...


class StubCamera:
    """Camera stand-in that serves a sample image or a flat grey frame."""

    def __init__(
        self,
        sample_path: pathlib.Path | None = None,
        size: tuple[int, int] = (320, 240),
    ) -> None:
        self._sample_path = sample_path
        self._size = size
        self._handle: StreamHandle | None = None
        self._image: np.ndarray | None = None

    def acquire(self, constraints: CameraConstraints | None = None) -> StreamHandle:
        if self._handle is not None:
            return self._handle
        image = None
        if self._sample_path and self._sample_path.exists():
            import cv2  # type: ignore

            image = cv2.imread(str(self._sample_path))
        if image is None:
            width, height = self._size
            image = np.full((height, width, 3), 127, dtype=np.uint8)
        self._image = image
        self._handle = StreamHandle(id=next(_HANDLE_IDS), source=str(self._sample_path or "stub"))
        return self._handle

    def release(self, handle: StreamHandle | None = None) -> None:
        if self._handle is None or (handle is not None and handle != self._handle):
            return
        self._handle = None
        self._image = None

    def is_active(self) -> bool:
        return self._handle is not None

    def is_frame_ready(self) -> bool:
        return self._image is not None

    def current_frame(self) -> Frame:
        if self._image is None:
            raise RuntimeError("Stub camera is not active")
        return Frame(image=self._image.copy(), timestamp=time.monotonic())


class OpenCVCamera:
    """Capture frames from an OpenCV-compatible source (USB/RTSP).

    A reader thread keeps only the most recent frame so the scheduler can sample
    it at its own cadence.
    """

    _BACKEND_ALIASES = {
        "any": "CAP_ANY",
        "auto": "CAP_ANY",
        "dshow": "CAP_DSHOW",
        "directshow": "CAP_DSHOW",
        "msmf": "CAP_MSMF",
        "mediafoundation": "CAP_MSMF",
        "v4l2": "CAP_V4L2",
        "opencv": "CAP_ANY",
    }

    def __init__(self, constraints: CameraConstraints | None = None) -> None:
        self._constraints = constraints or CameraConstraints()
        self._lock = threading.Lock()
        self._cap = None
        self._handle: StreamHandle | None = None
        self._reader: threading.Thread | None = None
        self._stop = threading.Event()
        self._latest: Frame | None = None

    def _resolve_backend(self, backend: str | int | None, cv2_module) -> int:
        if backend is None:
            return cv2_module.CAP_ANY
        if isinstance(backend, int):
            return backend
        key = backend.strip().lower()
        attr_name = self._BACKEND_ALIASES.get(key)
        if attr_name is None:
            raise CameraAcquisitionError(f"Unknown OpenCV backend alias: {backend!r}")
        return getattr(cv2_module, attr_name, cv2_module.CAP_ANY)

    def acquire(self, constraints: CameraConstraints | None = None) -> StreamHandle:
        with self._lock:
            if self._handle is not None:
                return self._handle
        try:
            import cv2  # type: ignore
        except ImportError as exc:  # pragma: no cover - depends on optional dep
            raise CameraAcquisitionError("opencv-python is required for OpenCVCamera") from exc

        constraints = constraints or self._constraints
        backend = self._resolve_backend(constraints.backend, cv2)
        try:
            cap = cv2.VideoCapture(constraints.source, backend)
        except cv2.error as exc:
            raise CameraAcquisitionError(
                f"Unable to open camera source {constraints.source!r}: {exc}"
            ) from exc
        if not cap.isOpened():
            cap.release()
            raise CameraAcquisitionError(
                f"Unable to open camera source {constraints.source!r}"
            )
        if constraints.resolution:
            width, height = constraints.resolution
            cap.set(cv2.CAP_PROP_FRAME_WIDTH, float(width))
            cap.set(cv2.CAP_PROP_FRAME_HEIGHT, float(height))
        for _ in range(max(0, constraints.warmup_frames)):
            ok, _ = cap.read()
            if not ok:
                break

        handle = StreamHandle(id=next(_HANDLE_IDS), source=constraints.source)
        with self._lock:
            self._cap = cap
            self._handle = handle
            self._latest = None
            self._stop = threading.Event()
            self._reader = threading.Thread(
                target=self._read_loop,
                args=(cap, self._stop),
                name=f"camera-reader-{handle.id}",
                daemon=True,
            )
            self._reader.start()
        logger.info("Camera acquired source=%r handle=%d", constraints.source, handle.id)
        return handle

    def _read_loop(self, cap, stop: threading.Event) -> None:
        failures = 0
        while not stop.is_set():
            ok, image = cap.read()
            if not ok or image is None:
                failures += 1
                if failures == 1:
                    logger.warning("Camera read failed; waiting for frames")
                time.sleep(0.05)
                continue
            failures = 0
            frame = Frame(image=image, timestamp=time.monotonic())
            with self._lock:
                if not stop.is_set():
                    self._latest = frame

    def release(self, handle: StreamHandle | None = None) -> None:
        with self._lock:
            if self._handle is None or (handle is not None and handle != self._handle):
                return
            released = self._handle
            cap, reader = self._cap, self._reader
            self._stop.set()
            self._cap = None
            self._handle = None
            self._reader = None
            self._latest = None
        if reader is not None:
            reader.join(timeout=2.0)
        if cap is not None:
            cap.release()
        logger.info("Camera released handle=%d", released.id)

    def is_active(self) -> bool:
        return self._handle is not None

    def is_frame_ready(self) -> bool:
        return self._latest is not None

    def current_frame(self) -> Frame:
        with self._lock:
            frame = self._latest
        if frame is None:
            raise RuntimeError("No frame available from camera")
        return frame

    def __del__(self) -> None:  # pragma: no cover - destructor best effort
        try:
            self.release()
        except Exception:
            pass


__all__ = [
    "CameraAcquisitionError",
    "CameraConstraints",
    "Frame",
    "OpenCVCamera",
    "StreamHandle",
    "StubCamera",
    "VideoSource",
]
