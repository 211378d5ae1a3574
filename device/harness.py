from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Awaitable, Callable

from doorcam.ai.interpret import DoorState, Prediction, StateMapping
from doorcam.ai.types import ClassificationError, Classifier, ModelLoadError

from .capture import CameraAcquisitionError, CameraConstraints, StreamHandle, VideoSource
from .scheduler import InferenceScheduler, NotReadyError, SchedulerConfig


logger = logging.getLogger(__name__)

ModelLoader = Callable[[], Awaitable[Classifier]]
StatusListener = Callable[["FeedStatus"], None]


class Lifecycle(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass(frozen=True)
class FeedStatus:
    """Snapshot published to the presentation layer after every change."""

    running: bool = False
    lifecycle: Lifecycle = Lifecycle.IDLE
    model_loaded: bool = False
    error: str | None = None
    error_kind: str | None = None
    prediction: Prediction | None = None

    @property
    def door_state(self) -> DoorState:
        if self.prediction is None:
            return DoorState.CLOSED
        return self.prediction.door_state

    def to_dict(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "lifecycle": self.lifecycle.value,
            "model_loaded": self.model_loaded,
            "error": self.error,
            "error_kind": self.error_kind,
            "door_state": self.door_state.value,
            "prediction": self.prediction.to_dict() if self.prediction else None,
        }


class CameraFeed:
    """Owns the camera, the classifier and the inference loop for one session."""

    def __init__(
        self,
        camera: VideoSource,
        model_loader: ModelLoader | None = None,
        *,
        classifier: Classifier | None = None,
        scheduler_config: SchedulerConfig | None = None,
        mapping: StateMapping | None = None,
        constraints: CameraConstraints | None = None,
    ) -> None:
        self._camera = camera
        self._model_loader = model_loader
        self._classifier = classifier
        self._scheduler_config = scheduler_config or SchedulerConfig()
        self._mapping = mapping or StateMapping()
        self._constraints = constraints
        self._lifecycle_lock = asyncio.Lock()
        self._model_task: asyncio.Task[Classifier] | None = None
        self._model_failed = False
        self._stream: StreamHandle | None = None
        self._scheduler: InferenceScheduler | None = None
        self._listeners: list[StatusListener] = []
        self._closed = False
        self._status = FeedStatus(model_loaded=classifier is not None)

    @property
    def status(self) -> FeedStatus:
        return self._status

    @property
    def camera(self) -> VideoSource:
        return self._camera

    @property
    def scheduler(self) -> InferenceScheduler | None:
        return self._scheduler

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def load_model(self) -> bool:
        """Load the classifier once; later calls return the first outcome."""
        if self._classifier is not None:
            return True
        if self._model_task is None:
            if self._model_loader is None:
                return False
            self._model_task = asyncio.ensure_future(self._model_loader())
        try:
            classifier = await asyncio.shield(self._model_task)
        except ModelLoadError as exc:
            self._fail_model(exc)
            return False
        except Exception as exc:
            self._fail_model(ModelLoadError(str(exc)))
            return False
        if self._classifier is None:
            self._classifier = classifier
            logger.info("Model loaded classifier=%s", classifier.__class__.__name__)
            self._update(model_loaded=True)
        return True

    def _fail_model(self, exc: Exception) -> None:
        if self._model_failed:
            return
        self._model_failed = True
        logger.error("Error loading model: %s", exc)
        self._update(error="Failed to load model", error_kind="model_load")

    async def start(self) -> FeedStatus:
        """Acquire the camera and start the inference loop.

        Never raises for model, camera or readiness failures; they are reported
        through the status channel and leave the feed idle.
        """
        async with self._lifecycle_lock:
            if self._closed or self._status.lifecycle is not Lifecycle.IDLE:
                return self._status
            if self._model_failed:
                logger.warning("Refusing to start: model failed to load")
                return self._status
            if self._classifier is None and self._model_task is not None:
                await self.load_model()
                if self._model_failed:
                    return self._status
            if self._classifier is None:
                logger.warning("Refusing to start: model is not loaded")
                self._update(error="Model is not loaded", error_kind="not_ready")
                return self._status

            self._update(lifecycle=Lifecycle.STARTING, error=None, error_kind=None)

            loop = asyncio.get_running_loop()
            try:
                self._stream = await loop.run_in_executor(
                    None, self._camera.acquire, self._constraints
                )
            except CameraAcquisitionError as exc:
                return self._fail_camera(exc)
            except Exception as exc:
                logger.exception("Unexpected camera acquisition failure")
                return self._fail_camera(CameraAcquisitionError(str(exc)))

            scheduler = self._ensure_scheduler()
            try:
                scheduler.start()
            except NotReadyError as exc:
                logger.warning("Inference loop not ready: %s", exc)
                self._release_stream()
                self._update(lifecycle=Lifecycle.IDLE, error=str(exc), error_kind="not_ready")
                return self._status
            self._update(lifecycle=Lifecycle.RUNNING, running=True)
            return self._status

    def _fail_camera(self, exc: CameraAcquisitionError) -> FeedStatus:
        logger.warning("Camera error: %s", exc)
        self._update(
            lifecycle=Lifecycle.IDLE,
            running=False,
            error=f"Camera error: {exc}",
            error_kind="camera",
        )
        return self._status

    def _ensure_scheduler(self) -> InferenceScheduler:
        # Shared across sessions; a call left in flight by stop() keeps the slot.
        if self._scheduler is None:
            self._scheduler = InferenceScheduler(
                self._camera,
                self._classifier,
                self._scheduler_config,
                mapping=self._mapping,
                on_prediction=self._handle_prediction,
                on_error=self._handle_classification_error,
            )
        return self._scheduler

    async def stop(self) -> FeedStatus:
        """Stop the loop and release the camera. Safe to call repeatedly."""
        async with self._lifecycle_lock:
            if self._status.lifecycle is not Lifecycle.RUNNING:
                return self._status
            self._update(lifecycle=Lifecycle.STOPPING)
            if self._scheduler is not None:
                self._scheduler.stop()
            self._release_stream()
            self._update(lifecycle=Lifecycle.IDLE, running=False)
            return self._status

    async def close(self) -> None:
        """Component teardown: stop, drain the loop and release everything."""
        await self.stop()
        async with self._lifecycle_lock:
            self._closed = True
            scheduler = self._scheduler
        if scheduler is not None:
            await scheduler.wait_idle()
        if self._model_task is not None and not self._model_task.done():
            self._model_task.cancel()
        self._release_stream()

    async def __aenter__(self) -> CameraFeed:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _release_stream(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            self._camera.release(stream)
        except Exception:  # pragma: no cover - best effort cleanup
            logger.exception("Failed to release camera stream handle=%s", stream.id)

    def _handle_prediction(self, prediction: Prediction) -> None:
        clear = self._status.error_kind == "classification"
        self._update(
            prediction=prediction,
            **({"error": None, "error_kind": None} if clear else {}),
        )

    def _handle_classification_error(self, error: ClassificationError) -> None:
        self._update(error=str(error), error_kind="classification")

    def _update(self, **changes: Any) -> None:
        self._status = replace(self._status, **changes)
        for listener in list(self._listeners):
            try:
                listener(self._status)
            except Exception:
                logger.exception("Status listener failed")


__all__ = ["CameraFeed", "FeedStatus", "Lifecycle"]
