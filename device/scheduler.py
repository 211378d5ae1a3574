"""
Inference scheduler: samples the latest camera frame on a fast tick, throttles
classifier calls to a minimum interval and never runs two classifications at
once.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from typing import Any, Callable

from doorcam.ai.interpret import Prediction, StateMapping, interpret
from doorcam.ai.types import ClassificationError, ClassificationResult, Classifier

from .capture import VideoSource


logger = logging.getLogger(__name__)

DEFAULT_MIN_INTERVAL_SECONDS = 0.1
DEFAULT_TICK_INTERVAL_SECONDS = 1.0 / 60.0


class NotReadyError(RuntimeError):
    """Raised by start() when the video source or classifier is not ready."""


@dataclass
class SchedulerConfig:
    min_interval: float = DEFAULT_MIN_INTERVAL_SECONDS
    tick_interval: float = DEFAULT_TICK_INTERVAL_SECONDS
    classify_timeout: float | None = None


@dataclass
class LoopState:
    running: bool = False
    last_invocation: float | None = None


class InferenceScheduler:
    """Drives the "maybe classify now" cycle on the running asyncio loop."""

    def __init__(
        self,
        video: VideoSource,
        classifier: Classifier,
        config: SchedulerConfig | None = None,
        *,
        mapping: StateMapping | None = None,
        on_prediction: Callable[[Prediction], None] | None = None,
        on_error: Callable[[ClassificationError], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._video = video
        self._classifier = classifier
        self._config = config or SchedulerConfig()
        self._mapping = mapping or StateMapping()
        self._on_prediction = on_prediction
        self._on_error = on_error
        self._clock = clock
        self._state = LoopState()
        self._generation = 0
        self._loop: asyncio.AbstractEventLoop | None = None
        self._handle: asyncio.Handle | None = None
        self._inflight: asyncio.Future[Any] | None = None
        self._completions: set[asyncio.Task[None]] = set()
        self._prediction: Prediction | None = None
        self._invocations = 0

    @property
    def config(self) -> SchedulerConfig:
        return self._config

    @property
    def state(self) -> LoopState:
        return replace(self._state)

    @property
    def running(self) -> bool:
        return self._state.running

    @property
    def in_flight(self) -> bool:
        return self._inflight is not None

    @property
    def invocations(self) -> int:
        return self._invocations

    @property
    def prediction(self) -> Prediction | None:
        return self._prediction

    def start(self) -> None:
        """Begin cycling. Must be called from the event loop thread."""
        if self._state.running:
            return
        if not self._video.is_active():
            raise NotReadyError("Video source is not active")
        if not getattr(self._classifier, "loaded", False):
            raise NotReadyError("Classifier is not loaded")
        self._loop = asyncio.get_running_loop()
        self._generation += 1
        self._state = LoopState(running=True)
        self._handle = self._loop.call_soon(self._tick)
        logger.info(
            "Inference loop started min_interval=%.3fs tick=%.3fs timeout=%s",
            self._config.min_interval,
            self._config.tick_interval,
            self._config.classify_timeout,
        )

    def stop(self) -> None:
        """Halt future cycles; an in-flight call may finish but is not published."""
        if not self._state.running:
            return
        self._state = LoopState()
        self._generation += 1
        self._prediction = None
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        logger.info("Inference loop stopped in_flight=%s", self.in_flight)

    async def wait_idle(self) -> None:
        """Wait until every issued classification has settled."""
        while self._completions:
            await asyncio.gather(*list(self._completions), return_exceptions=True)

    def _tick(self) -> None:
        self._handle = None
        if not self._state.running:
            return
        try:
            self.run_cycle()
        except Exception:
            logger.exception("Inference cycle failed")
        finally:
            self._schedule_next()

    def _schedule_next(self) -> None:
        # Checked synchronously so a stop() issued during the cycle wins.
        if not self._state.running or self._loop is None:
            return
        self._handle = self._loop.call_later(self._config.tick_interval, self._tick)

    def run_cycle(self) -> bool:
        """Run one decision step. Returns True when a classification was issued."""
        if not self._state.running:
            return False
        now = self._clock()
        last = self._state.last_invocation
        if last is not None and now - last < self._config.min_interval:
            return False
        if self.in_flight:
            logger.debug("Skipping cycle; classification still in flight")
            return False
        if not self._video.is_frame_ready():
            return False

        generation = self._generation
        self._state.last_invocation = now
        try:
            frame = self._video.current_frame()
            call = asyncio.ensure_future(self._classifier.classify(frame))
        except Exception as exc:
            self._report(exc, generation)
            return False
        self._inflight = call
        self._invocations += 1
        task = asyncio.ensure_future(self._complete(call, generation))
        self._completions.add(task)
        task.add_done_callback(self._completions.discard)
        return True

    async def _complete(self, call: asyncio.Future[Any], generation: int) -> None:
        timeout = self._config.classify_timeout
        try:
            try:
                if timeout is None:
                    result = await call
                else:
                    result = await asyncio.wait_for(asyncio.shield(call), timeout)
            except asyncio.TimeoutError as exc:
                if call.done():
                    self._report(exc, generation)
                    return
                self._report(
                    ClassificationError(f"Classification timed out after {timeout:.2f}s"),
                    generation,
                )
                # An abandoned call still holds the in-flight slot until it settles.
                await asyncio.wait([call])
                if not call.cancelled() and call.exception() is not None:
                    logger.debug("Timed-out classification later failed: %s", call.exception())
                return
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._report(exc, generation)
                return
            self._publish(result, generation)
        finally:
            if self._inflight is call:
                self._inflight = None

    def _is_current(self, generation: int) -> bool:
        return self._state.running and generation == self._generation

    def _publish(self, result: ClassificationResult, generation: int) -> None:
        if not self._is_current(generation):
            logger.debug("Discarding classification result from a stopped session")
            return
        try:
            prediction = interpret(result, self._mapping)
        except (TypeError, ValueError) as exc:
            self._report(exc, generation)
            return
        if prediction is None:
            logger.debug("Empty classification result; keeping previous prediction")
            return
        self._prediction = prediction
        logger.debug("Model prediction: %s", prediction.to_dict())
        if self._on_prediction is not None:
            self._on_prediction(prediction)

    def _report(self, exc: BaseException, generation: int) -> None:
        if not self._is_current(generation):
            logger.debug("Discarding classification error from a stopped session: %s", exc)
            return
        if isinstance(exc, ClassificationError):
            error = exc
        else:
            error = ClassificationError(f"Prediction error: {exc}")
            error.__cause__ = exc
        logger.error("Prediction error: %s", error, exc_info=exc)
        if self._on_error is not None:
            self._on_error(error)


__all__ = [
    "InferenceScheduler",
    "LoopState",
    "NotReadyError",
    "SchedulerConfig",
    "DEFAULT_MIN_INTERVAL_SECONDS",
    "DEFAULT_TICK_INTERVAL_SECONDS",
]
