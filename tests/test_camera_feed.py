import asyncio
import unittest

import numpy as np

from doorcam.ai.interpret import DoorState
from doorcam.ai.types import ModelLoadError
from device.capture import CameraAcquisitionError, StreamHandle
from device.harness import CameraFeed, FeedStatus, Lifecycle
from device.scheduler import SchedulerConfig


class _CountingCamera:
    def __init__(self, fail_times: int = 0, failure: Exception | None = None) -> None:
        self.fail_times = fail_times
        self.failure = failure or CameraAcquisitionError("Permission denied")
        self.acquire_calls = 0
        self.release_calls = 0
        self.acquired = 0
        self._handle: StreamHandle | None = None

    def acquire(self, constraints=None) -> StreamHandle:
        self.acquire_calls += 1
        if self.fail_times > 0:
            self.fail_times -= 1
            raise self.failure
        if self._handle is None:
            self._handle = StreamHandle(id=self.acquire_calls, source=0)
            self.acquired += 1
        return self._handle

    def release(self, handle=None) -> None:
        self.release_calls += 1
        if self._handle is None:
            return
        self._handle = None
        self.acquired -= 1

    def is_active(self) -> bool:
        return self._handle is not None

    def is_frame_ready(self) -> bool:
        return self._handle is not None

    def current_frame(self) -> np.ndarray:
        return np.zeros((4, 4, 3), dtype=np.uint8)


class _StaticClassifier:
    loaded = True

    def __init__(self, *outcomes) -> None:
        self._outcomes = list(outcomes)

    async def classify(self, frame):
        outcome = self._outcomes.pop(0) if len(self._outcomes) > 1 else self._outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class _PendingClassifier:
    loaded = True

    def __init__(self) -> None:
        self.calls: list[asyncio.Future] = []
        self.active = 0
        self.max_active = 0

    async def classify(self, frame):
        future = asyncio.get_running_loop().create_future()
        self.calls.append(future)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            return await future
        finally:
            self.active -= 1

    def resolve_all(self, result) -> None:
        for future in self.calls:
            if not future.done():
                future.set_result(result)


_FAST = SchedulerConfig(min_interval=0.01, tick_interval=0.002)


class CameraFeedTests(unittest.IsolatedAsyncioTestCase):
    def _feed(self, camera, **kwargs) -> CameraFeed:
        kwargs.setdefault("scheduler_config", _FAST)
        feed = CameraFeed(camera, **kwargs)
        self.statuses: list[FeedStatus] = []
        feed.subscribe(self.statuses.append)
        self.addAsyncCleanup(feed.close)
        return feed

    async def test_repeated_start_stop_leaves_no_acquired_streams(self) -> None:
        camera = _CountingCamera()
        feed = self._feed(camera, classifier=_StaticClassifier([("a", 1.0)]))

        for _ in range(3):
            status = await feed.start()
            self.assertTrue(status.running)
            self.assertIs(status.lifecycle, Lifecycle.RUNNING)
            self.assertEqual(camera.acquired, 1)
            await asyncio.sleep(0.01)
            status = await feed.stop()
            self.assertFalse(status.running)
        await feed.stop()

        self.assertEqual(camera.acquired, 0)
        self.assertEqual(camera.acquire_calls, 3)
        self.assertEqual(camera.release_calls, 3)

    async def test_lifecycle_transitions_are_published(self) -> None:
        feed = self._feed(_CountingCamera(), classifier=_StaticClassifier([]))

        await feed.start()
        await feed.stop()

        lifecycles = [status.lifecycle for status in self.statuses]
        self.assertEqual(
            lifecycles,
            [Lifecycle.STARTING, Lifecycle.RUNNING, Lifecycle.STOPPING, Lifecycle.IDLE],
        )

    async def test_prediction_uses_class_index_not_label(self) -> None:
        feed = self._feed(
            _CountingCamera(),
            classifier=_StaticClassifier([("closed", 0.9), ("open", 0.1)]),
        )
        self.assertIs(feed.status.door_state, DoorState.CLOSED)

        await feed.start()
        await asyncio.sleep(0.05)
        await feed.stop()

        self.assertIsNotNone(feed.status.prediction)
        self.assertIs(feed.status.door_state, DoorState.OPEN)
        self.assertEqual(feed.status.to_dict()["prediction"]["class"], "closed")

    async def test_camera_error_is_reported_and_retry_succeeds(self) -> None:
        camera = _CountingCamera(fail_times=1)
        feed = self._feed(camera, classifier=_StaticClassifier([("a", 1.0)]))

        status = await feed.start()
        self.assertFalse(status.running)
        self.assertIs(status.lifecycle, Lifecycle.IDLE)
        self.assertEqual(status.error_kind, "camera")
        self.assertEqual(status.error, "Camera error: Permission denied")
        self.assertEqual(camera.acquired, 0)

        status = await feed.start()
        self.assertTrue(status.running)
        self.assertIsNone(status.error)

    async def test_unexpected_acquire_failure_returns_to_idle(self) -> None:
        camera = _CountingCamera(fail_times=1, failure=OSError("device busy"))
        feed = self._feed(camera, classifier=_StaticClassifier([("a", 1.0)]))

        with self.assertLogs("device.harness", level="ERROR"):
            status = await feed.start()

        self.assertFalse(status.running)
        self.assertIs(status.lifecycle, Lifecycle.IDLE)
        self.assertEqual(status.error_kind, "camera")
        self.assertEqual(status.error, "Camera error: device busy")

        status = await feed.start()
        self.assertTrue(status.running)
        self.assertIsNone(status.error)
        await feed.stop()
        self.assertEqual(camera.acquired, 0)

    async def test_result_arriving_after_stop_is_not_published(self) -> None:
        classifier = _PendingClassifier()
        feed = self._feed(_CountingCamera(), classifier=classifier)
        self.addAsyncCleanup(self._resolve, classifier)

        await feed.start()
        await asyncio.sleep(0.03)
        self.assertEqual(len(classifier.calls), 1)
        await feed.stop()

        classifier.resolve_all([("open", 0.9), ("closed", 0.1)])
        await asyncio.sleep(0.02)

        self.assertIsNone(feed.status.prediction)
        self.assertTrue(all(status.prediction is None for status in self.statuses))

    async def test_restart_waits_for_call_left_in_flight(self) -> None:
        classifier = _PendingClassifier()
        feed = self._feed(_CountingCamera(), classifier=classifier)
        self.addAsyncCleanup(self._resolve, classifier)

        await feed.start()
        await asyncio.sleep(0.03)
        await feed.stop()
        status = await feed.start()
        self.assertTrue(status.running)
        await asyncio.sleep(0.05)

        self.assertEqual(len(classifier.calls), 1)
        self.assertEqual(classifier.max_active, 1)

        classifier.resolve_all([("open", 0.9), ("closed", 0.1)])
        await asyncio.sleep(0.05)

        self.assertEqual(len(classifier.calls), 2)
        self.assertEqual(classifier.max_active, 1)
        self.assertIsNone(feed.status.prediction)

        classifier.resolve_all([("open", 0.9), ("closed", 0.1)])
        await asyncio.sleep(0.02)
        self.assertIs(feed.status.door_state, DoorState.OPEN)

    async def _resolve(self, classifier: _PendingClassifier) -> None:
        classifier.resolve_all([])

    async def test_model_load_failure_is_terminal(self) -> None:
        camera = _CountingCamera()

        async def failing_loader():
            raise ModelLoadError("model.json not found")

        feed = self._feed(camera, model_loader=failing_loader)

        self.assertFalse(await feed.load_model())
        self.assertFalse(await feed.load_model())
        self.assertEqual(feed.status.error, "Failed to load model")
        self.assertEqual(feed.status.error_kind, "model_load")

        status = await feed.start()
        self.assertFalse(status.running)
        self.assertEqual(camera.acquire_calls, 0)

    async def test_start_without_model_is_refused(self) -> None:
        camera = _CountingCamera()
        feed = self._feed(camera)

        status = await feed.start()

        self.assertFalse(status.running)
        self.assertEqual(status.error_kind, "not_ready")
        self.assertEqual(camera.acquire_calls, 0)

    async def test_start_waits_for_pending_model_load(self) -> None:
        release = asyncio.Event()
        loads = []

        async def slow_loader():
            loads.append(1)
            await release.wait()
            return _StaticClassifier([("a", 1.0)])

        feed = self._feed(_CountingCamera(), model_loader=slow_loader)
        load_task = asyncio.ensure_future(feed.load_model())
        start_task = asyncio.ensure_future(feed.start())
        await asyncio.sleep(0.01)
        self.assertFalse(start_task.done())

        release.set()
        status = await start_task

        self.assertTrue(await load_task)
        self.assertTrue(status.running)
        self.assertTrue(status.model_loaded)
        self.assertEqual(loads, [1])

    async def test_classification_error_keeps_previous_prediction(self) -> None:
        feed = self._feed(
            _CountingCamera(),
            classifier=_StaticClassifier([("open", 0.8), ("closed", 0.2)], RuntimeError("boom")),
        )

        await feed.start()
        await asyncio.sleep(0.05)

        status = feed.status
        self.assertTrue(status.running)
        self.assertEqual(status.error_kind, "classification")
        self.assertIn("boom", status.error)
        self.assertIs(status.door_state, DoorState.OPEN)

    async def test_close_releases_camera_and_blocks_restart(self) -> None:
        camera = _CountingCamera()
        feed = self._feed(camera, classifier=_StaticClassifier([("a", 1.0)]))
        await feed.start()

        await feed.close()
        await feed.close()

        self.assertEqual(camera.acquired, 0)
        status = await feed.start()
        self.assertFalse(status.running)
        self.assertEqual(camera.acquire_calls, 1)

    async def test_failing_listener_does_not_break_publishing(self) -> None:
        feed = self._feed(_CountingCamera(), classifier=_StaticClassifier([("a", 1.0)]))

        def broken(status: FeedStatus) -> None:
            raise ValueError("listener bug")

        feed.subscribe(broken)
        with self.assertLogs("device.harness", level="ERROR"):
            status = await feed.start()

        self.assertTrue(status.running)
        self.assertTrue(self.statuses)


if __name__ == "__main__":
    unittest.main()
