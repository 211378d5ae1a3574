import unittest
from unittest import mock

import cv2
import numpy as np

from device.capture import (
    CameraAcquisitionError,
    CameraConstraints,
    Frame,
    OpenCVCamera,
    StubCamera,
)


class StubCameraTests(unittest.TestCase):
    def test_acquire_release_is_symmetric_and_idempotent(self) -> None:
        camera = StubCamera(size=(8, 6))
        self.assertFalse(camera.is_active())
        self.assertFalse(camera.is_frame_ready())

        first = camera.acquire()
        second = camera.acquire()
        self.assertEqual(first, second)
        self.assertTrue(camera.is_frame_ready())
        self.assertEqual(camera.current_frame().image.shape, (6, 8, 3))

        camera.release(first)
        camera.release(first)
        camera.release()
        self.assertFalse(camera.is_active())
        with self.assertRaises(RuntimeError):
            camera.current_frame()

    def test_release_ignores_stale_handle(self) -> None:
        camera = StubCamera()
        old = camera.acquire()
        camera.release(old)
        camera.acquire()

        camera.release(old)

        self.assertTrue(camera.is_active())

    def test_frame_encodes_to_jpeg(self) -> None:
        frame = Frame(image=np.zeros((4, 4, 3), dtype=np.uint8), timestamp=0.0)

        payload = frame.encode("jpeg")

        self.assertTrue(payload.startswith(b"\xff\xd8"))


class OpenCVCameraTests(unittest.TestCase):
    def test_unknown_backend_alias_fails_acquire(self) -> None:
        camera = OpenCVCamera(CameraConstraints(source=0, backend="nonsense"))

        with self.assertRaises(CameraAcquisitionError):
            camera.acquire()
        self.assertFalse(camera.is_active())

    def test_missing_source_fails_acquire(self) -> None:
        camera = OpenCVCamera(CameraConstraints(source="/nonexistent/video.mp4"))

        with self.assertRaises(CameraAcquisitionError):
            camera.acquire()
        self.assertFalse(camera.is_frame_ready())
        camera.release()

    def test_opencv_error_is_wrapped_as_acquisition_error(self) -> None:
        camera = OpenCVCamera(CameraConstraints(source=0))

        with mock.patch.object(cv2, "VideoCapture", side_effect=cv2.error("device busy")):
            with self.assertRaises(CameraAcquisitionError) as ctx:
                camera.acquire()

        self.assertIsInstance(ctx.exception.__cause__, cv2.error)
        self.assertFalse(camera.is_active())


if __name__ == "__main__":
    unittest.main()
