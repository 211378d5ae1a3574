import hashlib
import json
import tempfile
import unittest
from pathlib import Path

import numpy as np
import requests

from doorcam.ai.executor import ThreadedClassifier
from doorcam.ai.loader import fetch_location, load_classifier, resolve_location
from doorcam.ai.simple import BrightnessClassifier
from doorcam.ai.tflite_model import load_labels
from doorcam.ai.types import ClassificationError, ModelLoadError


class _FakeResponse:
    def __init__(self, content: bytes, status: int = 200) -> None:
        self.content = content
        self.status_code = status

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


class _FakeSession:
    def __init__(self, response: _FakeResponse | Exception) -> None:
        self._response = response
        self.urls: list[str] = []

    def get(self, url: str, timeout: float):
        self.urls.append(url)
        if isinstance(self._response, Exception):
            raise self._response
        return self._response


class LocationTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.tmp_path = Path(self.tmp.name)

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def test_resolve_against_url_and_directory(self) -> None:
        self.assertEqual(
            resolve_location("http://localhost:3000/model", "model.json"),
            "http://localhost:3000/model/model.json",
        )
        self.assertEqual(
            resolve_location("models/door", "labels.txt"),
            str(Path("models/door") / "labels.txt"),
        )
        self.assertEqual(
            resolve_location("http://a/model", "https://b/x.tflite"), "https://b/x.tflite"
        )
        self.assertEqual(resolve_location(None, "model.tflite"), "model.tflite")

    def test_missing_local_file_is_model_load_error(self) -> None:
        with self.assertRaises(ModelLoadError):
            fetch_location(str(self.tmp_path / "missing.tflite"))

    def test_url_is_downloaded_once_into_cache(self) -> None:
        session = _FakeSession(_FakeResponse(b"weights"))
        url = "http://host/model/model.tflite"

        first = fetch_location(url, cache_dir=self.tmp_path, session=session)
        second = fetch_location(url, cache_dir=self.tmp_path, session=session)

        self.assertEqual(first, second)
        self.assertEqual(first.read_bytes(), b"weights")
        self.assertEqual(session.urls, [url])

    def test_interrupted_download_is_not_a_cache_hit(self) -> None:
        url = "http://host/model/model.tflite"
        digest = hashlib.sha1(url.encode("utf-8")).hexdigest()[:12]
        leftover = self.tmp_path / f"{digest}_model.tflite.part"
        leftover.write_bytes(b"wei")
        session = _FakeSession(_FakeResponse(b"weights"))

        path = fetch_location(url, cache_dir=self.tmp_path, session=session)

        self.assertEqual(path.read_bytes(), b"weights")
        self.assertEqual(session.urls, [url])
        self.assertFalse(leftover.exists())
        self.assertEqual(list(self.tmp_path.iterdir()), [path])

    def test_http_failure_is_model_load_error(self) -> None:
        for response in (_FakeResponse(b"", status=404), requests.ConnectionError("down")):
            session = _FakeSession(response)
            with self.assertRaises(ModelLoadError):
                fetch_location(
                    "http://host/model.tflite", cache_dir=self.tmp_path, session=session
                )

    def test_labels_from_text_and_metadata(self) -> None:
        text = self.tmp_path / "labels.txt"
        text.write_text("0 Closed\n1 Open\n\n", encoding="utf-8")
        meta = self.tmp_path / "metadata.json"
        meta.write_text(json.dumps({"labels": ["closed", "open"]}), encoding="utf-8")
        bad = self.tmp_path / "bad.json"
        bad.write_text(json.dumps({"modelName": "x"}), encoding="utf-8")

        self.assertEqual(load_labels(text), ["Closed", "Open"])
        self.assertEqual(load_labels(meta), ["closed", "open"])
        with self.assertRaises(ModelLoadError):
            load_labels(bad)


class LoadClassifierTests(unittest.IsolatedAsyncioTestCase):
    async def test_brightness_backend_uses_metadata_labels(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            Path(tmp, "metadata.json").write_text(
                json.dumps({"labels": ["closed", "open"]}), encoding="utf-8"
            )
            classifier = await load_classifier(
                tmp, None, "metadata.json", backend="brightness"
            )

        self.assertIsInstance(classifier, BrightnessClassifier)
        self.assertEqual(classifier.labels, ("closed", "open"))
        self.assertTrue(classifier.loaded)

    async def test_missing_model_file_raises(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            with self.assertRaises(ModelLoadError):
                await load_classifier(tmp, "model.tflite", None)

    async def test_unknown_backend_raises(self) -> None:
        with self.assertRaises(ModelLoadError):
            await load_classifier(None, "model.onnx", None, backend="onnx")


class BrightnessClassifierTests(unittest.IsolatedAsyncioTestCase):
    async def test_dark_and_bright_frames(self) -> None:
        classifier = BrightnessClassifier(labels=("dark", "bright"))

        dark = await classifier.classify(np.zeros((8, 8, 3), dtype=np.uint8))
        bright = await classifier.classify(np.full((8, 8, 3), 255, dtype=np.uint8))

        self.assertEqual([label for label, _ in dark], ["dark", "bright"])
        self.assertGreater(dark[0][1], dark[1][1])
        self.assertGreater(bright[1][1], bright[0][1])

    async def test_unsupported_frame_raises_classification_error(self) -> None:
        classifier = BrightnessClassifier()

        with self.assertRaises(ClassificationError):
            await classifier.classify("not-a-frame")

    def test_threaded_base_requires_predict(self) -> None:
        with self.assertRaises(TypeError):
            ThreadedClassifier()


if __name__ == "__main__":
    unittest.main()
