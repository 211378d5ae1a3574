from __future__ import annotations

import asyncio
import hashlib
import logging
from pathlib import Path
from urllib.parse import urljoin, urlparse

import requests

from .simple import BrightnessClassifier
from .tflite_model import TFLiteImageClassifier, load_labels
from .types import Classifier, ModelLoadError


logger = logging.getLogger(__name__)

DEFAULT_CACHE_DIR = Path("models")


def _is_url(location: str) -> bool:
    return urlparse(location).scheme in {"http", "https"}


def resolve_location(base: str | Path | None, name: str) -> str:
    """Join ``name`` onto the configured base directory or URL."""
    if _is_url(name) or Path(name).is_absolute() or not base:
        return str(name)
    base_str = str(base)
    if _is_url(base_str):
        return urljoin(base_str.rstrip("/") + "/", name)
    return str(Path(base_str) / name)


def fetch_location(
    location: str,
    cache_dir: Path = DEFAULT_CACHE_DIR,
    timeout: float = 20.0,
    session: requests.Session | None = None,
) -> Path:
    """Return a local path for ``location``, downloading URLs into ``cache_dir``."""
    if not _is_url(location):
        path = Path(location)
        if not path.is_file():
            raise ModelLoadError(f"Model file not found: {path}")
        return path

    digest = hashlib.sha1(location.encode("utf-8")).hexdigest()[:12]
    name = Path(urlparse(location).path).name or "model"
    target = cache_dir / f"{digest}_{name}"
    if target.is_file():
        return target
    http = session or requests
    try:
        response = http.get(location, timeout=timeout)
        response.raise_for_status()
    except requests.Timeout as exc:
        raise ModelLoadError(f"Timed out fetching {location}") from exc
    except requests.RequestException as exc:
        raise ModelLoadError(f"Failed to fetch {location}: {exc}") from exc
    cache_dir.mkdir(parents=True, exist_ok=True)
    staging = target.with_name(target.name + ".part")
    staging.write_bytes(response.content)
    staging.replace(target)
    logger.info("Downloaded %s to %s (%d bytes)", location, target, len(response.content))
    return target


def _load_blocking(
    backend: str,
    model_base: str | Path | None,
    model_file: str | None,
    metadata_file: str | None,
    cache_dir: Path,
    timeout: float,
) -> Classifier:
    labels = None
    if metadata_file:
        metadata_location = resolve_location(model_base, metadata_file)
        labels = load_labels(fetch_location(metadata_location, cache_dir, timeout))

    if backend == "brightness":
        if labels and len(labels) >= 2:
            return BrightnessClassifier(labels=(labels[0], labels[1]))
        return BrightnessClassifier()
    if backend != "tflite":
        raise ModelLoadError(f"Unknown classifier backend: {backend!r}")
    if not model_file:
        raise ModelLoadError("No model file configured")
    model_location = resolve_location(model_base, model_file)
    logger.info("Loading model from: %s", model_location)
    model_path = fetch_location(model_location, cache_dir, timeout)
    return TFLiteImageClassifier(model_path, labels=labels)


async def load_classifier(
    model_base: str | Path | None,
    model_file: str | None,
    metadata_file: str | None = None,
    *,
    backend: str = "tflite",
    cache_dir: Path = DEFAULT_CACHE_DIR,
    timeout: float = 20.0,
) -> Classifier:
    """Resolve, fetch and load a classifier once; every failure is a ModelLoadError."""
    loop = asyncio.get_running_loop()
    try:
        return await loop.run_in_executor(
            None,
            _load_blocking,
            backend,
            model_base,
            model_file,
            metadata_file,
            cache_dir,
            timeout,
        )
    except ModelLoadError:
        raise
    except Exception as exc:
        raise ModelLoadError(f"Failed to load model: {exc}") from exc


__all__ = ["fetch_location", "load_classifier", "resolve_location"]
