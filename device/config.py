"""Feed configuration loaded from JSON with environment overrides.

Configuration file keys (all optional):
- model: base, file, metadata, backend, cache_dir, fetch_timeout_seconds
- camera: kind, source, resolution ("WIDTHxHEIGHT"), backend, warmup_frames
- scheduler: min_interval_ms, tick_interval_ms, classify_timeout_seconds
- state_mapping: list of door states by class index, e.g. ["open", "closed"]
- server: host, port

Environment variables DOORCAM_MODEL_BASE and DOORCAM_CAMERA_SOURCE override
the file after ``.env`` has been loaded.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from doorcam.ai.interpret import StateMapping

from .capture import CameraConstraints
from .scheduler import (
    DEFAULT_MIN_INTERVAL_SECONDS,
    DEFAULT_TICK_INTERVAL_SECONDS,
    SchedulerConfig,
)

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("config/doorcam.json")
ENV_MODEL_BASE = "DOORCAM_MODEL_BASE"
ENV_CAMERA_SOURCE = "DOORCAM_CAMERA_SOURCE"

# Below one display frame the throttle stops meaning anything.
MIN_TICK_INTERVAL_SECONDS = 0.001


@dataclass
class ModelSettings:
    base: str | None = "model"
    file: str | None = "model.tflite"
    metadata: str | None = "metadata.json"
    backend: str = "tflite"
    cache_dir: Path = Path("models")
    fetch_timeout_seconds: float = 20.0


@dataclass
class CameraSettings:
    kind: str = "opencv"
    source: int | str = 0
    resolution: tuple[int, int] | None = None
    backend: str | int | None = None
    warmup_frames: int = 2

    def constraints(self) -> CameraConstraints:
        return CameraConstraints(
            source=self.source,
            resolution=self.resolution,
            backend=self.backend,
            warmup_frames=self.warmup_frames,
        )


@dataclass
class ServerSettings:
    host: str = "127.0.0.1"
    port: int = 8000


@dataclass
class FeedConfig:
    model: ModelSettings = field(default_factory=ModelSettings)
    camera: CameraSettings = field(default_factory=CameraSettings)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    state_mapping: StateMapping = field(default_factory=StateMapping)
    server: ServerSettings = field(default_factory=ServerSettings)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> FeedConfig:
        """Build a config, dropping values that fail validation."""
        model_data = _section(data, "model")
        camera_data = _section(data, "camera")
        scheduler_data = _section(data, "scheduler")
        server_data = _section(data, "server")

        defaults_model = ModelSettings()
        model = ModelSettings(
            base=_optional_str(model_data.get("base", defaults_model.base)),
            file=_optional_str(model_data.get("file", defaults_model.file)),
            metadata=_optional_str(model_data.get("metadata", defaults_model.metadata)),
            backend=str(model_data.get("backend") or defaults_model.backend).lower(),
            cache_dir=Path(model_data.get("cache_dir") or defaults_model.cache_dir),
            fetch_timeout_seconds=_positive_float(
                model_data.get("fetch_timeout_seconds"),
                defaults_model.fetch_timeout_seconds,
            ),
        )

        camera = CameraSettings(
            kind=str(camera_data.get("kind") or "opencv").lower(),
            source=parse_source(camera_data.get("source", 0)),
            resolution=_safe_resolution(camera_data.get("resolution")),
            backend=parse_backend(camera_data.get("backend")),
            warmup_frames=max(0, _int(camera_data.get("warmup_frames"), 2)),
        )

        scheduler = SchedulerConfig(
            min_interval=_positive_float(
                _ms_to_seconds(scheduler_data.get("min_interval_ms")),
                DEFAULT_MIN_INTERVAL_SECONDS,
                allow_zero=True,
            ),
            tick_interval=max(
                MIN_TICK_INTERVAL_SECONDS,
                _positive_float(
                    _ms_to_seconds(scheduler_data.get("tick_interval_ms")),
                    DEFAULT_TICK_INTERVAL_SECONDS,
                ),
            ),
            classify_timeout=_positive_float(
                scheduler_data.get("classify_timeout_seconds"), None
            ),
        )

        mapping = StateMapping()
        raw_mapping = data.get("state_mapping")
        if raw_mapping is not None:
            try:
                mapping = StateMapping.from_names(raw_mapping)
            except (TypeError, ValueError) as exc:
                logger.warning("Ignoring invalid state_mapping %r: %s", raw_mapping, exc)

        server = ServerSettings(
            host=str(server_data.get("host") or ServerSettings.host),
            port=_int(server_data.get("port"), ServerSettings.port),
        )
        return cls(
            model=model,
            camera=camera,
            scheduler=scheduler,
            state_mapping=mapping,
            server=server,
        )

    def apply_environment(self, environ: Mapping[str, str] | None = None) -> FeedConfig:
        env = os.environ if environ is None else environ
        base = env.get(ENV_MODEL_BASE)
        if base:
            self.model.base = base
        source = env.get(ENV_CAMERA_SOURCE)
        if source:
            self.camera.source = parse_source(source)
        return self


def _section(data: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = data.get(key, {})
    return value if isinstance(value, Mapping) else {}


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _ms_to_seconds(value: Any) -> float | None:
    try:
        return float(value) / 1000.0
    except (TypeError, ValueError):
        return None


def _positive_float(value: Any, default: float | None, allow_zero: bool = False) -> float | None:
    if value is None:
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if number < 0 or (number == 0 and not allow_zero):
        return default
    return number


def parse_source(value: Any) -> int | str:
    if isinstance(value, int):
        return value
    text = str(value).strip()
    try:
        return int(text)
    except ValueError:
        return text


def parse_backend(value: Any) -> str | int | None:
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    try:
        return int(text)
    except ValueError:
        return text


def parse_resolution(value: str | None) -> tuple[int, int] | None:
    if value is None:
        return None
    parts = str(value).lower().split("x")
    if len(parts) != 2:
        raise ValueError("resolution must be WIDTHxHEIGHT")
    width, height = parts
    return int(width), int(height)


def _safe_resolution(value: Any) -> tuple[int, int] | None:
    try:
        return parse_resolution(value)
    except ValueError:
        logger.warning("Ignoring invalid camera resolution %r", value)
        return None


def load_config(path: Path | None = None) -> FeedConfig:
    """Load configuration from JSON, falling back to defaults on any problem."""
    if path is None or not path.exists():
        logger.info("No config file found at %s; using defaults", path)
        return FeedConfig()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Failed to load config from %s: %s; using defaults", path, exc)
        return FeedConfig()
    if not isinstance(data, dict):
        logger.warning("Config at %s is not a JSON object; using defaults", path)
        return FeedConfig()
    config = FeedConfig.from_dict(data)
    logger.info(
        "Loaded config from %s: model=%s/%s camera=%s min_interval=%.3fs",
        path,
        config.model.base,
        config.model.file,
        config.camera.source,
        config.scheduler.min_interval,
    )
    return config


__all__ = [
    "CameraSettings",
    "FeedConfig",
    "ModelSettings",
    "ServerSettings",
    "DEFAULT_CONFIG_PATH",
    "load_config",
    "parse_backend",
    "parse_resolution",
    "parse_source",
]
