from __future__ import annotations

import argparse
import asyncio
import logging
from functools import partial
from pathlib import Path
from typing import Sequence

import uvicorn
from dotenv import load_dotenv

from doorcam.ai.loader import load_classifier
from doorcam.api.server import create_app

from device.capture import OpenCVCamera, StubCamera, VideoSource
from device.config import (
    DEFAULT_CONFIG_PATH,
    FeedConfig,
    load_config,
    parse_backend,
    parse_resolution,
    parse_source,
)
from device.harness import CameraFeed, FeedStatus


logger = logging.getLogger(__name__)


def _resolution_arg(value: str) -> tuple[int, int] | None:
    try:
        return parse_resolution(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Run the door camera monitor",
        epilog=f"Configuration is loaded from {DEFAULT_CONFIG_PATH}. "
        "CLI arguments override config file settings.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_PATH,
        help="Path to JSON configuration file",
    )
    parser.add_argument(
        "--camera",
        choices=["stub", "opencv"],
        default=None,
        help="camera backend to use",
    )
    parser.add_argument(
        "--camera-source",
        default=None,
        help="camera index or URL (OpenCV) or sample image path (stub)",
    )
    parser.add_argument(
        "--camera-resolution",
        type=_resolution_arg,
        default=None,
        help="force camera resolution WIDTHxHEIGHT (only for OpenCV backend)",
    )
    parser.add_argument(
        "--camera-backend",
        default=None,
        help="preferred OpenCV backend (e.g. dshow, msmf, v4l2, 700)",
    )
    parser.add_argument("--model-base", default=None, help="directory or URL holding the model")
    parser.add_argument("--model-file", default=None, help="model file relative to the base")
    parser.add_argument(
        "--metadata-file", default=None, help="labels/metadata file relative to the base"
    )
    parser.add_argument(
        "--classifier",
        choices=["tflite", "brightness"],
        default=None,
        help="classifier backend",
    )
    parser.add_argument(
        "--min-interval-ms",
        type=float,
        default=None,
        help="minimum milliseconds between classifications",
    )
    parser.add_argument(
        "--classify-timeout",
        type=float,
        default=None,
        help="seconds before a classification is reported as timed out",
    )
    parser.add_argument(
        "--serve",
        action="store_true",
        help="expose status and start/stop over HTTP instead of running headless",
    )
    parser.add_argument("--host", default=None, help="HTTP host when serving")
    parser.add_argument("--port", type=int, default=None, help="HTTP port when serving")
    parser.add_argument(
        "--duration",
        type=float,
        default=0.0,
        help="headless run time in seconds (0 runs until interrupted)",
    )
    parser.add_argument("--verbose", action="store_true", help="enable debug logging")
    return parser


def apply_overrides(config: FeedConfig, args: argparse.Namespace) -> FeedConfig:
    if args.camera:
        config.camera.kind = args.camera
    if args.camera_source is not None:
        config.camera.source = parse_source(args.camera_source)
    if args.camera_resolution is not None:
        config.camera.resolution = args.camera_resolution
    if args.camera_backend is not None:
        config.camera.backend = parse_backend(args.camera_backend)
    if args.model_base is not None:
        config.model.base = args.model_base
    if args.model_file is not None:
        config.model.file = args.model_file
    if args.metadata_file is not None:
        config.model.metadata = args.metadata_file or None
    if args.classifier:
        config.model.backend = args.classifier
    if args.min_interval_ms is not None and args.min_interval_ms >= 0:
        config.scheduler.min_interval = args.min_interval_ms / 1000.0
    if args.classify_timeout is not None and args.classify_timeout > 0:
        config.scheduler.classify_timeout = args.classify_timeout
    if args.host:
        config.server.host = args.host
    if args.port:
        config.server.port = args.port
    return config


def build_camera(config: FeedConfig) -> VideoSource:
    if config.camera.kind == "opencv":
        return OpenCVCamera(config.camera.constraints())
    sample = Path(str(config.camera.source)) if config.camera.source != "" else None
    return StubCamera(sample_path=sample if sample and sample.exists() else None)


def build_feed(config: FeedConfig) -> CameraFeed:
    model = config.model
    loader = partial(
        load_classifier,
        model.base,
        model.file,
        model.metadata,
        backend=model.backend,
        cache_dir=model.cache_dir,
        timeout=model.fetch_timeout_seconds,
    )
    return CameraFeed(
        build_camera(config),
        loader,
        scheduler_config=config.scheduler,
        mapping=config.state_mapping,
        constraints=config.camera.constraints(),
    )


def log_status(status: FeedStatus) -> None:
    if status.error:
        logger.warning("[feed] %s (%s)", status.error, status.error_kind)
    prediction = status.prediction
    if prediction is not None:
        logger.info(
            "[feed] door=%s class=%s confidence=%.1f%% running=%s",
            prediction.door_state.value,
            prediction.top_label,
            prediction.confidence,
            status.running,
        )


async def run_headless(feed: CameraFeed, duration: float) -> FeedStatus:
    feed.subscribe(log_status)
    async with feed:
        if not await feed.load_model():
            return feed.status
        status = await feed.start()
        if not status.running:
            return status
        logger.info("Inference loop running. Press Ctrl+C to stop.")
        if duration > 0:
            await asyncio.sleep(duration)
        else:
            await asyncio.Event().wait()
        return await feed.stop()


def serve(feed: CameraFeed, config: FeedConfig) -> None:
    app = create_app(feed)
    uvicorn.run(app, host=config.server.host, port=config.server.port)


def main(argv: Sequence[str] | None = None) -> int:
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)
    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=logging.DEBUG if args.verbose else logging.INFO,
            format="%(levelname)s [%(name)s] %(message)s",
        )

    config = load_config(args.config).apply_environment()
    config = apply_overrides(config, args)
    feed = build_feed(config)

    if args.serve:
        serve(feed, config)
        return 0
    try:
        status = asyncio.run(run_headless(feed, args.duration))
    except KeyboardInterrupt:
        logger.info("Stopped by user")
        return 0
    return 1 if status.error_kind in ("model_load", "camera", "not_ready") else 0


if __name__ == "__main__":
    raise SystemExit(main())
