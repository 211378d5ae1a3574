from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any, AsyncIterator

from fastapi import FastAPI, HTTPException
from fastapi.responses import Response, StreamingResponse

from device.harness import CameraFeed, FeedStatus

from .schemas import FeedStatusResponse


logger = logging.getLogger(__name__)

_QUEUE_SHUTDOWN = "__shutdown__"


class StatusHub:
    """Fans feed status snapshots out to server-sent event subscribers."""

    def __init__(self) -> None:
        self._subscribers: set[asyncio.Queue[str]] = set()
        self._closing = False

    def subscribe(self) -> asyncio.Queue[str]:
        queue: asyncio.Queue[str] = asyncio.Queue()
        if self._closing:
            queue.put_nowait(_QUEUE_SHUTDOWN)
            return queue
        self._subscribers.add(queue)
        logger.debug("StatusHub subscribed total=%d", len(self._subscribers))
        return queue

    def unsubscribe(self, queue: asyncio.Queue[str]) -> None:
        self._subscribers.discard(queue)
        logger.debug("StatusHub unsubscribed remaining=%d", len(self._subscribers))

    def publish(self, message: dict[str, Any]) -> None:
        if self._closing:
            return
        payload = json.dumps(message)
        logger.debug(
            "Publishing status subscribers=%d payload=%s", len(self._subscribers), payload
        )
        for queue in list(self._subscribers):
            queue.put_nowait(payload)

    def close(self) -> None:
        self._closing = True
        queues = list(self._subscribers)
        self._subscribers.clear()
        logger.info("StatusHub closing queues=%d", len(queues))
        for queue in queues:
            queue.put_nowait(_QUEUE_SHUTDOWN)


def _response(status: FeedStatus) -> FeedStatusResponse:
    return FeedStatusResponse.from_status(status.to_dict())


def create_app(feed: CameraFeed, *, load_model_on_startup: bool = True) -> FastAPI:
    hub = StatusHub()

    def _forward(status: FeedStatus) -> None:
        hub.publish(status.to_dict())

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        unsubscribe = feed.subscribe(_forward)
        app.state.model_task = (
            asyncio.ensure_future(feed.load_model()) if load_model_on_startup else None
        )
        try:
            yield
        finally:
            unsubscribe()
            hub.close()
            await feed.close()
            logger.info("Camera feed closed")

    app = FastAPI(title="Door Camera Monitor", version="0.1.0", lifespan=lifespan)
    app.state.feed = feed
    app.state.status_hub = hub

    @app.get("/health", response_model=dict[str, str])
    def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/v1/status", response_model=FeedStatusResponse)
    def get_status() -> FeedStatusResponse:
        return _response(feed.status)

    @app.post("/v1/start", response_model=FeedStatusResponse)
    async def start_feed() -> FeedStatusResponse:
        status = await feed.start()
        logger.info(
            "Start requested running=%s error=%s", status.running, status.error
        )
        return _response(status)

    @app.post("/v1/stop", response_model=FeedStatusResponse)
    async def stop_feed() -> FeedStatusResponse:
        status = await feed.stop()
        logger.info("Stop requested running=%s", status.running)
        return _response(status)

    @app.get("/v1/frame")
    async def latest_frame() -> Response:
        camera = feed.camera
        if not camera.is_frame_ready():
            raise HTTPException(status_code=404, detail="No frame available")
        loop = asyncio.get_running_loop()
        try:
            frame = camera.current_frame()
            payload = await loop.run_in_executor(None, frame.encode, "jpeg")
        except RuntimeError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return Response(content=payload, media_type="image/jpeg")

    @app.get("/v1/status/stream")
    async def status_stream() -> StreamingResponse:
        queue = hub.subscribe()
        logger.info("Status stream connected")

        async def event_generator() -> AsyncIterator[str]:
            try:
                yield f"data: {json.dumps(feed.status.to_dict())}\n\n"
                while True:
                    message = await queue.get()
                    if message == _QUEUE_SHUTDOWN:
                        break
                    yield f"data: {message}\n\n"
            except asyncio.CancelledError:
                logger.debug("Status stream cancelled")
            finally:
                hub.unsubscribe(queue)
                logger.info("Status stream disconnected")

        return StreamingResponse(event_generator(), media_type="text/event-stream")

    return app


__all__ = ["StatusHub", "create_app"]
