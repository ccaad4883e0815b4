"""HTTP surface: health, feed start, latest ticks and a server-sent tick stream."""

from __future__ import annotations

import asyncio
import logging

from aiohttp import web

from dhanfeed.config_loader import ServerConfig
from dhanfeed.errors import ConfigurationError
from dhanfeed.feed.broadcaster import QueueSink
from dhanfeed.feed.client import FeedClient

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # disable nginx buffering
}


class StreamServer:
    """
    aiohttp application around a FeedClient.

    Endpoints:
    - GET /api/health       feed status, subscriber count and client stats
    - GET /api/start-feed   start the feed connection
    - GET /api/ticks/latest snapshot of the tick store
    - GET /api/ticks        text/event-stream of broadcaster messages
    """

    def __init__(self, config: ServerConfig, client: FeedClient) -> None:
        self.config = config
        self.client = client
        self.app = self._build_app()
        self._runner: web.AppRunner | None = None

    def _build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/api/health", self.health)
        app.router.add_get("/api/start-feed", self.start_feed)
        app.router.add_get("/api/ticks/latest", self.latest_ticks)
        app.router.add_get("/api/ticks", self.stream_ticks)
        app.on_shutdown.append(self._on_shutdown)
        return app

    async def start(self) -> None:
        """Bind and serve on the configured host/port."""
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.config.host, self.config.port)
        await site.start()
        logger.info(f"Stream server listening on {self.config.host}:{self.config.port}")

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            logger.info("Stream server stopped")

    async def _on_shutdown(self, app: web.Application) -> None:
        # Ends every open event stream
        self.client.broadcaster.close_all()

    # --- Handlers ---

    async def health(self, request: web.Request) -> web.Response:
        return web.json_response(
            {
                "status": "ok",
                "websocket": self.client.status().value,
                "subscribers": len(self.client.broadcaster),
                "instruments": len(self.client.instruments),
                "stats": self.client.stats,
            }
        )

    async def start_feed(self, request: web.Request) -> web.Response:
        try:
            self.client.connect()
        except ConfigurationError as e:
            logger.error(f"Cannot start feed: {e}")
            return web.json_response({"status": "error", "error": str(e)}, status=500)

        return web.json_response(
            {
                "status": "ok",
                "msg": "Feed started",
                "websocket": self.client.status().value,
            }
        )

    async def latest_ticks(self, request: web.Request) -> web.Response:
        records = self.client.store.snapshot()
        return web.json_response({"data": [r.to_dict() for r in records]})

    async def stream_ticks(self, request: web.Request) -> web.StreamResponse:
        response = web.StreamResponse(headers=SSE_HEADERS)
        response.content_type = "text/event-stream"
        await response.prepare(request)

        sink = QueueSink(maxsize=self.config.subscriber_queue_size)
        sub_id = self.client.broadcaster.subscribe(sink)
        logger.info(f"Stream client {sub_id} connected")

        try:
            while True:
                try:
                    message = await asyncio.wait_for(
                        sink.get(), timeout=self.config.heartbeat_seconds
                    )
                except asyncio.TimeoutError:
                    await response.write(b": heartbeat\n\n")
                    continue

                if message is None:
                    break
                await response.write(f"data: {message}\n\n".encode())
        except ConnectionResetError:
            logger.debug(f"Stream client {sub_id} went away")
        finally:
            self.client.broadcaster.unsubscribe(sub_id)
            sink.close()
            logger.info(f"Stream client {sub_id} disconnected")

        return response
