"""Live market feed client.

One FeedClient owns one websocket to the feed. Transport events (open,
message, error, close) and reconnect timer firings all go through a single
ordered inbox consumed by one dispatcher task, so the tick store and the
broadcaster are only ever touched from that task.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol
from urllib.parse import urlencode

import websockets

from dhanfeed.config_loader import FeedConfig
from dhanfeed.constants import (
    DEFAULT_RECONNECT_CAP_MS,
    DEFAULT_RECONNECT_FLOOR_MS,
    DEFAULT_RECONNECT_MULTIPLIER,
    ConnectionState,
    FeedStatus,
)
from dhanfeed.data.instruments import InstrumentTable
from dhanfeed.data.tick_store import TickStore
from dhanfeed.errors import ConfigurationError, MalformedFrame
from dhanfeed.feed.broadcaster import Broadcaster
from dhanfeed.feed.codec import TickCodec
from dhanfeed.time.market_clock import MarketClock

logger = logging.getLogger(__name__)


class Transport(Protocol):
    """The subset of a websocket connection the client relies on."""

    async def send(self, message: str) -> None: ...

    async def close(self) -> None: ...

    def __aiter__(self) -> AsyncIterator[str | bytes]: ...


Connector = Callable[[str], Awaitable[Transport]]


class FeedEventType(str, Enum):
    OPEN = "open"
    MESSAGE = "message"
    ERROR = "error"
    CLOSE = "close"
    RECONNECT = "reconnect"


@dataclass(frozen=True)
class FeedEvent:
    """One inbox entry. ``generation`` ties it to a connect attempt."""

    type: FeedEventType
    generation: int
    payload: Any = None


@dataclass
class ReconnectState:
    """Backoff delay between reconnect attempts."""

    delay_ms: int = DEFAULT_RECONNECT_FLOOR_MS
    floor_ms: int = DEFAULT_RECONNECT_FLOOR_MS
    cap_ms: int = DEFAULT_RECONNECT_CAP_MS
    multiplier: float = DEFAULT_RECONNECT_MULTIPLIER

    def reset(self) -> None:
        self.delay_ms = self.floor_ms

    def grow(self) -> int:
        """Apply one backoff step (truncating to whole milliseconds)."""
        self.delay_ms = min(int(self.delay_ms * self.multiplier), self.cap_ms)
        return self.delay_ms


def build_feed_url(config: FeedConfig) -> str:
    """Feed URL with credentials passed as query parameters."""
    query = urlencode(
        {
            "version": config.version,
            "token": config.access_token,
            "clientId": config.client_id,
            "authType": config.auth_type,
        }
    )
    return f"{config.url}?{query}"


def redact_url(url: str) -> str:
    return re.sub(r"(token=)[^&]*", r"\1***", url)


def websocket_connector(config: FeedConfig) -> Connector:
    """Connector that opens a real websocket with the configured limits."""

    async def connect(url: str) -> Transport:
        return await websockets.connect(
            url,
            open_timeout=config.open_timeout_seconds,
            ping_interval=config.ping_interval_seconds,
            max_size=config.max_frame_bytes,
            compression=None,
        )

    return connect


class FeedClient:
    """
    Connection lifecycle for the live market feed.

    Usage:
        client = FeedClient(config.feed, instruments)
        await client.start()   # connect, subscribe on open, reconnect on close
        ...
        await client.stop()    # manual close, no reconnect

    Must be used from within a running event loop.
    """

    def __init__(
        self,
        config: FeedConfig,
        instruments: InstrumentTable,
        store: TickStore | None = None,
        broadcaster: Broadcaster | None = None,
        clock: MarketClock | None = None,
        connector: Connector | None = None,
    ) -> None:
        self.config = config
        self.instruments = instruments
        self.store = store if store is not None else TickStore()
        self.broadcaster = broadcaster if broadcaster is not None else Broadcaster(self.store)
        self.clock = clock if clock is not None else MarketClock()
        self.codec = TickCodec(config.batch_size)
        self._connector = connector or websocket_connector(config)

        self.state = ConnectionState.DISCONNECTED
        self.reconnect = ReconnectState(
            delay_ms=config.reconnect_floor_ms,
            floor_ms=config.reconnect_floor_ms,
            cap_ms=config.reconnect_cap_ms,
            multiplier=config.reconnect_multiplier,
        )

        self._transport: Transport | None = None
        self._transport_task: asyncio.Task | None = None
        self._reconnect_handle: asyncio.TimerHandle | None = None
        self._inbox: asyncio.Queue[FeedEvent] = asyncio.Queue()
        self._dispatcher_task: asyncio.Task | None = None
        self._generation = 0
        self._attempted = False

        self.stats: dict[str, Any] = {
            "frames_received": 0,
            "ticks_decoded": 0,
            "malformed_frames": 0,
            "text_messages": 0,
            "connection_count": 0,
            "reconnects_scheduled": 0,
            "last_message_time": None,
        }

    # --- Public API ---

    @property
    def has_pending_reconnect(self) -> bool:
        return self._reconnect_handle is not None

    def status(self) -> FeedStatus:
        """Externally reported status of the feed."""
        if self.state == ConnectionState.OPEN:
            return FeedStatus.OPEN
        if self.state == ConnectionState.CONNECTING:
            return FeedStatus.CONNECTING
        if not self._attempted:
            return FeedStatus.NOT_INITIALIZED
        return FeedStatus.CLOSED

    async def start(self) -> None:
        """Start the feed (see ``connect``)."""
        self.connect()

    def connect(self) -> None:
        """
        Open the feed connection.

        No-op while already connecting or open. Any pending reconnect timer is
        superseded.

        Raises:
            ConfigurationError: If client id or access token is missing.
        """
        if self.state in (ConnectionState.CONNECTING, ConnectionState.OPEN):
            logger.debug(f"connect() ignored, feed is {self.state.value}")
            return

        if not self.config.has_credentials:
            raise ConfigurationError("Feed client_id and access_token must be set")

        self._ensure_dispatcher()
        self._cancel_reconnect()

        self._generation += 1
        self._attempted = True
        self.state = ConnectionState.CONNECTING

        url = build_feed_url(self.config)
        logger.info(f"Connecting to {redact_url(url)}...")
        self._transport_task = asyncio.create_task(
            self._run_transport(self._generation, url), name="dhanfeed-transport"
        )

    async def stop(self) -> None:
        """
        Close the feed manually.

        Cancels any pending reconnect, detaches from the transport and never
        schedules a reconnect. Only ``connect()`` starts the lifecycle again.
        """
        self._cancel_reconnect()
        # Events still in flight from the old transport are now stale
        self._generation += 1

        transport, self._transport = self._transport, None
        task, self._transport_task = self._transport_task, None

        if transport is not None:
            self.state = ConnectionState.CLOSING

        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        if transport is not None:
            try:
                await transport.close()
            except Exception as e:
                logger.warning(f"Error closing feed transport: {e}")

        dispatcher, self._dispatcher_task = self._dispatcher_task, None
        if dispatcher is not None and not dispatcher.done():
            dispatcher.cancel()
            await asyncio.gather(dispatcher, return_exceptions=True)
        self._inbox = asyncio.Queue()

        self.state = ConnectionState.DISCONNECTED
        logger.info("Feed closed manually")

    # --- Transport ---

    async def _run_transport(self, generation: int, url: str) -> None:
        try:
            transport = await self._connector(url)
        except Exception as e:
            self._post(FeedEvent(FeedEventType.ERROR, generation, e))
            self._post(FeedEvent(FeedEventType.CLOSE, generation, (None, "connect failed")))
            return

        self._post(FeedEvent(FeedEventType.OPEN, generation, transport))
        try:
            async for frame in transport:
                self._post(FeedEvent(FeedEventType.MESSAGE, generation, frame))
        except Exception as e:
            # websockets raises ConnectionClosedError on abnormal closure
            self._post(FeedEvent(FeedEventType.ERROR, generation, e))
        finally:
            close_info = (
                getattr(transport, "close_code", None),
                getattr(transport, "close_reason", None),
            )
            self._post(FeedEvent(FeedEventType.CLOSE, generation, close_info))
            # The reader owns its socket; stop() may run before OPEN is handled
            try:
                await transport.close()
            except Exception as e:
                logger.debug(f"Error closing feed transport: {e}")

    def _post(self, event: FeedEvent) -> None:
        self._inbox.put_nowait(event)

    # --- Dispatcher ---

    def _ensure_dispatcher(self) -> None:
        if self._dispatcher_task is None or self._dispatcher_task.done():
            self._dispatcher_task = asyncio.create_task(
                self._dispatch(), name="dhanfeed-dispatcher"
            )

    async def _dispatch(self) -> None:
        while True:
            event = await self._inbox.get()
            try:
                await self._handle_event(event)
            except Exception as e:
                logger.error(f"Error handling feed {event.type.value} event: {e}", exc_info=True)
            finally:
                self._inbox.task_done()

    async def _handle_event(self, event: FeedEvent) -> None:
        if event.generation != self._generation:
            logger.debug(f"Ignoring stale {event.type.value} event (gen {event.generation})")
            return

        if event.type == FeedEventType.OPEN:
            await self._on_open(event.payload)
        elif event.type == FeedEventType.MESSAGE:
            self._on_message(event.payload)
        elif event.type == FeedEventType.ERROR:
            logger.error(f"Feed transport error: {event.payload}")
        elif event.type == FeedEventType.CLOSE:
            self._on_close(event.payload)
        elif event.type == FeedEventType.RECONNECT:
            self._on_reconnect_timer()

    async def _on_open(self, transport: Transport) -> None:
        self._transport = transport
        self.state = ConnectionState.OPEN
        self.reconnect.reset()
        self.stats["connection_count"] += 1
        logger.info("Connected to market feed")

        await self._subscribe()

    async def _subscribe(self) -> None:
        if not self.clock.is_active():
            minutes = self.clock.minutes_until_active()
            logger.info(f"Market closed - subscription skipped (opens in {minutes} min)")
            return

        if self._transport is None:
            logger.error("Feed not open for subscription")
            return

        messages = self.codec.encode_subscriptions(self.instruments.all())
        for message in messages:
            await self._transport.send(message)

        logger.info(
            f"Subscribed to {len(self.instruments)} instruments in {len(messages) - 1} batches"
        )
        logger.info("LTP mode enabled")

    def _on_message(self, frame: str | bytes) -> None:
        self.stats["frames_received"] += 1
        self.stats["last_message_time"] = time.time()

        if isinstance(frame, str):
            self.stats["text_messages"] += 1
            logger.info(f"Feed text message: {frame[:200]}")
            return

        try:
            record = self.codec.decode(frame, self.instruments.resolve_symbol)
        except MalformedFrame as e:
            self.stats["malformed_frames"] += 1
            logger.warning(f"Dropping frame: {e}")
            return

        self.store.upsert(record)
        self.broadcaster.publish(record)
        self.stats["ticks_decoded"] += 1
        logger.debug(f"[{record.message_type_label}] {record.symbol} -> {record.price}")

    def _on_close(self, close_info: tuple[Any, Any] | None) -> None:
        code, reason = close_info or (None, None)
        logger.warning(f"Feed closed (code={code}, reason={reason})")

        self._transport = None
        self._transport_task = None
        self.state = ConnectionState.DISCONNECTED
        self._schedule_reconnect()

    # --- Reconnect ---

    def _schedule_reconnect(self) -> None:
        self._cancel_reconnect()
        delay_ms = self.reconnect.delay_ms
        loop = asyncio.get_running_loop()
        self._reconnect_handle = loop.call_later(
            delay_ms / 1000,
            self._post,
            FeedEvent(FeedEventType.RECONNECT, self._generation),
        )
        self.stats["reconnects_scheduled"] += 1
        logger.info(f"Reconnecting in {delay_ms} ms")

    def _cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    def _on_reconnect_timer(self) -> None:
        self._reconnect_handle = None
        if self.state != ConnectionState.DISCONNECTED:
            return
        self.reconnect.grow()
        self.connect()
