"""Fan-out of decoded ticks to live subscribers."""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from typing import Any, Protocol

from dhanfeed.data.market_data import TickRecord
from dhanfeed.data.tick_store import TickStore
from dhanfeed.errors import SinkClosed

logger = logging.getLogger(__name__)


class Sink(Protocol):
    """Anything that can take an encoded message without blocking."""

    def send(self, message: str) -> None: ...

    def close(self) -> None: ...


class QueueSink:
    """
    Bounded in-memory sink for one streaming consumer.

    ``send`` never waits: a full or closed queue raises SinkClosed, so a slow
    consumer is dropped by the broadcaster instead of stalling the feed.
    """

    def __init__(self, maxsize: int = 256) -> None:
        self._queue: asyncio.Queue[str | None] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, message: str) -> None:
        if self._closed:
            raise SinkClosed("Sink is closed")
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            raise SinkClosed(f"Sink queue full ({self._queue.maxsize} messages)") from None

    async def get(self) -> str | None:
        """Next message, or None once the sink has been closed."""
        if self._closed and self._queue.empty():
            return None
        return await self._queue.get()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        # Wake any pending get(); drop the oldest message if there is no room
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(None)


def encode_message(kind: str, data: Any) -> str:
    return json.dumps({"type": kind, "data": data})


class Broadcaster:
    """
    Delivers "initial" and "tick" messages to registered sinks.

    A sink that raises on delivery is removed and closed after the pass;
    the registry is never mutated while it is being iterated.
    """

    def __init__(self, store: TickStore) -> None:
        self.store = store
        self._sinks: dict[str, Sink] = {}
        self._ids = itertools.count(1)

    def subscribe(self, sink: Sink) -> str:
        """
        Register a sink after sending it the current store snapshot.

        Returns:
            Subscription id for ``unsubscribe``. If the initial delivery fails
            the sink is closed and never registered.
        """
        sub_id = f"sub-{next(self._ids)}"
        initial = encode_message("initial", [r.to_dict() for r in self.store.snapshot()])

        try:
            sink.send(initial)
        except Exception as e:
            logger.warning(f"Subscriber {sub_id} failed on initial snapshot: {e}")
            self._close_sink(sub_id, sink)
            return sub_id

        self._sinks[sub_id] = sink
        logger.debug(f"Subscriber {sub_id} registered ({len(self._sinks)} active)")
        return sub_id

    def unsubscribe(self, sub_id: str) -> None:
        """Remove a sink. Unknown or already removed ids are ignored."""
        if self._sinks.pop(sub_id, None) is not None:
            logger.debug(f"Subscriber {sub_id} removed ({len(self._sinks)} active)")

    def publish(self, record: TickRecord) -> int:
        """
        Send a tick to every registered sink.

        Returns:
            Number of sinks the tick was delivered to.
        """
        message = encode_message("tick", record.to_dict())
        failed: list[str] = []
        delivered = 0

        for sub_id in list(self._sinks):
            sink = self._sinks.get(sub_id)
            if sink is None:
                continue
            try:
                sink.send(message)
                delivered += 1
            except Exception as e:
                logger.warning(f"Dropping subscriber {sub_id}: {e}")
                failed.append(sub_id)

        for sub_id in failed:
            sink = self._sinks.pop(sub_id, None)
            if sink is not None:
                self._close_sink(sub_id, sink)

        return delivered

    def close_all(self) -> None:
        """Close and remove every sink."""
        sinks, self._sinks = self._sinks, {}
        for sub_id, sink in sinks.items():
            self._close_sink(sub_id, sink)
        if sinks:
            logger.info(f"Closed {len(sinks)} subscribers")

    def _close_sink(self, sub_id: str, sink: Sink) -> None:
        try:
            sink.close()
        except Exception as e:
            logger.debug(f"Error closing subscriber {sub_id}: {e}")

    def __len__(self) -> int:
        return len(self._sinks)
