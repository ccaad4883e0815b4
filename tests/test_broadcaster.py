"""Tests for tick fan-out."""

import asyncio
import json

import pytest

from dhanfeed.data.market_data import TickRecord
from dhanfeed.data.tick_store import TickStore
from dhanfeed.errors import SinkClosed
from dhanfeed.feed.broadcaster import Broadcaster, QueueSink


class ListSink:
    """Records everything sent; optionally fails after N messages."""

    def __init__(self, fail_after=None):
        self.messages = []
        self.closed = False
        self.fail_after = fail_after

    def send(self, message):
        if self.fail_after is not None and len(self.messages) >= self.fail_after:
            raise SinkClosed("gone")
        self.messages.append(json.loads(message))

    def close(self):
        self.closed = True


def tick(security_id=2885, price=2456.5):
    return TickRecord(
        security_id=security_id,
        symbol="RELIANCE.NS",
        price=price,
        epoch_seconds=1700000000,
        frame_kind=2,
    )


@pytest.fixture
def store():
    return TickStore()


@pytest.fixture
def broadcaster(store):
    return Broadcaster(store)


class TestBroadcaster:
    def test_initial_snapshot_before_ticks(self, store, broadcaster):
        store.upsert(tick(price=100.0))
        sink = ListSink()

        broadcaster.subscribe(sink)
        broadcaster.publish(tick(price=101.0))

        assert [m["type"] for m in sink.messages] == ["initial", "tick"]
        assert sink.messages[0]["data"][0]["price"] == 100.0
        assert sink.messages[1]["data"]["price"] == 101.0

    def test_initial_empty_store(self, broadcaster):
        sink = ListSink()
        broadcaster.subscribe(sink)
        assert sink.messages == [{"type": "initial", "data": []}]

    def test_publish_to_all(self, broadcaster):
        sinks = [ListSink() for _ in range(3)]
        for s in sinks:
            broadcaster.subscribe(s)

        assert broadcaster.publish(tick()) == 3
        assert all(len(s.messages) == 2 for s in sinks)

    def test_failing_sink_removed_others_still_served(self, broadcaster):
        good = ListSink()
        bad = ListSink(fail_after=1)
        broadcaster.subscribe(bad)
        broadcaster.subscribe(good)

        assert broadcaster.publish(tick()) == 1
        assert len(broadcaster) == 1
        assert bad.closed is True

        broadcaster.publish(tick(price=1.0))
        assert len(good.messages) == 3
        assert len(bad.messages) == 1

    def test_failed_initial_never_registered(self, broadcaster):
        bad = ListSink(fail_after=0)
        broadcaster.subscribe(bad)

        assert len(broadcaster) == 0
        assert bad.closed is True
        assert broadcaster.publish(tick()) == 0

    def test_unsubscribe_idempotent(self, broadcaster):
        sink = ListSink()
        sub_id = broadcaster.subscribe(sink)

        broadcaster.unsubscribe(sub_id)
        broadcaster.unsubscribe(sub_id)
        broadcaster.unsubscribe("sub-unknown")

        assert len(broadcaster) == 0
        broadcaster.publish(tick())
        assert len(sink.messages) == 1

    def test_subscription_ids_unique(self, broadcaster):
        ids = {broadcaster.subscribe(ListSink()) for _ in range(5)}
        assert len(ids) == 5

    def test_close_all(self, broadcaster):
        sinks = [ListSink() for _ in range(2)]
        for s in sinks:
            broadcaster.subscribe(s)

        broadcaster.close_all()

        assert len(broadcaster) == 0
        assert all(s.closed for s in sinks)


class TestQueueSink:
    @pytest.mark.asyncio
    async def test_send_and_get(self):
        sink = QueueSink(maxsize=4)
        sink.send("a")
        sink.send("b")
        assert await sink.get() == "a"
        assert await sink.get() == "b"

    @pytest.mark.asyncio
    async def test_full_queue_raises(self):
        sink = QueueSink(maxsize=1)
        sink.send("a")
        with pytest.raises(SinkClosed, match="full"):
            sink.send("b")

    @pytest.mark.asyncio
    async def test_close_wakes_pending_get(self):
        sink = QueueSink(maxsize=1)
        waiter = asyncio.create_task(sink.get())
        await asyncio.sleep(0)

        sink.close()

        assert await asyncio.wait_for(waiter, timeout=1.0) is None
        assert await sink.get() is None

    @pytest.mark.asyncio
    async def test_send_after_close_raises(self):
        sink = QueueSink()
        sink.close()
        with pytest.raises(SinkClosed):
            sink.send("a")

    @pytest.mark.asyncio
    async def test_slow_consumer_dropped(self):
        store = TickStore()
        broadcaster = Broadcaster(store)
        sink = QueueSink(maxsize=2)
        broadcaster.subscribe(sink)  # initial takes one slot

        broadcaster.publish(tick(price=1.0))
        broadcaster.publish(tick(price=2.0))

        assert len(broadcaster) == 0
        assert sink.closed is True
