"""Live feed: wire codec, connection lifecycle and tick fan-out."""

from dhanfeed.feed.broadcaster import Broadcaster, QueueSink, Sink
from dhanfeed.feed.client import FeedClient, ReconnectState, build_feed_url
from dhanfeed.feed.codec import TickCodec

__all__ = [
    "Broadcaster",
    "FeedClient",
    "QueueSink",
    "ReconnectState",
    "Sink",
    "TickCodec",
    "build_feed_url",
]
