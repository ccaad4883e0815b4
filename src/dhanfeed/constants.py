"""Core constants for dhanfeed."""

from enum import Enum, IntEnum


class ExchangeSegment(str, Enum):
    """Exchange segment an instrument trades on."""

    EQUITY = "NSE_EQ"
    DERIVATIVE = "NSE_FNO"


class FrameKind(IntEnum):
    """Known binary frame kinds (first byte of a tick frame)."""

    LTP = 0x02
    QUOTE = 0x06


class RequestCode(IntEnum):
    """Request codes understood by the feed."""

    SUBSCRIBE = 15
    SET_MODE = 16


class FeedMode(IntEnum):
    """Feed modes selectable with a mode-set request."""

    LTP = 1


class ConnectionState(str, Enum):
    """Lifecycle state of the feed transport."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"


class FeedStatus(str, Enum):
    """Externally reported feed status."""

    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"
    NOT_INITIALIZED = "not_initialized"


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


# ============================================
# Wire Protocol
# ============================================

TICK_FRAME_SIZE = 16
TICK_FRAME_FORMAT = "<BHBIfI"
MAX_SUBSCRIPTION_BATCH = 100
SYMBOL_PLACEHOLDER_PREFIX = "securityId:"

# ============================================
# Default Values
# ============================================

DEFAULT_FEED_URL = "wss://api-feed.dhan.co"
DEFAULT_FEED_VERSION = 2
DEFAULT_AUTH_TYPE = 2

DEFAULT_RECONNECT_FLOOR_MS = 5000
DEFAULT_RECONNECT_CAP_MS = 60000
DEFAULT_RECONNECT_MULTIPLIER = 1.5

DEFAULT_UTC_OFFSET_MINUTES = 330
DEFAULT_MARKET_OPEN = "09:15"
DEFAULT_MARKET_CLOSE = "15:30"

DEFAULT_HEARTBEAT_SECONDS = 30.0
DEFAULT_SUBSCRIBER_QUEUE_SIZE = 256

# ============================================
# Application Constants
# ============================================

APP_NAME = "dhanfeed"
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
LOG_FORMAT_JSON = '{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s"}'
