"""Exceptions raised by dhanfeed."""


class DhanFeedError(Exception):
    """Base class for dhanfeed errors."""


class ConfigurationError(DhanFeedError):
    """Invalid or missing configuration. Fatal, never retried."""


class MalformedFrame(DhanFeedError):
    """A binary frame could not be decoded. The frame is dropped."""


class SinkClosed(DhanFeedError):
    """A subscriber sink can no longer accept messages."""
