"""Market data structures and types."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from dhanfeed.constants import FrameKind


def message_type_label(kind: int) -> str:
    """Human-readable label for a frame kind."""
    if kind == FrameKind.LTP:
        return "LTP"
    if kind == FrameKind.QUOTE:
        return "QUOTE"
    return f"TYPE_{kind}"


@dataclass(frozen=True)
class TickRecord:
    """Latest traded price for one instrument, as decoded from a feed frame."""

    security_id: int
    symbol: str
    price: float
    epoch_seconds: int
    frame_kind: int

    @property
    def message_type_label(self) -> str:
        return message_type_label(self.frame_kind)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the outward stream shape."""
        return {
            "securityId": self.security_id,
            "symbol": self.symbol,
            "price": self.price,
            "timestamp": self.epoch_seconds,
            "messageType": self.frame_kind,
            "messageTypeLabel": self.message_type_label,
        }
