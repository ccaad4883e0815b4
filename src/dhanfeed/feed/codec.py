"""Wire codec for the live market feed.

Outgoing requests are JSON text; incoming ticks are fixed-layout
little-endian binary frames::

    offset  size  field
    0       1     frame kind (0x02 LTP, 0x06 quote)
    1       2     frame length (unused)
    3       1     exchange segment code (unused)
    4       4     security id, uint32
    8       4     price, float32
    12      4     epoch seconds, uint32
"""

from __future__ import annotations

import json
import struct
from collections.abc import Callable, Sequence
from typing import Any

from dhanfeed.constants import (
    MAX_SUBSCRIPTION_BATCH,
    TICK_FRAME_FORMAT,
    TICK_FRAME_SIZE,
    FeedMode,
    RequestCode,
)
from dhanfeed.data.instruments import Instrument
from dhanfeed.data.market_data import TickRecord
from dhanfeed.errors import MalformedFrame

_TICK_STRUCT = struct.Struct(TICK_FRAME_FORMAT)


def _default_symbol(security_id: int) -> str:
    return str(security_id)


class TickCodec:
    """Encodes subscription requests and decodes binary tick frames."""

    def __init__(self, batch_size: int = MAX_SUBSCRIPTION_BATCH) -> None:
        if not 1 <= batch_size <= MAX_SUBSCRIPTION_BATCH:
            raise ValueError(f"batch_size must be 1-{MAX_SUBSCRIPTION_BATCH}, got: {batch_size}")
        self.batch_size = batch_size

    # --- Encoding ---

    def subscription_payloads(self, instruments: Sequence[Instrument]) -> list[dict[str, Any]]:
        """
        Build subscribe requests in batches, followed by one LTP mode-set request.

        Batches are consecutive slices of ``instruments`` in their original order.
        """
        payloads: list[dict[str, Any]] = []

        for start in range(0, len(instruments), self.batch_size):
            chunk = instruments[start : start + self.batch_size]
            payloads.append(
                {
                    "RequestCode": int(RequestCode.SUBSCRIBE),
                    "InstrumentCount": len(chunk),
                    "InstrumentList": [
                        {
                            "ExchangeSegment": inst.exchange_segment.value,
                            "SecurityId": inst.security_id,
                        }
                        for inst in chunk
                    ],
                }
            )

        payloads.append({"RequestCode": int(RequestCode.SET_MODE), "Mode": int(FeedMode.LTP)})
        return payloads

    def encode_subscriptions(self, instruments: Sequence[Instrument]) -> list[str]:
        """Subscription requests serialized as JSON text messages."""
        return [json.dumps(payload) for payload in self.subscription_payloads(instruments)]

    # --- Decoding ---

    def decode(
        self,
        frame: bytes | bytearray | memoryview,
        resolve_symbol: Callable[[int], str] | None = None,
    ) -> TickRecord:
        """
        Decode one binary tick frame.

        Args:
            frame: Raw frame bytes. Anything beyond the first 16 bytes is ignored.
            resolve_symbol: Maps a security id to a symbol.

        Raises:
            MalformedFrame: If the frame is shorter than 16 bytes.
        """
        if len(frame) < TICK_FRAME_SIZE:
            raise MalformedFrame(
                f"Frame too short: {len(frame)} bytes (need {TICK_FRAME_SIZE})"
            )

        kind, _length, _segment, security_id, price, epoch_seconds = _TICK_STRUCT.unpack_from(
            frame, 0
        )
        resolve = resolve_symbol or _default_symbol

        return TickRecord(
            security_id=security_id,
            symbol=resolve(security_id),
            price=price,
            epoch_seconds=epoch_seconds,
            frame_kind=kind,
        )
