"""Market clock deciding whether the feed should be subscribed."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from dhanfeed.config_loader import SessionConfig

logger = logging.getLogger(__name__)

MINUTES_PER_DAY = 24 * 60


class MarketClock:
    """
    Answers whether the exchange session is active.

    Minutes since midnight are computed from UTC plus a fixed offset
    (330 minutes for IST by default) and checked against [open, close],
    inclusive at both ends. There is no holiday calendar, no weekday check
    and no DST handling, so this is not an exchange-calendar answer.
    """

    def __init__(self, config: SessionConfig | None = None) -> None:
        """
        Initialize the market clock.

        Args:
            config: Session configuration (defaults to NSE hours in IST).
        """
        self.config = config or SessionConfig()
        self.utc_offset_minutes = self.config.utc_offset_minutes
        self.open_minute = self._parse_minutes(self.config.market_open)
        self.close_minute = self._parse_minutes(self.config.market_close)

    def _parse_minutes(self, time_str: str) -> int:
        """Parse H:M string to minutes since midnight."""
        hour, minute = map(int, time_str.split(":"))
        return hour * 60 + minute

    def minutes_of_day(self, now: datetime | None = None) -> int:
        """Minutes since local midnight at the configured offset."""
        if now is None:
            now = datetime.now(timezone.utc)
        elif now.tzinfo is None:
            # Naive datetimes are taken as UTC
            now = now.replace(tzinfo=timezone.utc)

        utc = now.astimezone(timezone.utc)
        return (utc.hour * 60 + utc.minute + self.utc_offset_minutes) % MINUTES_PER_DAY

    def is_active(self, now: datetime | None = None) -> bool:
        """Check if ``now`` (default: current time) falls within [open, close]."""
        minutes = self.minutes_of_day(now)
        return self.open_minute <= minutes <= self.close_minute

    def minutes_until_active(self, now: datetime | None = None) -> int:
        """Minutes until the next open, 0 while active."""
        minutes = self.minutes_of_day(now)
        if self.open_minute <= minutes <= self.close_minute:
            return 0
        return (self.open_minute - minutes) % MINUTES_PER_DAY
