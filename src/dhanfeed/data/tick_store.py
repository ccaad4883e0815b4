"""Latest-value cache of decoded ticks."""

from __future__ import annotations

from dhanfeed.data.market_data import TickRecord


class TickStore:
    """
    Holds one TickRecord per security id, last write wins.

    No history and no eviction; size is bounded by the instrument universe.
    Not thread-safe: mutate only from the feed dispatcher.
    """

    def __init__(self) -> None:
        self._records: dict[int, TickRecord] = {}

    def upsert(self, record: TickRecord) -> None:
        """Replace whatever is stored for this security id."""
        self._records[record.security_id] = record

    def get(self, security_id: int) -> TickRecord | None:
        return self._records.get(int(security_id))

    def snapshot(self) -> list[TickRecord]:
        """All current records, order unspecified."""
        return list(self._records.values())

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, security_id: object) -> bool:
        return security_id in self._records
