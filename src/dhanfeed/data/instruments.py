"""Instrument universe: subscription identifiers and symbol lookup.

Instruments come from config (inline ``instruments.items``) or from the
broker's scrip-master CSV, which ``load_instruments_csv`` maps onto a list
of trading symbols.
"""

from __future__ import annotations

import csv
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from dhanfeed.constants import SYMBOL_PLACEHOLDER_PREFIX, ExchangeSegment
from dhanfeed.errors import ConfigurationError

logger = logging.getLogger(__name__)

SCRIP_MASTER_COLUMNS = ("EXCH_ID", "SEGMENT", "SECURITY_ID", "SYMBOL_NAME", "INSTRUMENT_TYPE")


@dataclass(frozen=True)
class Instrument:
    """A tradable instrument as the feed knows it."""

    symbol: str
    exchange_segment: ExchangeSegment
    security_id: str

    def to_dict(self) -> dict[str, str]:
        return {
            "symbol": self.symbol,
            "exchange_segment": self.exchange_segment.value,
            "security_id": self.security_id,
        }


def normalize_security_id(security_id: Any) -> str:
    """Canonical text form of a security id ("02885" and 2885 both map to "2885")."""
    text = str(security_id).strip()
    if text.isdigit():
        return str(int(text))
    return text


def parse_segment(value: Any) -> ExchangeSegment:
    """Accept either the wire value (NSE_EQ) or the enum name (EQUITY)."""
    if isinstance(value, ExchangeSegment):
        return value
    text = str(value or "").strip()
    try:
        return ExchangeSegment(text)
    except ValueError:
        pass
    try:
        return ExchangeSegment[text.upper()]
    except KeyError:
        raise ConfigurationError(f"Unknown exchange segment: {text!r}") from None


def _field(raw: Any, name: str) -> Any:
    if isinstance(raw, Mapping):
        return raw.get(name)
    return getattr(raw, name, None)


def _to_instrument(raw: Instrument | Mapping[str, Any] | Any) -> Instrument:
    symbol = str(_field(raw, "symbol") or "").strip()
    segment = _field(raw, "exchange_segment")
    security_id = str(_field(raw, "security_id") or "").strip()

    if not security_id:
        raise ConfigurationError(f"Instrument {symbol!r} has no security_id")
    if not segment:
        raise ConfigurationError(f"Instrument {symbol!r} has no exchange_segment")

    return Instrument(
        symbol=symbol,
        exchange_segment=parse_segment(segment),
        security_id=security_id,
    )


class InstrumentTable:
    """
    Immutable instrument universe with O(1) reverse lookup.

    Raises ConfigurationError on construction if any record is missing its
    security id or exchange segment; nothing is subscribed in that case.
    """

    def __init__(self, instruments: Iterable[Instrument | Mapping[str, Any] | Any]) -> None:
        parsed: list[Instrument] = []
        invalid: list[str] = []

        for index, raw in enumerate(instruments):
            try:
                parsed.append(_to_instrument(raw))
            except ConfigurationError as e:
                invalid.append(f"#{index}: {e}")

        if invalid:
            logger.error(f"Invalid instruments: {invalid}")
            raise ConfigurationError(f"Invalid instrument mapping ({len(invalid)} bad): {invalid}")

        self._instruments: tuple[Instrument, ...] = tuple(parsed)
        self._by_id: dict[str, Instrument] = {}

        for inst in self._instruments:
            key = normalize_security_id(inst.security_id)
            if key in self._by_id:
                logger.warning(
                    f"Duplicate security_id {key}: {self._by_id[key].symbol} replaced by {inst.symbol}"
                )
            self._by_id[key] = inst

    def resolve_symbol(self, security_id: int | str) -> str:
        """Known symbol for the id, or ``securityId:<id>`` when unknown."""
        key = normalize_security_id(security_id)
        inst = self._by_id.get(key)
        if inst is None:
            return f"{SYMBOL_PLACEHOLDER_PREFIX}{key}"
        return inst.symbol

    def get(self, security_id: int | str) -> Instrument | None:
        return self._by_id.get(normalize_security_id(security_id))

    def all(self) -> tuple[Instrument, ...]:
        """All instruments in configuration order."""
        return self._instruments

    def __len__(self) -> int:
        return len(self._instruments)

    def __contains__(self, security_id: object) -> bool:
        return normalize_security_id(security_id) in self._by_id

    def __iter__(self):
        return iter(self._instruments)


# ============================================
# Scrip-master enrichment
# ============================================


def _normalize_symbol(symbol: str, suffix: str) -> str:
    text = symbol.strip().upper()
    if suffix and text.endswith(suffix.upper()):
        text = text[: -len(suffix)]
    return text


def load_instruments_csv(
    path: str | Path,
    symbols: Iterable[str] | None = None,
    suffix: str = ".NS",
) -> tuple[list[Instrument], list[str]]:
    """
    Map trading symbols to NSE equity instruments using the scrip-master CSV.

    Only rows with EXCH_ID=NSE, SEGMENT=EQ and INSTRUMENT_TYPE=EQ are used; the
    first row for a symbol wins.

    Args:
        path: Path to the scrip-master CSV.
        symbols: Symbols to look up (``RELIANCE`` or ``RELIANCE.NS``). When
            omitted, every matching row is returned in file order.
        suffix: Appended to the symbol of each returned instrument.

    Returns:
        Tuple of (instruments found, symbols not found).
    """
    file_path = Path(path)
    if not file_path.exists():
        raise FileNotFoundError(f"Instrument CSV not found: {path}")

    by_symbol: dict[str, str] = {}

    with open(file_path, newline="", encoding="utf-8-sig") as f:
        reader = csv.DictReader(f)
        fieldnames = [name.strip() for name in (reader.fieldnames or [])]
        missing_columns = [c for c in SCRIP_MASTER_COLUMNS if c not in fieldnames]
        if missing_columns:
            raise ConfigurationError(f"Required columns not found in CSV: {missing_columns}")
        reader.fieldnames = fieldnames

        for row in reader:
            exch_id = (row.get("EXCH_ID") or "").strip()
            segment = (row.get("SEGMENT") or "").strip()
            instrument_type = (row.get("INSTRUMENT_TYPE") or "").strip()
            security_id = (row.get("SECURITY_ID") or "").strip()
            symbol = (row.get("SYMBOL_NAME") or "").strip().upper()

            if exch_id != "NSE" or segment != "EQ" or instrument_type != "EQ":
                continue
            if not symbol or not security_id:
                continue
            by_symbol.setdefault(symbol, security_id)

    logger.info(f"Found {len(by_symbol)} NSE_EQ instruments in {file_path.name}")

    if symbols is None:
        wanted = list(by_symbol)
    else:
        wanted = [_normalize_symbol(s, suffix) for s in symbols if s.strip()]

    instruments: list[Instrument] = []
    missing: list[str] = []
    for symbol in wanted:
        security_id = by_symbol.get(symbol)
        if security_id is None:
            logger.warning(f"Could not find securityId for {symbol}")
            missing.append(symbol)
            continue
        instruments.append(
            Instrument(
                symbol=f"{symbol}{suffix}",
                exchange_segment=ExchangeSegment.EQUITY,
                security_id=security_id,
            )
        )

    logger.info(f"Enriched {len(instruments)} instruments, {len(missing)} missing")
    return instruments, missing


def dump_instruments_yaml(instruments: Iterable[Instrument], path: str | Path) -> Path:
    """Write instruments as an ``instruments.items`` config block."""
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    data = {"instruments": {"items": [inst.to_dict() for inst in instruments]}}
    with open(out, "w", encoding="utf-8") as f:
        yaml.safe_dump(data, f, sort_keys=False)
    return out
