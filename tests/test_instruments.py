"""Tests for the instrument table and scrip-master enrichment."""

from pathlib import Path

import pytest
import yaml

from dhanfeed.config_loader import InstrumentEntry
from dhanfeed.constants import ExchangeSegment
from dhanfeed.data.instruments import (
    Instrument,
    InstrumentTable,
    dump_instruments_yaml,
    load_instruments_csv,
    normalize_security_id,
    parse_segment,
)
from dhanfeed.errors import ConfigurationError

SCRIP_MASTER = """EXCH_ID,SEGMENT,SECURITY_ID,SYMBOL_NAME,INSTRUMENT_TYPE
NSE,EQ,2885,RELIANCE,EQ
NSE,EQ,11536,TCS,EQ
BSE,EQ,500325,RELIANCE,EQ
NSE,D,35001,RELIANCE,FUTSTK
NSE,EQ,1333,HDFCBANK,EQ
NSE,EQ,9999,RELIANCE,EQ
"""


@pytest.fixture
def table():
    return InstrumentTable(
        [
            Instrument("RELIANCE.NS", ExchangeSegment.EQUITY, "2885"),
            {"symbol": "TCS.NS", "exchange_segment": "NSE_EQ", "security_id": "11536"},
            InstrumentEntry(symbol="NIFTY24JANFUT", exchange_segment="NSE_FNO", security_id="35001"),
        ]
    )


@pytest.fixture
def scrip_csv(tmp_path: Path) -> Path:
    path = tmp_path / "api-scrip-master.csv"
    path.write_text(SCRIP_MASTER)
    return path


class TestInstrumentTable:
    def test_resolve_known_symbol(self, table):
        assert table.resolve_symbol(2885) == "RELIANCE.NS"
        assert table.resolve_symbol("11536") == "TCS.NS"

    def test_resolve_unknown_symbol_placeholder(self, table):
        assert table.resolve_symbol(424242) == "securityId:424242"

    def test_order_preserved(self, table):
        assert [i.symbol for i in table.all()] == ["RELIANCE.NS", "TCS.NS", "NIFTY24JANFUT"]
        assert len(table) == 3

    def test_accepts_config_entries(self, table):
        inst = table.get(35001)
        assert inst is not None
        assert inst.exchange_segment == ExchangeSegment.DERIVATIVE

    def test_contains(self, table):
        assert 2885 in table
        assert "02885" in table
        assert 1 not in table

    def test_missing_security_id_rejected(self):
        with pytest.raises(ConfigurationError, match="security_id"):
            InstrumentTable([{"symbol": "X", "exchange_segment": "NSE_EQ", "security_id": ""}])

    def test_missing_segment_rejected(self):
        with pytest.raises(ConfigurationError, match="exchange_segment"):
            InstrumentTable([{"symbol": "X", "security_id": "1"}])

    def test_unknown_segment_rejected(self):
        with pytest.raises(ConfigurationError, match="Unknown exchange segment"):
            InstrumentTable([{"symbol": "X", "exchange_segment": "MCX_COMM", "security_id": "1"}])

    def test_duplicate_id_later_wins(self):
        table = InstrumentTable(
            [
                {"symbol": "OLD", "exchange_segment": "NSE_EQ", "security_id": "7"},
                {"symbol": "NEW", "exchange_segment": "NSE_EQ", "security_id": "7"},
            ]
        )
        assert table.resolve_symbol(7) == "NEW"
        assert len(table) == 2

    def test_empty_table(self):
        table = InstrumentTable([])
        assert len(table) == 0
        assert table.resolve_symbol(1) == "securityId:1"


class TestHelpers:
    def test_normalize_security_id(self):
        assert normalize_security_id("02885") == "2885"
        assert normalize_security_id(2885) == "2885"
        assert normalize_security_id(" ABC ") == "ABC"

    def test_parse_segment_by_value_or_name(self):
        assert parse_segment("NSE_EQ") == ExchangeSegment.EQUITY
        assert parse_segment("derivative") == ExchangeSegment.DERIVATIVE
        assert parse_segment(ExchangeSegment.EQUITY) == ExchangeSegment.EQUITY


class TestScripMasterCsv:
    def test_filters_nse_equity(self, scrip_csv):
        instruments, missing = load_instruments_csv(scrip_csv, symbols=["RELIANCE.NS", "TCS"])

        assert missing == []
        assert [(i.symbol, i.security_id) for i in instruments] == [
            ("RELIANCE.NS", "2885"),
            ("TCS.NS", "11536"),
        ]
        assert all(i.exchange_segment == ExchangeSegment.EQUITY for i in instruments)

    def test_first_row_wins(self, scrip_csv):
        instruments, _ = load_instruments_csv(scrip_csv, symbols=["RELIANCE"])
        assert instruments[0].security_id == "2885"

    def test_missing_symbols_reported(self, scrip_csv):
        instruments, missing = load_instruments_csv(scrip_csv, symbols=["INFY.NS", "TCS.NS"])
        assert [i.symbol for i in instruments] == ["TCS.NS"]
        assert missing == ["INFY"]

    def test_all_rows_when_no_symbols(self, scrip_csv):
        instruments, missing = load_instruments_csv(scrip_csv)
        assert [i.symbol for i in instruments] == ["RELIANCE.NS", "TCS.NS", "HDFCBANK.NS"]
        assert missing == []

    def test_missing_columns(self, tmp_path):
        path = tmp_path / "bad.csv"
        path.write_text("EXCH_ID,SEGMENT\nNSE,EQ\n")
        with pytest.raises(ConfigurationError, match="Required columns"):
            load_instruments_csv(path)

    def test_file_not_found(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_instruments_csv(tmp_path / "nope.csv")

    def test_dump_yaml_round_trips_through_table(self, scrip_csv, tmp_path):
        instruments, _ = load_instruments_csv(scrip_csv, symbols=["TCS"])
        out = dump_instruments_yaml(instruments, tmp_path / "out" / "instruments.yaml")

        data = yaml.safe_load(out.read_text())
        assert data == {
            "instruments": {
                "items": [
                    {"symbol": "TCS.NS", "exchange_segment": "NSE_EQ", "security_id": "11536"}
                ]
            }
        }
        table = InstrumentTable(data["instruments"]["items"])
        assert table.resolve_symbol(11536) == "TCS.NS"
