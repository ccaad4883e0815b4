"""dhanfeed main application."""

from __future__ import annotations

import asyncio
import logging
import signal
from pathlib import Path

from dhanfeed.config_loader import AppConfig, load_config_with_overrides
from dhanfeed.constants import LOG_FORMAT, LOG_FORMAT_JSON
from dhanfeed.data.instruments import InstrumentTable, load_instruments_csv
from dhanfeed.data.tick_store import TickStore
from dhanfeed.feed.broadcaster import Broadcaster
from dhanfeed.feed.client import FeedClient
from dhanfeed.server.stream_server import StreamServer
from dhanfeed.time.market_clock import MarketClock

logger = logging.getLogger(__name__)


def setup_logging(config: AppConfig) -> None:
    log_format = LOG_FORMAT_JSON if config.environment.json_logs else LOG_FORMAT
    logging.basicConfig(level=config.environment.log_level.value, format=log_format)


def build_instrument_table(config: AppConfig) -> InstrumentTable:
    """Inline instruments first, then any resolved from the scrip-master CSV."""
    records: list = list(config.instruments.items)

    if config.instruments.csv_path:
        symbols = config.instruments.symbols or None
        found, missing = load_instruments_csv(
            config.instruments.csv_path, symbols=symbols, suffix=config.instruments.suffix
        )
        if missing:
            logger.warning(f"{len(missing)} symbols missing from CSV: {missing[:10]}")
        records.extend(found)

    table = InstrumentTable(records)
    logger.info(f"Loaded {len(table)} instruments")
    return table


class FeedApp:
    """Main application orchestrator."""

    def __init__(
        self,
        config_path: str = "config/config.yaml",
        log_level: str | None = None,
        server_enabled: bool | None = None,
        port: int | None = None,
    ):
        self.config_path = Path(config_path)
        self.config: AppConfig | None = None
        self._log_level_override = log_level
        self._server_override = server_enabled
        self._port_override = port

        # Components
        self.instruments: InstrumentTable | None = None
        self.clock: MarketClock | None = None
        self.store: TickStore | None = None
        self.broadcaster: Broadcaster | None = None
        self.client: FeedClient | None = None
        self.server: StreamServer | None = None

        self._shutdown_event = asyncio.Event()

    async def initialize(self) -> None:
        """Load config and initialize components."""
        # 1. Load Config
        self.config = load_config_with_overrides(
            self.config_path.absolute(),
            log_level=self._log_level_override,
            server_enabled=self._server_override,
            port=self._port_override,
        )
        setup_logging(self.config)
        logger.info("Initializing dhanfeed...")

        # 2. Components
        self.instruments = build_instrument_table(self.config)
        self.clock = MarketClock(self.config.session)
        self.store = TickStore()
        self.broadcaster = Broadcaster(self.store)
        self.client = FeedClient(
            self.config.feed,
            self.instruments,
            store=self.store,
            broadcaster=self.broadcaster,
            clock=self.clock,
        )

        if self.config.server_enabled:
            self.server = StreamServer(self.config.server, self.client)

        logger.info(
            f"Market {'open' if self.clock.is_active() else 'closed'} "
            f"({self.config.session.market_open}-{self.config.session.market_close})"
        )

    async def run(self) -> None:
        """Run until SIGINT/SIGTERM."""
        if not self.config:
            await self.initialize()

        loop = asyncio.get_running_loop()
        try:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, self._handle_signal)
        except NotImplementedError:
            logger.warning("Signal handlers not supported in this environment. Use Ctrl+C to stop.")

        try:
            if self.server:
                await self.server.start()

            if self.config.feed.auto_start:
                # Missing credentials raise here, before anything is retried
                await self.client.start()
            else:
                logger.info("Feed auto_start disabled; waiting for /api/start-feed")

            await self._shutdown_event.wait()
        finally:
            logger.info("Shutting down...")
            await self.client.stop()
            if self.server:
                await self.server.stop()
            logger.info("Shutdown complete.")

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    def _handle_signal(self) -> None:
        logger.info("Signal received, initiating shutdown...")
        self.request_shutdown()
