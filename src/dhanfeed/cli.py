"""dhanfeed CLI."""

import asyncio
import logging
import sys

import click

from dhanfeed.app import FeedApp
from dhanfeed.constants import LogLevel


@click.group()
def cli():
    """dhanfeed Command Line Interface."""
    pass


@cli.command()
@click.option(
    "--config",
    type=click.Path(exists=True),
    default="config/config.yaml",
    help="Path to configuration file",
)
@click.option("--no-server", is_flag=True, help="Run the feed without the HTTP surface")
@click.option(
    "--log-level",
    type=click.Choice([level.value for level in LogLevel], case_sensitive=False),
    help="Override log level",
)
def run(config, no_server, log_level):
    """Start the live market feed."""
    try:
        app = FeedApp(
            config_path=config,
            log_level=log_level,
            server_enabled=False if no_server else None,
        )
        asyncio.run(app.run())
    except KeyboardInterrupt:
        pass
    except Exception as e:
        click.echo(f"Fatal error: {e}", err=True)
        import traceback

        traceback.print_exc()
        sys.exit(1)


@cli.command()
@click.option(
    "--config",
    type=click.Path(exists=True),
    default="config/config.yaml",
    help="Path to configuration file",
)
def smoke_test(config):
    """Run a smoke test (initialize components and exit)."""
    try:
        app = FeedApp(config_path=config)
        asyncio.run(app.initialize())
        click.echo(
            f"Smoke test passed: {len(app.instruments)} instruments, "
            f"feed status {app.client.status().value}."
        )
    except Exception as e:
        click.echo(f"Smoke test failed: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.option(
    "--csv",
    "csv_path",
    type=click.Path(exists=True),
    required=True,
    help="Path to the scrip-master CSV",
)
@click.option(
    "--symbols",
    help="Comma-separated symbols to look up (default: every NSE equity in the CSV)",
)
@click.option(
    "--output",
    type=click.Path(),
    default="config/instruments.yaml",
    help="Where to write the instruments block",
)
@click.option("--suffix", default=".NS", help="Suffix appended to each symbol")
def enrich_instruments(csv_path, symbols, output, suffix):
    """Resolve symbols to security ids and write an instruments config block."""
    from dhanfeed.data.instruments import dump_instruments_yaml, load_instruments_csv

    logging.basicConfig(level=logging.INFO, format="%(message)s")

    wanted = None
    if symbols:
        wanted = [s.strip() for s in symbols.split(",") if s.strip()]

    try:
        instruments, missing = load_instruments_csv(csv_path, symbols=wanted, suffix=suffix)
    except Exception as e:
        click.echo(f"Enrichment failed: {e}", err=True)
        sys.exit(1)

    out = dump_instruments_yaml(instruments, output)
    click.echo(f"Wrote {len(instruments)} instruments to {out}")
    if missing:
        click.echo(f"Missing ({len(missing)}): {', '.join(missing)}", err=True)


if __name__ == "__main__":
    cli()

# Alias for __main__.py
main = cli
