#!/usr/bin/env python3
"""
Expiry Sniper - buys winning outcomes near resolution and settles them on-chain.

USAGE:
    python -m expiry_sniper              # run until SIGINT/SIGTERM
    python -m expiry_sniper --once       # one discovery refresh + one tick
    python -m expiry_sniper --dry-run    # log orders and transactions, send nothing

REQUIRES (.env):
    RPC_URL_WSS, PRIVATE_KEY, POLYMARKET_API_KEY, POLYMARKET_SECRET, POLYMARKET_PASSPHRASE
"""
import argparse
import asyncio
import logging
import signal
import sys

from .chain import ChainClient
from .config import SniperConfig
from .discovery import GammaDiscovery
from .errors import ConfigError
from .execution import ExecutionEngine
from .heads import HeadStream
from .journal import EventJournal
from .pipeline import Pipeline
from .registry import MarketRegistry
from .settlement import SettlementEngine
from .venue import ClobVenue
from .winner import build_winner_strategy

log = logging.getLogger("expiry_sniper")


def setup_logging(level: str = "INFO"):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-5s %(name)s | %(message)s",
        datefmt="%H:%M:%S",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("web3").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def build_pipeline(config: SniperConfig, chain: ChainClient, journal: EventJournal) -> Pipeline:
    """Wire every component around one shared registry."""
    registry = MarketRegistry()
    venue = ClobVenue(config)
    winner = build_winner_strategy(config, chain=chain, venue=venue)
    heads = HeadStream(config.rpc_url_wss) if config.rpc_url_wss else None
    return Pipeline(
        config,
        registry,
        discovery=GammaDiscovery(config, registry, journal=journal),
        execution=ExecutionEngine(config, venue, winner, journal=journal),
        settlement=SettlementEngine(config, chain, journal=journal),
        heads=heads,
        journal=journal,
    )


async def run(config: SniperConfig, once: bool = False) -> int:
    journal = EventJournal(config.event_dir)
    chain = ChainClient(config)
    if not chain.initialize():
        journal.close()
        return 1

    pipeline = build_pipeline(config, chain, journal)
    journal.record("startup", dry_run=config.dry_run, config=str(config))

    try:
        if once:
            pipeline.execution.start()
            report = await pipeline.run_once()
            if report is not None:
                log.info(f"Tick: {report.markets} markets, {report.orders} orders, {report.errors} errors")
                for question_id, state in report.states.items():
                    log.info(f"  {question_id[:18]}... {state}")
            return 0 if report is not None and report.errors == 0 else 1

        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, _request_stop, sig, stop_event)

        await pipeline.run(stop_event)
        return 0
    finally:
        await pipeline.discovery.close()
        journal.record("shutdown")
        journal.close()


def _request_stop(sig, stop_event: asyncio.Event):
    log.info(f"Received signal {sig.name}, shutting down...")
    stop_event.set()


def _exit_on_config_errors(error: ConfigError):
    log.error("Configuration errors:")
    for err in error.errors:
        log.error(f"  - {err}")
    sys.exit(1)


def main(argv=None):
    parser = argparse.ArgumentParser(description="Polymarket expiry sniper and settlement agent")
    parser.add_argument("--once", action="store_true", help="Run one discovery refresh and one tick, then exit")
    parser.add_argument("--dry-run", action="store_true", help="Log orders and transactions without sending them")
    args = parser.parse_args(argv)

    try:
        config = SniperConfig()
    except ConfigError as e:
        setup_logging()
        _exit_on_config_errors(e)
    if args.dry_run:
        config.dry_run = True
    setup_logging(config.log_level)

    log.info("=" * 60)
    log.info("Expiry Sniper starting...")
    log.info(f"  {config}")
    log.info("=" * 60)

    try:
        config.require_valid()
    except ConfigError as e:
        _exit_on_config_errors(e)

    try:
        code = asyncio.run(run(config, once=args.once))
    except KeyboardInterrupt:
        log.info("Interrupted by user")
        code = 0
    sys.exit(code)


if __name__ == "__main__":
    main()
