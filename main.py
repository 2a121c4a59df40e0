#!/usr/bin/env python3
"""
Strategy Orchestrator - Main Entry Point
========================================

Runs the multi-account strategy orchestrator.

This entry point:
1. Loads and validates configuration
2. Builds the venue (paper venue in paper mode)
3. Initializes the engine (state restore, account binding)
4. Starts strategies and the execution scheduler
5. Handles graceful shutdown on SIGINT/SIGTERM
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from typing import Any

from core.config import EngineConfig, load_config
from core.engine import OrchestrationEngine
from core.logger import setup_logging
from core.market import MarketSnapshot
from core.venue import PaperVenue, VenueFailure


logger = logging.getLogger(__name__)


class Orchestrator:
    """Process-level wrapper around the engine: config, venue, lifecycle."""

    def __init__(self, config_path: str = "config.yaml", log_overrides: dict[str, Any] | None = None):
        self._config_path = config_path
        self._log_overrides = log_overrides
        self._config: EngineConfig | None = None
        self._engine: OrchestrationEngine | None = None

    @property
    def engine(self) -> OrchestrationEngine | None:
        return self._engine

    def build_venue(self, config: EngineConfig) -> PaperVenue:
        """Only the paper venue ships with the orchestrator; live clients are injected."""
        if config.mode != "paper":
            raise ValueError(
                f"Mode '{config.mode}' needs an external venue client; only paper mode runs standalone"
            )

        paper = config.paper_venue
        markets = []
        for record in paper.markets:
            try:
                markets.append(MarketSnapshot.from_dict(record))
            except ValueError as e:
                logger.warning(f"Skipping configured paper market: {e}")

        venue = PaperVenue(markets=markets, seed=paper.seed, latency_seconds=paper.latency_seconds)
        for record in paper.recurring_markets:
            venue.add_recurring_market(record["id"], record.get("title", ""))
        for scenario, probability in paper.failure_rates.items():
            venue.enable_failure(VenueFailure(scenario), probability)
        return venue

    def configure_logging(self, config: EngineConfig) -> None:
        """Apply the logging section; command-line values win over the file."""
        overrides = self._log_overrides or {}
        setup_logging(
            log_dir=overrides.get("log_dir") or config.logging.log_dir,
            level=overrides.get("level") or config.logging.level,
            use_json=bool(overrides.get("use_json")) or config.logging.json,
        )

    async def initialize(self) -> None:
        self._config = load_config(self._config_path)
        if self._log_overrides is not None:
            self.configure_logging(self._config)

        logger.info("=" * 60)
        logger.info("STRATEGY ORCHESTRATOR - INITIALIZING")
        logger.info("=" * 60)

        venue = self.build_venue(self._config)
        self._engine = OrchestrationEngine(self._config, venue)
        await self._engine.initialize()

    async def run(self) -> None:
        """Start the engine and block until shutdown is requested."""
        assert self._engine is not None
        await self._engine.start()

        logger.info("=" * 60)
        logger.info("STRATEGY ORCHESTRATOR STARTED")
        logger.info(f"  Mode: {self._engine.config.mode.upper()}")
        logger.info(f"  Accounts: {len(self._engine.registry)}")
        logger.info(f"  Tick interval: {self._engine.scheduler.config.interval_seconds}s")
        logger.info("=" * 60)

        try:
            await self._engine.wait_for_shutdown()
        except asyncio.CancelledError:
            pass

    async def stop(self) -> None:
        if self._engine is None:
            return
        logger.info("=" * 60)
        logger.info("STRATEGY ORCHESTRATOR - STOPPING")
        logger.info("=" * 60)
        await self._engine.stop()

    def request_shutdown(self) -> None:
        if self._engine is not None:
            self._engine.request_shutdown()

    def get_status(self) -> dict[str, Any]:
        if self._engine is None:
            return {"initialized": False}
        return self._engine.get_status()


def setup_signal_handlers(orchestrator: Orchestrator) -> None:
    """Set up signal handlers for graceful shutdown."""
    def handle_signal(sig, frame):
        logger.info(f"Received signal {sig}")
        orchestrator.request_shutdown()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Multi-account strategy orchestrator")
    parser.add_argument("--config", default="config.yaml", help="Path to the YAML configuration")
    parser.add_argument("--log-dir", help="Overrides logging.log_dir")
    parser.add_argument("--log-level", help="Overrides logging.level")
    parser.add_argument("--json-logs", action="store_true", help="Structured JSON log lines")
    return parser.parse_args()


async def main():
    """Main entry point."""
    args = parse_args()

    print()
    print("=" * 60)
    print("     STRATEGY ORCHESTRATOR - Multi-Account Engine")
    print("=" * 60)
    print()

    orchestrator = Orchestrator(args.config, log_overrides={
        "log_dir": args.log_dir,
        "level": args.log_level,
        "use_json": args.json_logs,
    })
    setup_signal_handlers(orchestrator)

    try:
        await orchestrator.initialize()
        await orchestrator.run()

    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
    finally:
        await orchestrator.stop()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
