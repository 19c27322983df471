"""Scheduled job that re-derives the active-prediction cache from the ledger."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

from loguru import logger

from app.core.config import Settings, get_settings
from app.db import init_db
from app.services.cache_store import CacheStore
from app.services.notifications import build_notifier
from app.services.reconciliation import ReconciliationEngine, ResyncSummary
from ledger import LedgerClient


class ResyncPipeline:
    """Run full resyncs once or on a fixed interval."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        ledger: LedgerClient | None = None,
        cache: CacheStore | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._ledger = ledger or LedgerClient(settings=self.settings)
        self.engine = ReconciliationEngine(
            self._ledger,
            cache or CacheStore(),
            settings=self.settings,
            notifier=build_notifier(self.settings),
        )

    async def run_once(self) -> ResyncSummary:
        return await self.engine.resync_active_predictions()

    async def run_forever(self, interval: float | None = None, stop_event: asyncio.Event | None = None) -> int:
        interval = interval or self.settings.resync_interval_seconds
        logger.info("Starting periodic resync every {}s", interval)
        return await self.engine.run_periodic_resync(interval, stop_event)

    async def close(self) -> None:
        await self._ledger.aclose()


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Resync cached predictions and stakes from the ledger",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single resync and exit instead of looping on the configured interval",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Override RESYNC_INTERVAL_SECONDS for the periodic loop",
    )
    parser.add_argument(
        "--summary-path",
        type=Path,
        default=None,
        help="Optional path where a JSON summary of a single run will be written",
    )
    return parser.parse_args(argv)


def _configure_logging(settings: Settings) -> None:
    logger.remove()
    logger.add(sys.stderr, level=settings.log_level.upper())


def _write_summary(summary: ResyncSummary, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(summary.to_dict(), default=str, indent=2))
    logger.info("Resync summary written to {}", path)


async def _run(args: argparse.Namespace, settings: Settings) -> ResyncSummary | None:
    init_db()
    pipeline = ResyncPipeline(settings)
    try:
        if args.once:
            summary = await pipeline.run_once()
            if args.summary_path:
                _write_summary(summary, args.summary_path)
            return summary
        await pipeline.run_forever(args.interval)
        return None
    finally:
        await pipeline.close()


def main(argv: list[str] | None = None) -> ResyncSummary | None:
    args = _parse_args(argv)
    settings = get_settings()
    _configure_logging(settings)
    try:
        return asyncio.run(_run(args, settings))
    except KeyboardInterrupt:
        logger.info("Resync loop interrupted")
        return None


if __name__ == "__main__":
    main()
