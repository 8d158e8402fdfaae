#!/usr/bin/env python3
"""CLI script to run one sync coordinator tick against every onboarded store."""

import asyncio
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import structlog

from commerce_sync.config import get_settings
from commerce_sync.infrastructure.database.connection import dispose_engine, get_engine, get_session_factory
from commerce_sync.infrastructure.locks import build_run_lock
from commerce_sync.logging import configure_logging
from commerce_sync.services.coordinator import SyncCoordinator
from commerce_sync.services.rate_limit import RateLimiter

logger = structlog.get_logger()


async def main() -> int:
    """Main sync function."""
    configure_logging()
    settings = get_settings()

    coordinator = SyncCoordinator(
        get_session_factory(),
        lock=build_run_lock(settings, get_engine()),
        lock_key=settings.sync_lock_key,
        limiter=RateLimiter(settings.upstream_requests_per_second, burst=settings.upstream_burst),
        settings=settings,
    )
    try:
        report = await coordinator.run_once()
    finally:
        await dispose_engine()

    if report.skipped:
        logger.info("Another instance holds the sync lock, nothing to do")
        return 0

    for store in report.stores:
        logger.info(
            "Store result",
            shop_domain=store.shop_domain,
            ok=store.ok,
            error=store.error,
            results=[r.to_dict() for r in store.results],
        )
    return 1 if report.error else 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
