"""Store synchronization tasks."""

import asyncio

import structlog
from celery import shared_task
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from commerce_sync.config import get_settings
from commerce_sync.infrastructure.database import repository
from commerce_sync.infrastructure.database.connection import get_async_engine
from commerce_sync.infrastructure.database.models import Store
from commerce_sync.infrastructure.locks import build_run_lock
from commerce_sync.services.backfill import BackfillService
from commerce_sync.services.coordinator import SyncCoordinator
from commerce_sync.services.errors import NotOnboarded
from commerce_sync.services.rate_limit import RateLimiter
from commerce_sync.services.shopify_client import ShopifyClient

logger = structlog.get_logger()


async def _run_coordinator() -> dict:
    settings = get_settings()
    # Each task invocation runs in a fresh event loop, so it gets its own engine
    engine = get_async_engine()
    try:
        coordinator = SyncCoordinator(
            async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False),
            lock=build_run_lock(settings, engine),
            lock_key=settings.sync_lock_key,
            limiter=RateLimiter(settings.upstream_requests_per_second, burst=settings.upstream_burst),
            settings=settings,
        )
        report = await coordinator.run_once()
    finally:
        await engine.dispose()

    return {
        "skipped": report.skipped,
        "stores_synced": sum(1 for s in report.stores if s.ok),
        "stores_failed": sum(1 for s in report.stores if not s.ok),
        "records_imported": sum(r.imported for s in report.stores for r in s.results),
        "error": report.error,
    }


async def _run_backfill(shop_domain: str, entity: str, full: bool) -> dict:
    settings = get_settings()
    engine = get_async_engine()
    try:
        factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        async with factory() as session:
            store = await repository.get_by_key(session, Store, shop_domain=shop_domain)
            if store is None:
                raise NotOnboarded(shop_domain)
            limiter = RateLimiter(settings.upstream_requests_per_second, burst=settings.upstream_burst)
            async with ShopifyClient.for_store(store, settings) as client:
                result = await BackfillService(session, client, limiter, settings).run(
                    store, entity, full=full
                )
    finally:
        await engine.dispose()
    return result.to_dict()


@shared_task(bind=True)
def run_scheduled_sync(self) -> dict:
    """
    Run one coordinator tick.

    Exclusivity comes from the run lock, not from Celery: a tick that finds
    the lock held returns immediately with ``skipped`` set.

    Returns:
        dict: Summary of the run
    """
    logger.info("Scheduled sync tick")
    summary = asyncio.run(_run_coordinator())
    logger.info("Scheduled sync tick finished", **summary)
    return summary


@shared_task(bind=True)
def backfill_store(self, shop_domain: str, entity: str, full: bool = True) -> dict:
    """
    Backfill one entity list for one store outside the schedule.

    Args:
        shop_domain: The store's shop domain
        entity: ``orders``, ``customers`` or ``products``
        full: Follow pagination to the end

    Returns:
        dict: Backfill result
    """
    logger.info("Backfilling store", shop_domain=shop_domain, entity=entity, full=full)
    try:
        return asyncio.run(_run_backfill(shop_domain, entity, full))
    except NotOnboarded:
        logger.error("Backfill for unknown store", shop_domain=shop_domain)
        raise
