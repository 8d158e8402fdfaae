"""Shared FastAPI dependencies."""

from typing import Callable

from fastapi import Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from commerce_sync.config import Settings, get_settings
from commerce_sync.infrastructure.database import repository
from commerce_sync.infrastructure.database.models import Store
from commerce_sync.infrastructure.redis import DeliveryLedger, get_redis_client
from commerce_sync.services.errors import NotOnboarded
from commerce_sync.services.rate_limit import RateLimiter
from commerce_sync.services.shopify_client import ShopifyClient

_rate_limiter: RateLimiter | None = None


def get_rate_limiter(settings: Settings = Depends(get_settings)) -> RateLimiter:
    """Process-wide upstream request budget."""
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter(
            settings.upstream_requests_per_second, burst=settings.upstream_burst
        )
    return _rate_limiter


def get_client_factory(
    settings: Settings = Depends(get_settings),
) -> Callable[[Store], ShopifyClient]:
    """Factory building an upstream client for a store."""
    return lambda store: ShopifyClient.for_store(store, settings)


async def get_delivery_ledger(settings: Settings = Depends(get_settings)) -> DeliveryLedger:
    client = await get_redis_client()
    return DeliveryLedger(client, ttl_seconds=settings.webhook_dedup_ttl_seconds)


async def find_store(session: AsyncSession, shop_domain: str) -> Store:
    """Resolve a shop domain to its store.

    Raises:
        NotOnboarded: when no store exists for the domain
    """
    store = await repository.get_by_key(session, Store, shop_domain=shop_domain)
    if store is None:
        raise NotOnboarded(shop_domain)
    return store


async def store_or_404(session: AsyncSession, shop_domain: str) -> Store:
    try:
        return await find_store(session, shop_domain)
    except NotOnboarded as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
