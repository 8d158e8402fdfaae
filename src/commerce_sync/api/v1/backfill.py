"""Manual backfill trigger endpoints."""

from enum import Enum
from typing import Any, Callable

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from commerce_sync.api.deps import get_client_factory, get_rate_limiter, store_or_404
from commerce_sync.config import Settings, get_settings
from commerce_sync.infrastructure.database.connection import get_session
from commerce_sync.infrastructure.database.models import Store
from commerce_sync.services.backfill import BackfillService
from commerce_sync.services.rate_limit import RateLimiter
from commerce_sync.services.shopify_client import ShopifyClient

logger = structlog.get_logger()

router = APIRouter()


class EntityKind(str, Enum):
    """Entity lists that can be backfilled."""

    ORDERS = "orders"
    CUSTOMERS = "customers"
    PRODUCTS = "products"


@router.get("/{shop_domain}/{entity}")
async def backfill_entity(
    shop_domain: str,
    entity: EntityKind,
    fetch_all: bool = Query(False, alias="all", description="Follow pagination to the end"),
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
    limiter: RateLimiter = Depends(get_rate_limiter),
    client_factory: Callable[[Store], ShopifyClient] = Depends(get_client_factory),
) -> dict[str, Any]:
    """
    Import one entity list for a store.

    Without `all=true` only the first page is imported and the response
    carries `count`; with it the cursor is followed to the end and the
    response carries `total_imported`. An upstream error ends the import
    early: the rows already written are kept and `complete` is false.
    """
    store = await store_or_404(session, shop_domain)

    try:
        async with client_factory(store) as client:
            service = BackfillService(session, client, limiter, settings)
            result = await service.run(store, entity.value, full=fetch_all)
    except Exception as e:
        logger.exception("Backfill error", shop_domain=shop_domain, entity=entity.value)
        raise HTTPException(status_code=500, detail=f"error fetching {entity.value}") from e

    body = result.to_dict()
    if fetch_all:
        body["total_imported"] = result.imported
    else:
        body["count"] = result.imported
    return body
