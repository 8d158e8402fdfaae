"""Backfill of one entity list for one store."""

from dataclasses import dataclass
from datetime import datetime, timezone

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from commerce_sync.config import Settings
from commerce_sync.infrastructure.database.models import Store
from commerce_sync.services.errors import UpstreamError
from commerce_sync.services.pagination import Paginator, PaginationMode, SinceId
from commerce_sync.services.rate_limit import RateLimiter
from commerce_sync.services.shopify_client import ShopifyClient
from commerce_sync.services.upserter import RecordUpserter
from shared.constants import (
    ENTITY_CUSTOMERS,
    ENTITY_DEFAULT_PARAMS,
    ENTITY_ORDERS,
    ENTITY_PRODUCTS,
)

logger = structlog.get_logger()

# Cursor style used for each entity list
ENTITY_PAGINATION = {
    ENTITY_ORDERS: PaginationMode.PAGE_TOKEN,
    ENTITY_CUSTOMERS: PaginationMode.SINCE_ID,
    ENTITY_PRODUCTS: PaginationMode.SINCE_ID,
}


@dataclass
class BackfillResult:
    entity: str
    imported: int = 0
    skipped: int = 0
    pages: int = 0
    complete: bool = False
    last_id: int | None = None
    error: UpstreamError | None = None

    def to_dict(self) -> dict:
        return {
            "entity": self.entity,
            "imported": self.imported,
            "skipped": self.skipped,
            "pages": self.pages,
            "complete": self.complete,
            "error": str(self.error) if self.error else None,
        }


class BackfillService:
    """Stream an entity list from the upstream into storage.

    Each page is upserted and committed before the next page is requested, so
    memory stays bounded and partial progress survives an upstream failure.
    """

    def __init__(
        self,
        session: AsyncSession,
        client: ShopifyClient,
        limiter: RateLimiter,
        settings: Settings,
    ):
        self.session = session
        self.paginator = Paginator(
            client,
            limiter,
            limit=settings.upstream_page_limit,
            retry_after_seconds=settings.upstream_retry_after_seconds,
        )
        self.upserter = RecordUpserter(session)

    async def run(
        self,
        store: Store,
        entity: str,
        *,
        full: bool = True,
        since_id: int | None = None,
        updated_at_min: datetime | None = None,
    ) -> BackfillResult:
        """
        Import ``entity`` for ``store``.

        Args:
            store: Store to import for
            entity: ``orders``, ``customers`` or ``products``
            full: Follow the cursor to the end; otherwise fetch a single page
            since_id: Resume point for since-id lists
            updated_at_min: Only fetch items updated after this (page-token lists)

        Returns:
            Counts plus the upstream error, if the loop ended on one
        """
        if entity not in ENTITY_PAGINATION:
            raise ValueError(f"unknown entity kind: {entity}")

        mode = ENTITY_PAGINATION[entity]
        params = dict(ENTITY_DEFAULT_PARAMS[entity])
        start = None
        if mode is PaginationMode.SINCE_ID and since_id:
            start = SinceId(since_id)
        if mode is PaginationMode.PAGE_TOKEN and updated_at_min is not None:
            if updated_at_min.tzinfo is None:
                updated_at_min = updated_at_min.replace(tzinfo=timezone.utc)
            params["updated_at_min"] = updated_at_min.isoformat()

        log = logger.bind(shop_domain=store.shop_domain, entity=entity)
        log.info("Backfill started", full=full, since_id=since_id)

        result = BackfillResult(entity=entity)
        stream = self.paginator.fetch_all(
            entity, mode, start=start, params=params, max_pages=None if full else 1
        )
        async for batch in stream:
            outcome = await self.upserter.apply_batch(entity, batch, store.id)
            await self.session.commit()
            result.imported += outcome.applied
            result.skipped += outcome.skipped
            if outcome.unlinked_orders:
                log.info("Orders written without customer link", count=len(outcome.unlinked_orders))

        result.pages = stream.pages
        result.complete = stream.complete
        result.last_id = stream.last_id
        result.error = stream.error
        log.info(
            "Backfill finished",
            imported=result.imported,
            skipped=result.skipped,
            pages=result.pages,
            complete=result.complete,
            error=str(result.error) if result.error else None,
        )
        return result
