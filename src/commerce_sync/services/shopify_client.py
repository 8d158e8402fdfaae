"""Per-store client for the Shopify Admin REST API."""

from typing import Any

import httpx
import structlog

from commerce_sync.config import Settings
from commerce_sync.infrastructure.database.models import Store
from shared.constants import HEADER_ACCESS_TOKEN

logger = structlog.get_logger()


class ShopifyClient:
    """Thin async wrapper around ``httpx.AsyncClient`` bound to one shop.

    Responses are returned as-is, including error statuses; deciding what an
    error means for a pagination loop is the caller's job.
    """

    def __init__(
        self,
        shop_domain: str,
        access_token: str,
        api_version: str = "2025-07",
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.shop_domain = shop_domain
        self._client = httpx.AsyncClient(
            base_url=f"https://{shop_domain}/admin/api/{api_version}/",
            headers={HEADER_ACCESS_TOKEN: access_token, "Accept": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def for_store(
        cls,
        store: Store,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "ShopifyClient":
        return cls(
            store.shop_domain,
            store.access_token,
            api_version=settings.shopify_api_version,
            timeout=settings.upstream_timeout_seconds,
            transport=transport,
        )

    async def get(self, endpoint: str, params: dict[str, Any] | None = None) -> httpx.Response:
        """GET ``{endpoint}.json`` relative to the versioned admin API root."""
        logger.debug("Upstream request", shop_domain=self.shop_domain, endpoint=endpoint, params=params)
        return await self._client.get(f"{endpoint}.json", params=params)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "ShopifyClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()
