"""Cursor-driven retrieval loops against the upstream list endpoints.

Two cursor styles are supported:

- since-id: each request carries ``since_id`` = highest id of the previous
  batch; an empty page ends the loop.
- page-token: the next ``page_info`` token is taken from the ``Link`` response
  header; a missing ``rel="next"`` link ends the loop.

Upstream failures never raise out of the loop. The stream stops, keeps what was
already yielded, and records the failure on ``PageStream.error``.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx
import orjson
import structlog

from commerce_sync.services.errors import UpstreamError
from commerce_sync.services.rate_limit import RateLimiter
from commerce_sync.services.shopify_client import ShopifyClient
from shared.constants import MAX_PAGE_LIMIT

logger = structlog.get_logger()

# Bytes of an error body kept on the exception and in logs
ERROR_BODY_LIMIT = 2000


class PaginationMode(str, Enum):
    """Upstream cursor styles."""

    SINCE_ID = "since_id"
    PAGE_TOKEN = "page_token"


@dataclass(frozen=True)
class SinceId:
    value: int = 0


@dataclass(frozen=True)
class PageToken:
    value: str


@dataclass(frozen=True)
class Done:
    pass


Cursor = SinceId | PageToken | Done


def next_page_token(response: httpx.Response) -> str | None:
    """Extract ``page_info`` from the ``rel="next"`` entry of the Link header."""
    next_link = response.links.get("next")
    if not next_link or not next_link.get("url"):
        return None
    return httpx.URL(next_link["url"]).params.get("page_info") or None


def max_item_id(items: list[dict[str, Any]]) -> int | None:
    """Highest numeric ``id`` in a batch, ignoring items without a usable id."""
    ids = []
    for item in items:
        try:
            ids.append(int(item["id"]))
        except (KeyError, TypeError, ValueError):
            continue
    return max(ids) if ids else None


class PageStream:
    """Single-use async iterator of entity batches.

    A new request is only sent when the consumer asks for the next batch, so a
    batch is fully processed before the following page is fetched.
    """

    def __init__(
        self,
        client: ShopifyClient,
        limiter: RateLimiter,
        endpoint: str,
        mode: PaginationMode,
        cursor: Cursor | None,
        *,
        limit: int,
        params: dict[str, Any] | None = None,
        max_pages: int | None = None,
        retry_after_seconds: float = 2.0,
    ):
        self.client = client
        self.limiter = limiter
        self.endpoint = endpoint
        self.mode = mode
        # None means "first page" in page-token mode
        self.cursor: Cursor | None = cursor
        self.limit = limit
        self.params = dict(params or {})
        self.max_pages = max_pages
        self.retry_after_seconds = retry_after_seconds

        self.pages = 0
        self.items = 0
        self.last_id: int | None = cursor.value if isinstance(cursor, SinceId) else None
        self.error: UpstreamError | None = None
        self._finished = False

    @property
    def complete(self) -> bool:
        """True once the upstream reported no further pages."""
        return isinstance(self.cursor, Done)

    def __aiter__(self) -> "PageStream":
        return self

    async def __anext__(self) -> list[dict[str, Any]]:
        if self._finished:
            raise StopAsyncIteration
        if isinstance(self.cursor, Done) or (
            self.max_pages is not None and self.pages >= self.max_pages
        ):
            self._finished = True
            raise StopAsyncIteration

        await self.limiter.acquire()
        try:
            response = await self.client.get(self.endpoint, self._request_params())
        except httpx.HTTPError as e:
            self._fail(UpstreamError(f"request failed: {e!r}"))
            raise StopAsyncIteration

        if response.status_code >= 400:
            body = response.text[:ERROR_BODY_LIMIT]
            if response.status_code == 429:
                self.limiter.defer(self._retry_after(response))
            self._fail(
                UpstreamError(
                    f"upstream returned {response.status_code}",
                    status=response.status_code,
                    body=body,
                )
            )
            raise StopAsyncIteration

        try:
            data = orjson.loads(response.content)
            items = data.get(self.endpoint) or []
        except (orjson.JSONDecodeError, AttributeError):
            self._fail(
                UpstreamError(
                    "upstream returned an unreadable body",
                    status=response.status_code,
                    body=response.text[:ERROR_BODY_LIMIT],
                )
            )
            raise StopAsyncIteration

        if not items:
            self.cursor = Done()
            self._finished = True
            raise StopAsyncIteration

        self.pages += 1
        self.items += len(items)
        self.cursor = self._advance(response, items)
        logger.debug(
            "Page fetched",
            shop_domain=self.client.shop_domain,
            endpoint=self.endpoint,
            page=self.pages,
            count=len(items),
        )
        return items

    def _request_params(self) -> dict[str, Any]:
        if isinstance(self.cursor, SinceId):
            return {**self.params, "limit": self.limit, "since_id": self.cursor.value}
        if isinstance(self.cursor, PageToken):
            # Filters are encoded in the token; only limit may accompany it
            return {"limit": self.limit, "page_info": self.cursor.value}
        return {**self.params, "limit": self.limit}

    def _advance(self, response: httpx.Response, items: list[dict[str, Any]]) -> Cursor:
        if self.mode is PaginationMode.SINCE_ID:
            highest = max_item_id(items)
            previous = self.last_id or 0
            if highest is None or highest <= previous:
                logger.warning(
                    "since_id did not advance, stopping",
                    shop_domain=self.client.shop_domain,
                    endpoint=self.endpoint,
                    since_id=previous,
                )
                return Done()
            self.last_id = highest
            return SinceId(highest)

        token = next_page_token(response)
        return PageToken(token) if token else Done()

    def _retry_after(self, response: httpx.Response) -> float:
        try:
            return float(response.headers["Retry-After"])
        except (KeyError, ValueError):
            return self.retry_after_seconds

    def _fail(self, error: UpstreamError) -> None:
        self.error = error
        self._finished = True
        logger.error(
            "Upstream fetch error",
            shop_domain=self.client.shop_domain,
            endpoint=self.endpoint,
            status=error.status,
            body=error.body,
            error=str(error),
            pages=self.pages,
            items=self.items,
        )


class Paginator:
    """Builds page streams for one store's client."""

    def __init__(
        self,
        client: ShopifyClient,
        limiter: RateLimiter,
        limit: int = MAX_PAGE_LIMIT,
        retry_after_seconds: float = 2.0,
    ):
        self.client = client
        self.limiter = limiter
        self.limit = min(limit, MAX_PAGE_LIMIT)
        self.retry_after_seconds = retry_after_seconds

    def fetch_all(
        self,
        endpoint: str,
        mode: PaginationMode,
        *,
        start: Cursor | None = None,
        params: dict[str, Any] | None = None,
        max_pages: int | None = None,
    ) -> PageStream:
        """Stream batches of ``endpoint`` items.

        Args:
            endpoint: Entity list name, e.g. ``orders``; also the wrapper key
            mode: Cursor style to follow
            start: Cursor to resume from (defaults to the first page)
            params: Extra query parameters for the first request
            max_pages: Stop after this many non-empty pages

        Returns:
            A fresh, single-use stream
        """
        if start is None and mode is PaginationMode.SINCE_ID:
            start = SinceId(0)
        return PageStream(
            self.client,
            self.limiter,
            endpoint,
            mode,
            start,
            limit=self.limit,
            params=params,
            max_pages=max_pages,
            retry_after_seconds=self.retry_after_seconds,
        )
