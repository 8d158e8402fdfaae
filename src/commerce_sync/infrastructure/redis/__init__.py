"""Redis infrastructure with graceful degradation."""

import redis.asyncio as aioredis
import structlog

from commerce_sync.config import get_settings
from shared.constants import WEBHOOK_SEEN_KEY_PREFIX

logger = structlog.get_logger()

_redis_client: aioredis.Redis | None = None


async def get_redis_client() -> aioredis.Redis | None:
    """Get or create the global async Redis client."""
    global _redis_client
    if _redis_client is None:
        settings = get_settings()
        try:
            _redis_client = aioredis.from_url(
                settings.redis_url,
                decode_responses=False,
                socket_connect_timeout=2,
                socket_timeout=2,
                retry_on_timeout=True,
            )
            await _redis_client.ping()
            logger.info("Redis connection established")
        except Exception as e:
            logger.warning("Redis unavailable, webhook de-duplication disabled", error=str(e))
            _redis_client = None
    return _redis_client


async def close_redis() -> None:
    """Close the Redis connection on shutdown."""
    global _redis_client
    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None


class DeliveryLedger:
    """Remembers processed webhook deliveries by ``X-Shopify-Webhook-Id``.

    Fails open: without Redis every delivery is treated as new, which is safe
    because upserts are idempotent.
    """

    def __init__(self, client: aioredis.Redis | None, ttl_seconds: int = 86400):
        self.client = client
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def _key(webhook_id: str) -> str:
        return f"{WEBHOOK_SEEN_KEY_PREFIX}:{webhook_id}"

    async def seen(self, webhook_id: str | None) -> bool:
        if not self.client or not webhook_id:
            return False
        try:
            return bool(await self.client.exists(self._key(webhook_id)))
        except Exception as e:
            logger.warning("Delivery lookup failed", webhook_id=webhook_id, error=str(e))
            return False

    async def mark(self, webhook_id: str | None) -> None:
        """Record a delivery; call only after its effects are committed."""
        if not self.client or not webhook_id:
            return
        try:
            await self.client.set(self._key(webhook_id), b"1", ex=self.ttl_seconds)
        except Exception as e:
            logger.warning("Delivery mark failed", webhook_id=webhook_id, error=str(e))
