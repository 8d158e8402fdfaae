"""Webhook authentication and event extraction.

Security contract:
- HMAC-SHA256 over the exact raw body, base64-encoded, compared with
  hmac.compare_digest() against the X-Shopify-Hmac-Sha256 header
- Empty secret or missing header -> invalid (fail-closed)
- An invalid event is never parsed
- Topics outside orders/customers/products are valid but carry no entity kind
"""

import base64
import hashlib
import hmac
from dataclasses import dataclass
from typing import Any, Mapping

import orjson
import structlog

from commerce_sync.services.errors import AuthenticationFailure
from shared.constants import (
    HEADER_HMAC,
    HEADER_SHOP_DOMAIN,
    HEADER_TOPIC,
    HEADER_WEBHOOK_ID,
    WEBHOOK_TOPIC_PREFIXES,
)

logger = structlog.get_logger()


@dataclass
class WebhookEvent:
    valid: bool
    topic: str = ""
    shop_domain: str = ""
    payload: dict[str, Any] | None = None
    kind: str | None = None
    webhook_id: str | None = None
    malformed: bool = False

    @property
    def actionable(self) -> bool:
        """True when the event should mutate storage."""
        return self.valid and not self.malformed and self.kind is not None


def compute_signature(raw_body: bytes, secret: str) -> str:
    """Base64 HMAC-SHA256 digest of ``raw_body``."""
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("utf-8")


def classify_topic(topic: str) -> str | None:
    """Map ``orders/create`` style topics to an entity kind."""
    for prefix, kind in WEBHOOK_TOPIC_PREFIXES.items():
        if topic.startswith(prefix):
            return kind
    return None


class WebhookVerifier:
    """Validate inbound webhook deliveries."""

    def verify(
        self,
        raw_body: bytes,
        signature_header: str | None,
        secret: str,
        *,
        topic: str = "",
        shop_domain: str = "",
        webhook_id: str | None = None,
    ) -> WebhookEvent:
        if not secret:
            logger.warning("Webhook secret not configured, rejecting webhook")
            return WebhookEvent(valid=False, topic=topic, shop_domain=shop_domain)
        if not signature_header:
            return WebhookEvent(valid=False, topic=topic, shop_domain=shop_domain)

        expected = compute_signature(raw_body, secret)
        if not hmac.compare_digest(expected.encode("utf-8"), signature_header.encode("utf-8")):
            logger.warning("Invalid webhook HMAC", shop_domain=shop_domain, topic=topic)
            return WebhookEvent(valid=False, topic=topic, shop_domain=shop_domain)

        event = WebhookEvent(
            valid=True,
            topic=topic,
            shop_domain=shop_domain,
            kind=classify_topic(topic),
            webhook_id=webhook_id or None,
        )
        try:
            payload = orjson.loads(raw_body)
        except orjson.JSONDecodeError:
            payload = None
        if not isinstance(payload, dict):
            logger.warning("Webhook body is not a JSON object", shop_domain=shop_domain, topic=topic)
            event.malformed = True
            return event

        event.payload = payload
        return event

    def from_headers(
        self, raw_body: bytes, headers: Mapping[str, str], secret: str
    ) -> WebhookEvent:
        """Verify a delivery using the standard Shopify webhook headers."""
        return self.verify(
            raw_body,
            headers.get(HEADER_HMAC),
            secret,
            topic=headers.get(HEADER_TOPIC) or "",
            shop_domain=headers.get(HEADER_SHOP_DOMAIN) or "",
            webhook_id=headers.get(HEADER_WEBHOOK_ID),
        )

    def authenticate(
        self, raw_body: bytes, headers: Mapping[str, str], secret: str
    ) -> WebhookEvent:
        """Like ``from_headers`` but raises on a bad signature.

        Raises:
            AuthenticationFailure: when the signature does not verify
        """
        event = self.from_headers(raw_body, headers, secret)
        if not event.valid:
            raise AuthenticationFailure(
                f"webhook signature mismatch for {event.shop_domain or 'unknown shop'}"
            )
        return event
