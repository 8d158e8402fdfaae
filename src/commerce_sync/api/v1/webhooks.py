"""Inbound Shopify webhook endpoint."""

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel
from sqlalchemy.exc import DataError
from sqlalchemy.ext.asyncio import AsyncSession

from commerce_sync.api.deps import find_store, get_delivery_ledger
from commerce_sync.config import Settings, get_settings
from commerce_sync.infrastructure.database.connection import get_session
from commerce_sync.infrastructure.redis import DeliveryLedger
from commerce_sync.services.errors import AuthenticationFailure, MalformedPayload, NotOnboarded
from commerce_sync.services.upserter import RecordUpserter
from commerce_sync.services.webhooks import WebhookVerifier

logger = structlog.get_logger()

router = APIRouter()

verifier = WebhookVerifier()


class WebhookResponse(BaseModel):
    """Acknowledgement returned to the upstream platform."""

    status: str
    topic: str
    applied: bool
    customer_link: str | None = None


@router.post("/shopify", response_model=WebhookResponse)
async def receive_shopify_webhook(
    request: Request,
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
    ledger: DeliveryLedger = Depends(get_delivery_ledger),
) -> WebhookResponse:
    """
    Apply a Shopify webhook delivery.

    The signature is checked against the raw request bytes before anything is
    parsed.

    **Responses:**
    - `200`: accepted, including topics this service does not handle,
      undecodable or out-of-range payloads and repeated deliveries
    - `401`: signature mismatch
    - `404`: shop domain has no store record
    - `500`: unexpected failure; the upstream will retry
    """
    raw_body = await request.body()
    try:
        event = verifier.authenticate(raw_body, request.headers, settings.shopify_webhook_secret)
    except AuthenticationFailure as e:
        raise HTTPException(status_code=401, detail="invalid hmac") from e

    log = logger.bind(shop_domain=event.shop_domain, topic=event.topic, webhook_id=event.webhook_id)

    try:
        store = await find_store(session, event.shop_domain)
    except NotOnboarded as e:
        log.warning("Webhook for unknown store")
        raise HTTPException(status_code=404, detail=str(e)) from e

    if await ledger.seen(event.webhook_id):
        log.info("Duplicate webhook delivery ignored")
        return WebhookResponse(status="duplicate", topic=event.topic, applied=False)

    if not event.actionable:
        log.info("Webhook accepted without changes", malformed=event.malformed)
        return WebhookResponse(status="ignored", topic=event.topic, applied=False)

    try:
        result = await RecordUpserter(session).upsert(event.kind, event.payload, store.id)
        await session.commit()
    except (MalformedPayload, DataError) as e:
        log.warning("Webhook payload skipped", error=str(e))
        await session.rollback()
        return WebhookResponse(status="ignored", topic=event.topic, applied=False)
    except Exception as e:
        log.exception("Webhook handler error")
        await session.rollback()
        raise HTTPException(status_code=500, detail="server error") from e

    await ledger.mark(event.webhook_id)
    link = result.identity.outcome.value if result.identity else None
    log.info("Webhook applied", kind=event.kind, customer_link=link)
    return WebhookResponse(status="ok", topic=event.topic, applied=True, customer_link=link)
