"""Unit tests for the Shopify webhook endpoint."""

from decimal import Decimal

import orjson
import pytest
from httpx import AsyncClient
from sqlalchemy import func, select
from sqlalchemy.exc import DataError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from commerce_sync.config import Settings
from commerce_sync.infrastructure.database.models import Customer, Order, Product, Store
from commerce_sync.infrastructure.redis import DeliveryLedger
from commerce_sync.services.upserter import RecordUpserter
from commerce_sync.services.webhooks import compute_signature

WEBHOOK_URL = "/api/v1/webhooks/shopify"


def _headers(
    body: bytes,
    secret: str,
    topic: str,
    shop_domain: str,
    webhook_id: str | None = None,
) -> dict[str, str]:
    headers = {
        "Content-Type": "application/json",
        "X-Shopify-Hmac-Sha256": compute_signature(body, secret),
        "X-Shopify-Topic": topic,
        "X-Shopify-Shop-Domain": shop_domain,
    }
    if webhook_id:
        headers["X-Shopify-Webhook-Id"] = webhook_id
    return headers


async def _count(factory: async_sessionmaker[AsyncSession], model) -> int:
    async with factory() as session:
        return await session.scalar(select(func.count()).select_from(model))


@pytest.fixture
def order_body() -> bytes:
    return orjson.dumps(
        {
            "id": 900,
            "total_price": "42.50",
            "currency": "USD",
            "customer": {"id": 55, "email": "a@b.com"},
        }
    )


class TestOrderWebhook:
    """Signed order deliveries for onboarded stores."""

    @pytest.mark.asyncio
    async def test_order_create_links_customer(
        self,
        async_client: AsyncClient,
        session_factory: async_sessionmaker[AsyncSession],
        test_settings: Settings,
        store: Store,
        order_body: bytes,
    ) -> None:
        response = await async_client.post(
            WEBHOOK_URL,
            content=order_body,
            headers=_headers(order_body, test_settings.shopify_webhook_secret, "orders/create", store.shop_domain),
        )

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["applied"] is True
        assert data["customer_link"] == "linked"

        async with session_factory() as session:
            order = await session.scalar(select(Order).where(Order.external_id == "900"))
            assert order is not None
            assert order.store_id == store.id
            assert order.total_price == Decimal("42.50")
            assert order.currency == "USD"
            customer = await session.get(Customer, order.customer_id)
            assert customer.external_id == "55"
            assert customer.email == "a@b.com"

    @pytest.mark.asyncio
    async def test_repeated_delivery_keeps_one_row(
        self,
        async_client: AsyncClient,
        session_factory: async_sessionmaker[AsyncSession],
        test_settings: Settings,
        store: Store,
        order_body: bytes,
    ) -> None:
        headers = _headers(order_body, test_settings.shopify_webhook_secret, "orders/updated", store.shop_domain)
        for _ in range(2):
            response = await async_client.post(WEBHOOK_URL, content=order_body, headers=headers)
            assert response.status_code == 200
            assert response.json()["status"] == "ok"

        assert await _count(session_factory, Order) == 1
        assert await _count(session_factory, Customer) == 1

    @pytest.mark.asyncio
    async def test_order_without_customer_is_unlinked(
        self,
        async_client: AsyncClient,
        session_factory: async_sessionmaker[AsyncSession],
        test_settings: Settings,
        store: Store,
    ) -> None:
        body = orjson.dumps({"id": 901, "total_price": "oops"})
        response = await async_client.post(
            WEBHOOK_URL,
            content=body,
            headers=_headers(body, test_settings.shopify_webhook_secret, "orders/create", store.shop_domain),
        )

        assert response.status_code == 200
        assert response.json()["customer_link"] == "unlinked"
        async with session_factory() as session:
            order = await session.scalar(select(Order).where(Order.external_id == "901"))
            assert order.customer_id is None
            assert order.total_price == Decimal("0")

    @pytest.mark.asyncio
    async def test_product_webhook(
        self,
        async_client: AsyncClient,
        session_factory: async_sessionmaker[AsyncSession],
        test_settings: Settings,
        store: Store,
    ) -> None:
        body = orjson.dumps({"id": 7, "title": "Anvil"})
        response = await async_client.post(
            WEBHOOK_URL,
            content=body,
            headers=_headers(body, test_settings.shopify_webhook_secret, "products/update", store.shop_domain),
        )

        assert response.status_code == 200
        data = response.json()
        assert data["applied"] is True
        assert data["customer_link"] is None
        async with session_factory() as session:
            product = await session.scalar(select(Product))
            assert product.title == "Anvil"


class TestCustomerWebhook:
    @pytest.mark.asyncio
    async def test_customer_update_upserts_by_external_id(
        self,
        async_client: AsyncClient,
        session_factory: async_sessionmaker[AsyncSession],
        test_settings: Settings,
        store: Store,
    ) -> None:
        secret = test_settings.shopify_webhook_secret
        create = orjson.dumps({"id": 55, "email": "Ada@Example.com", "first_name": "Ada"})
        update = orjson.dumps({"id": 55, "email": "ada@example.com", "last_name": "Lovelace"})

        first = await async_client.post(
            WEBHOOK_URL, content=create, headers=_headers(create, secret, "customers/create", store.shop_domain)
        )
        second = await async_client.post(
            WEBHOOK_URL, content=update, headers=_headers(update, secret, "customers/update", store.shop_domain)
        )

        assert first.status_code == 200
        assert second.status_code == 200
        data = second.json()
        assert data["status"] == "ok"
        assert data["applied"] is True
        assert data["customer_link"] is None
        async with session_factory() as session:
            customers = list(await session.scalars(select(Customer)))
        assert len(customers) == 1
        assert customers[0].external_id == "55"
        assert customers[0].store_id == store.id
        assert customers[0].email == "ada@example.com"
        assert customers[0].last_name == "Lovelace"

    @pytest.mark.asyncio
    async def test_later_order_links_to_webhook_customer(
        self,
        async_client: AsyncClient,
        session_factory: async_sessionmaker[AsyncSession],
        test_settings: Settings,
        store: Store,
        order_body: bytes,
    ) -> None:
        secret = test_settings.shopify_webhook_secret
        customer = orjson.dumps({"id": 55, "email": "a@b.com"})
        await async_client.post(
            WEBHOOK_URL, content=customer, headers=_headers(customer, secret, "customers/create", store.shop_domain)
        )
        response = await async_client.post(
            WEBHOOK_URL, content=order_body, headers=_headers(order_body, secret, "orders/create", store.shop_domain)
        )

        assert response.json()["customer_link"] == "linked"
        assert await _count(session_factory, Customer) == 1


class TestRejectedWebhook:
    """Deliveries that must not mutate storage."""

    @pytest.mark.asyncio
    async def test_storage_rejection_is_acknowledged(
        self,
        async_client: AsyncClient,
        session_factory: async_sessionmaker[AsyncSession],
        test_settings: Settings,
        store: Store,
        order_body: bytes,
        monkeypatch,
    ) -> None:
        class RejectingUpserter(RecordUpserter):
            async def upsert_order(self, payload, store_id):
                await super().upsert_order(payload, store_id)
                raise DataError("INSERT INTO orders", {}, Exception("numeric field overflow"))

        monkeypatch.setattr("commerce_sync.api.v1.webhooks.RecordUpserter", RejectingUpserter)
        headers = _headers(order_body, test_settings.shopify_webhook_secret, "orders/create", store.shop_domain)

        response = await async_client.post(WEBHOOK_URL, content=order_body, headers=headers)

        assert response.status_code == 200
        assert response.json()["status"] == "ignored"
        assert await _count(session_factory, Order) == 0

    @pytest.mark.asyncio
    async def test_oversized_total_is_stored_as_zero(
        self,
        async_client: AsyncClient,
        session_factory: async_sessionmaker[AsyncSession],
        test_settings: Settings,
        store: Store,
    ) -> None:
        body = orjson.dumps({"id": 902, "total_price": "12345678901.00"})
        headers = _headers(body, test_settings.shopify_webhook_secret, "orders/create", store.shop_domain)

        response = await async_client.post(WEBHOOK_URL, content=body, headers=headers)

        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        async with session_factory() as session:
            order = await session.scalar(select(Order).where(Order.external_id == "902"))
            assert order.total_price == Decimal("0")

    @pytest.mark.asyncio
    async def test_invalid_signature(
        self,
        async_client: AsyncClient,
        session_factory: async_sessionmaker[AsyncSession],
        store: Store,
        order_body: bytes,
    ) -> None:
        headers = _headers(order_body, "wrong-secret", "orders/create", store.shop_domain)
        response = await async_client.post(WEBHOOK_URL, content=order_body, headers=headers)

        assert response.status_code == 401
        assert response.json()["detail"] == "invalid hmac"
        assert await _count(session_factory, Order) == 0
        assert await _count(session_factory, Customer) == 0

    @pytest.mark.asyncio
    async def test_missing_signature(
        self,
        async_client: AsyncClient,
        store: Store,
        order_body: bytes,
    ) -> None:
        response = await async_client.post(
            WEBHOOK_URL,
            content=order_body,
            headers={"X-Shopify-Topic": "orders/create", "X-Shopify-Shop-Domain": store.shop_domain},
        )
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_unknown_store(
        self,
        async_client: AsyncClient,
        session_factory: async_sessionmaker[AsyncSession],
        test_settings: Settings,
        store: Store,
        order_body: bytes,
    ) -> None:
        headers = _headers(
            order_body, test_settings.shopify_webhook_secret, "orders/create", "unknown.myshopify.com"
        )
        response = await async_client.post(WEBHOOK_URL, content=order_body, headers=headers)

        assert response.status_code == 404
        assert await _count(session_factory, Order) == 0
        assert await _count(session_factory, Customer) == 0

    @pytest.mark.asyncio
    async def test_unhandled_topic_is_acknowledged(
        self,
        async_client: AsyncClient,
        session_factory: async_sessionmaker[AsyncSession],
        test_settings: Settings,
        store: Store,
        order_body: bytes,
    ) -> None:
        headers = _headers(order_body, test_settings.shopify_webhook_secret, "app/uninstalled", store.shop_domain)
        response = await async_client.post(WEBHOOK_URL, content=order_body, headers=headers)

        assert response.status_code == 200
        assert response.json()["status"] == "ignored"
        assert await _count(session_factory, Order) == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [b"not json", b"[1, 2]", orjson.dumps({"total_price": "5.00"})])
    async def test_malformed_body_is_acknowledged(
        self,
        async_client: AsyncClient,
        session_factory: async_sessionmaker[AsyncSession],
        test_settings: Settings,
        store: Store,
        body: bytes,
    ) -> None:
        headers = _headers(body, test_settings.shopify_webhook_secret, "orders/create", store.shop_domain)
        response = await async_client.post(WEBHOOK_URL, content=body, headers=headers)

        assert response.status_code == 200
        assert response.json()["status"] == "ignored"
        assert await _count(session_factory, Order) == 0


class TestDuplicateDelivery:
    """Repeated webhook ids are acknowledged without reapplying."""

    @pytest.fixture
    def ledger(self, fake_redis) -> DeliveryLedger:
        return DeliveryLedger(fake_redis, ttl_seconds=60)

    @pytest.mark.asyncio
    async def test_second_delivery_is_duplicate(
        self,
        async_client: AsyncClient,
        session_factory: async_sessionmaker[AsyncSession],
        test_settings: Settings,
        store: Store,
        order_body: bytes,
        fake_redis,
    ) -> None:
        headers = _headers(
            order_body, test_settings.shopify_webhook_secret, "orders/create", store.shop_domain, "wh-1"
        )
        first = await async_client.post(WEBHOOK_URL, content=order_body, headers=headers)
        second = await async_client.post(WEBHOOK_URL, content=order_body, headers=headers)

        assert first.json()["status"] == "ok"
        assert second.status_code == 200
        assert second.json()["status"] == "duplicate"
        assert second.json()["applied"] is False
        assert fake_redis.expiries["webhook:seen:shopify:wh-1"] == 60
        assert await _count(session_factory, Order) == 1

    @pytest.mark.asyncio
    async def test_failed_delivery_is_not_marked(
        self,
        async_client: AsyncClient,
        test_settings: Settings,
        store: Store,
        fake_redis,
    ) -> None:
        body = orjson.dumps({"total_price": "5.00"})
        headers = _headers(body, test_settings.shopify_webhook_secret, "orders/create", store.shop_domain, "wh-2")
        response = await async_client.post(WEBHOOK_URL, content=body, headers=headers)

        assert response.json()["status"] == "ignored"
        assert fake_redis.data == {}
