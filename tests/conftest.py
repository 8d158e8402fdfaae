"""Pytest configuration and fixtures."""

from collections.abc import AsyncGenerator
from typing import Any

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from commerce_sync.api.deps import get_client_factory, get_delivery_ledger, get_rate_limiter
from commerce_sync.config import Settings, get_settings
from commerce_sync.infrastructure.database.connection import get_session
from commerce_sync.infrastructure.database.models import Base, Store, Tenant
from commerce_sync.infrastructure.redis import DeliveryLedger
from commerce_sync.main import create_app
from commerce_sync.services.rate_limit import RateLimiter
from commerce_sync.services.shopify_client import ShopifyClient

WEBHOOK_SECRET = "test-webhook-secret"
SHOP_DOMAIN = "acme.myshopify.com"
OTHER_SHOP_DOMAIN = "globex.myshopify.com"


class FakeClock:
    """Manually advanced monotonic clock with a matching async sleep."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeShop:
    """Scripted upstream Admin API.

    Responses are queued per endpoint (``orders``, ``customers``...) and served
    in order; an endpoint with nothing queued answers with an empty list.
    """

    def __init__(self) -> None:
        self.responses: dict[str, list[httpx.Response]] = {}
        self.requests: list[httpx.Request] = []
        self.fail_hosts: set[str] = set()

    def queue(self, endpoint: str, *responses: httpx.Response) -> None:
        self.responses.setdefault(endpoint, []).extend(responses)

    def page(self, endpoint: str, items: list[dict], next_token: str | None = None) -> None:
        headers = {}
        if next_token:
            headers["Link"] = (
                f'<https://{SHOP_DOMAIN}/admin/api/2025-07/{endpoint}.json'
                f'?limit=250&page_info={next_token}>; rel="next"'
            )
        self.queue(endpoint, httpx.Response(200, json={endpoint: items}, headers=headers))

    def requests_for(self, endpoint: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith(f"/{endpoint}.json")]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.host in self.fail_hosts:
            raise RuntimeError(f"integration broken for {request.url.host}")
        endpoint = request.url.path.rsplit("/", 1)[-1].removesuffix(".json")
        queued = self.responses.get(endpoint)
        if not queued:
            return httpx.Response(200, json={endpoint: []})
        return queued.pop(0)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def client(self, store: Store, settings: Settings) -> ShopifyClient:
        return ShopifyClient.for_store(store, settings, transport=self.transport)


class InMemoryRedis:
    """Just enough of the redis.asyncio client for the delivery ledger and run lock."""

    def __init__(self) -> None:
        self.data: dict[str, Any] = {}
        self.expiries: dict[str, int | None] = {}

    async def exists(self, key: str) -> int:
        return int(key in self.data)

    async def get(self, key: str) -> Any:
        return self.data.get(key)

    async def set(self, key: str, value: Any, ex: int | None = None, nx: bool = False) -> bool | None:
        if nx and key in self.data:
            return None
        self.data[key] = value
        self.expiries[key] = ex
        return True

    async def eval(self, script: str, numkeys: int, key: str, token: str) -> int:
        if self.data.get(key) == token:
            del self.data[key]
            return 1
        return 0


@pytest.fixture
def test_settings() -> Settings:
    """Get test settings with overrides."""
    return Settings(
        app_env="test",
        debug=True,
        postgres_host="localhost",
        postgres_port=5432,
        postgres_user="test",
        postgres_password="test",
        postgres_db="test_db",
        redis_host="localhost",
        redis_port=6379,
        shopify_webhook_secret=WEBHOOK_SECRET,
        sync_lock_backend="local",
        upstream_requests_per_second=100.0,
    )


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def limiter(fake_clock: FakeClock) -> RateLimiter:
    """Rate limiter on a fake clock: waits are recorded, never slept."""
    return RateLimiter(4.0, burst=1, clock=fake_clock, sleep=fake_clock.sleep)


@pytest.fixture
def fake_shop() -> FakeShop:
    return FakeShop()


@pytest.fixture
def fake_redis() -> InMemoryRedis:
    return InMemoryRedis()


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """SQLite database with the full schema, one file per test."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'sync.db'}")

    # pysqlite manages transactions itself unless told not to, which breaks SAVEPOINT
    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def tenant(session_factory: async_sessionmaker[AsyncSession]) -> Tenant:
    async with session_factory() as session:
        tenant = Tenant(name="Acme Holdings")
        session.add(tenant)
        await session.commit()
        return tenant


@pytest_asyncio.fixture
async def store(session_factory: async_sessionmaker[AsyncSession], tenant: Tenant) -> Store:
    """Onboarded store for SHOP_DOMAIN."""
    async with session_factory() as session:
        store = Store(tenant_id=tenant.id, shop_domain=SHOP_DOMAIN, access_token="shpat_acme")
        session.add(store)
        await session.commit()
        return store


@pytest_asyncio.fixture
async def other_store(session_factory: async_sessionmaker[AsyncSession], tenant: Tenant) -> Store:
    """Second store of the same tenant, created after ``store``."""
    async with session_factory() as session:
        store = Store(tenant_id=tenant.id, shop_domain=OTHER_SHOP_DOMAIN, access_token="shpat_globex")
        session.add(store)
        await session.commit()
        return store


@pytest.fixture
def ledger() -> DeliveryLedger:
    """Ledger without Redis: every delivery is treated as new."""
    return DeliveryLedger(None)


@pytest.fixture
def app(
    test_settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    ledger: DeliveryLedger,
    limiter: RateLimiter,
    fake_shop: FakeShop,
) -> Any:
    """Create test application."""
    # Override settings
    def get_test_settings() -> Settings:
        return test_settings

    async def get_test_session() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app = create_app()
    app.dependency_overrides[get_settings] = get_test_settings
    app.dependency_overrides[get_session] = get_test_session
    app.dependency_overrides[get_delivery_ledger] = lambda: ledger
    app.dependency_overrides[get_rate_limiter] = lambda: limiter
    app.dependency_overrides[get_client_factory] = lambda: (
        lambda store: fake_shop.client(store, test_settings)
    )
    return app


@pytest_asyncio.fixture
async def async_client(app: Any) -> AsyncGenerator[AsyncClient, None]:
    """Create asynchronous test client."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
