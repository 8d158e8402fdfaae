"""Periodic sync job coordination.

State machine: idle -> acquiring -> running -> releasing -> idle.

One run takes the exclusive-run lock, walks every store in id order and
imports the configured entity lists for each, one store at a time. A failing
store is logged and recorded; the run moves on to the next store. The lock is
released on every exit path.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Sequence

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from commerce_sync.config import Settings
from commerce_sync.infrastructure.database import repository
from commerce_sync.infrastructure.database.models import Store, SyncStatus
from commerce_sync.infrastructure.locks import RunLock
from commerce_sync.services.backfill import ENTITY_PAGINATION, BackfillResult, BackfillService
from commerce_sync.services.pagination import PaginationMode
from commerce_sync.services.rate_limit import RateLimiter
from commerce_sync.services.shopify_client import ShopifyClient
from shared.constants import SYNC_STATUS_ERROR, SYNC_STATUS_IDLE, SYNC_STATUS_RUNNING

logger = structlog.get_logger()

ClientFactory = Callable[[Store], ShopifyClient]


class CoordinatorState(str, Enum):
    IDLE = "idle"
    ACQUIRING = "acquiring"
    RUNNING = "running"
    RELEASING = "releasing"


@dataclass
class StoreReport:
    store_id: int
    shop_domain: str
    results: list[BackfillResult] = field(default_factory=list)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and all(r.error is None for r in self.results)


@dataclass
class RunReport:
    acquired: bool
    stores: list[StoreReport] = field(default_factory=list)
    error: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def skipped(self) -> bool:
        return not self.acquired


def _utcnow() -> datetime:
    # Naive UTC, matching the DateTime columns
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SyncCoordinator:
    """Owns the lifecycle of one scheduled sync job."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        lock: RunLock,
        lock_key: int,
        limiter: RateLimiter,
        settings: Settings,
        client_factory: ClientFactory | None = None,
        entities: Sequence[str] | None = None,
    ):
        self.session_factory = session_factory
        self.lock = lock
        self.lock_key = lock_key
        self.limiter = limiter
        self.settings = settings
        self.client_factory = client_factory or (
            lambda store: ShopifyClient.for_store(store, settings)
        )
        self.entities = list(entities if entities is not None else settings.sync_entities)
        for entity in self.entities:
            if entity not in ENTITY_PAGINATION:
                raise ValueError(f"unknown entity kind: {entity}")
        self._state = CoordinatorState.IDLE

    @property
    def state(self) -> CoordinatorState:
        return self._state

    async def run_once(self) -> RunReport:
        """Execute one scheduled tick.

        Returns:
            A report; ``skipped`` is True when another instance holds the lock
        """
        self._state = CoordinatorState.ACQUIRING
        try:
            acquired = await self.lock.acquire(self.lock_key)
        except Exception as e:
            logger.error("Lock acquisition failed", lock_key=self.lock_key, error=str(e))
            acquired = False
        if not acquired:
            self._state = CoordinatorState.IDLE
            logger.info("Another instance is running the sync, skipping this run", lock_key=self.lock_key)
            return RunReport(acquired=False)

        self._state = CoordinatorState.RUNNING
        report = RunReport(acquired=True, started_at=_utcnow())
        logger.info("Sync run started", lock_key=self.lock_key, entities=self.entities)
        try:
            stores = await self._list_stores()
            for index, store in enumerate(stores):
                if index:
                    # Spacing between stores comes out of the shared request budget
                    await self.limiter.acquire()
                report.stores.append(await self._sync_store_isolated(store))
        except Exception as e:
            logger.exception("Sync run failed", lock_key=self.lock_key)
            report.error = str(e)
        finally:
            self._state = CoordinatorState.RELEASING
            try:
                await self.lock.release(self.lock_key)
            finally:
                self._state = CoordinatorState.IDLE

        report.finished_at = _utcnow()
        logger.info(
            "Sync run finished",
            stores=len(report.stores),
            failed=sum(1 for s in report.stores if not s.ok),
            error=report.error,
        )
        return report

    async def _list_stores(self) -> list[Store]:
        async with self.session_factory() as session:
            result = await session.execute(select(Store).order_by(Store.id))
            return list(result.scalars().all())

    async def _sync_store_isolated(self, store: Store) -> StoreReport:
        report = StoreReport(store_id=store.id, shop_domain=store.shop_domain)
        current: list[str] = []
        try:
            await self._sync_store(store, report, current)
        except Exception as e:
            logger.exception(
                "Store sync failed",
                shop_domain=store.shop_domain,
                store_id=store.id,
                entity=current[-1] if current else None,
            )
            report.error = f"{type(e).__name__}: {e}"
            if current:
                await self._record_failure(store, current[-1], report.error)
        return report

    async def _sync_store(self, store: Store, report: StoreReport, current: list[str]) -> None:
        logger.info("Store sync started", shop_domain=store.shop_domain, store_id=store.id)
        async with self.session_factory() as session:
            client = self.client_factory(store)
            async with client:
                backfill = BackfillService(session, client, self.limiter, self.settings)
                for entity in self.entities:
                    current.append(entity)
                    previous = await repository.get(session, SyncStatus, (store.id, entity))
                    resume = self._resume_point(entity, previous)
                    started_at = _utcnow()
                    await self._write_status(session, store.id, entity, status=SYNC_STATUS_RUNNING)
                    await session.commit()

                    result = await backfill.run(store, entity, **resume)
                    report.results.append(result)
                    await self._record_result(session, store.id, entity, result, started_at)
                    await session.commit()
        logger.info("Store sync finished", shop_domain=store.shop_domain, store_id=store.id)

    def _resume_point(self, entity: str, previous: SyncStatus | None) -> dict:
        if previous is None:
            return {}
        if ENTITY_PAGINATION[entity] is PaginationMode.SINCE_ID:
            try:
                return {"since_id": int(previous.last_sync_cursor)} if previous.last_sync_cursor else {}
            except ValueError:
                return {}
        return {"updated_at_min": previous.last_sync_at} if previous.last_sync_at else {}

    async def _write_status(self, session: AsyncSession, store_id: int, entity: str, **fields) -> None:
        values = {"store_id": store_id, "entity": entity, **fields}
        await repository.upsert(session, SyncStatus, values, key=("store_id", "entity"))

    async def _record_result(
        self,
        session: AsyncSession,
        store_id: int,
        entity: str,
        result: BackfillResult,
        started_at: datetime,
    ) -> None:
        fields: dict = {
            "status": SYNC_STATUS_ERROR if result.error else SYNC_STATUS_IDLE,
            "records_synced": result.imported,
            "error_message": str(result.error) if result.error else None,
        }
        if result.last_id is not None:
            fields["last_sync_cursor"] = str(result.last_id)
        if result.complete:
            # Window start, so updates made during the run are picked up next time
            fields["last_sync_at"] = started_at
        await self._write_status(session, store_id, entity, **fields)

    async def _record_failure(self, store: Store, entity: str, message: str) -> None:
        try:
            async with self.session_factory() as session:
                await self._write_status(
                    session, store.id, entity, status=SYNC_STATUS_ERROR, error_message=message
                )
                await session.commit()
        except Exception as e:
            logger.error(
                "Could not record store failure",
                shop_domain=store.shop_domain,
                entity=entity,
                error=str(e),
            )
