"""Exclusive-run locks for scheduled jobs.

Only one coordinator run per lock key may be active across all process
instances. Acquisition never blocks: a held lock means another instance is
already running the job.
"""

import uuid
from typing import Protocol

import redis.asyncio as aioredis
import structlog
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from commerce_sync.config import Settings
from shared.constants import SYNC_LOCK_KEY_PREFIX

logger = structlog.get_logger()


class RunLock(Protocol):
    async def acquire(self, key: int) -> bool: ...

    async def release(self, key: int) -> None: ...


class PostgresAdvisoryLock:
    """Session-level ``pg_try_advisory_lock`` held on a dedicated connection.

    The lock dies with its connection, so a crashed process cannot wedge
    future runs.
    """

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self._connections: dict[int, AsyncConnection] = {}

    async def acquire(self, key: int) -> bool:
        if key in self._connections:
            return False
        try:
            connection = await self.engine.connect()
        except SQLAlchemyError as e:
            logger.error("Lock connection failed", lock_key=key, error=str(e))
            return False
        try:
            result = await connection.execute(
                text("SELECT pg_try_advisory_lock(:key)"), {"key": key}
            )
            locked = bool(result.scalar())
            # Leave no transaction open while the job runs
            await connection.commit()
        except SQLAlchemyError as e:
            logger.error("Lock check failed", lock_key=key, error=str(e))
            await connection.close()
            return False
        if not locked:
            await connection.close()
            return False
        self._connections[key] = connection
        return True

    async def release(self, key: int) -> None:
        connection = self._connections.pop(key, None)
        if connection is None:
            return
        try:
            await connection.execute(text("SELECT pg_advisory_unlock(:key)"), {"key": key})
            await connection.commit()
        except SQLAlchemyError as e:
            logger.error("Unlock failed", lock_key=key, error=str(e))
        finally:
            await connection.close()


class RedisRunLock:
    """``SET NX EX`` lock that expires on its own after ``ttl_seconds``."""

    _RELEASE_SCRIPT = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        return redis.call("del", KEYS[1])
    end
    return 0
    """

    def __init__(self, client: aioredis.Redis, ttl_seconds: int = 900):
        self.client = client
        self.ttl_seconds = ttl_seconds
        self._tokens: dict[int, str] = {}

    @staticmethod
    def _key(key: int) -> str:
        return f"{SYNC_LOCK_KEY_PREFIX}:{key}"

    async def acquire(self, key: int) -> bool:
        token = uuid.uuid4().hex
        try:
            acquired = await self.client.set(self._key(key), token, nx=True, ex=self.ttl_seconds)
        except Exception as e:
            logger.error("Lock check failed", lock_key=key, error=str(e))
            return False
        if not acquired:
            return False
        self._tokens[key] = token
        return True

    async def release(self, key: int) -> None:
        token = self._tokens.pop(key, None)
        if token is None:
            return
        try:
            await self.client.eval(self._RELEASE_SCRIPT, 1, self._key(key), token)
        except Exception as e:
            logger.error("Unlock failed", lock_key=key, error=str(e))


class LocalRunLock:
    """In-process lock for single-instance deployments and tests."""

    def __init__(self) -> None:
        self._held: set[int] = set()

    async def acquire(self, key: int) -> bool:
        if key in self._held:
            return False
        self._held.add(key)
        return True

    async def release(self, key: int) -> None:
        self._held.discard(key)

    def held(self, key: int) -> bool:
        return key in self._held


def build_run_lock(settings: Settings, engine: AsyncEngine) -> RunLock:
    """Create the lock backend selected by ``sync_lock_backend``."""
    if settings.sync_lock_backend == "postgres":
        return PostgresAdvisoryLock(engine)
    if settings.sync_lock_backend == "redis":
        client = aioredis.from_url(settings.redis_url, decode_responses=True)
        return RedisRunLock(client, ttl_seconds=settings.sync_lock_ttl_seconds)
    return LocalRunLock()
