"""Storage contract used by the sync engine.

Four operations, all scoped by the caller through the key/criteria it passes:
create-or-update by composite natural key, lookup by primary key, lookup by a
compound unique key, and a find-first-matching query.
"""

from typing import Any, Iterable, TypeVar

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from commerce_sync.infrastructure.database.models import Base

ModelT = TypeVar("ModelT", bound=Base)

_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


def _insert_for(session: AsyncSession):
    dialect = session.get_bind().dialect.name
    try:
        return _INSERTS[dialect]
    except KeyError:
        raise NotImplementedError(f"upsert not supported on dialect {dialect!r}") from None


async def upsert(
    session: AsyncSession,
    model: type[ModelT],
    values: dict[str, Any],
    key: Iterable[str],
    update_fields: Iterable[str] | None = None,
) -> ModelT:
    """Atomically insert ``values`` or update the row matching ``key``.

    Concurrent writers on the same key are serialized by the database's
    ``ON CONFLICT DO UPDATE``. Key columns are never part of the update set.

    Args:
        session: Active session
        model: Mapped class with a unique constraint over ``key``
        values: Column values for the insert
        key: Column names forming the natural key
        update_fields: Columns overwritten on conflict (defaults to all non-key values)

    Returns:
        The persisted row, refreshed from the database
    """
    key = tuple(key)
    if update_fields is None:
        update_fields = [name for name in values if name not in key]
    set_ = {name: values[name] for name in update_fields if name not in key}
    if "updated_at" in model.__table__.c:
        set_["updated_at"] = func.now()

    insert = _insert_for(session)
    stmt = insert(model).values(**values)
    stmt = stmt.on_conflict_do_update(index_elements=list(key), set_=set_).returning(model)

    result = await session.scalars(stmt, execution_options={"populate_existing": True})
    return result.one()


async def get(session: AsyncSession, model: type[ModelT], pk: Any) -> ModelT | None:
    """Fetch a row by primary key."""
    return await session.get(model, pk)


async def get_by_key(session: AsyncSession, model: type[ModelT], **key: Any) -> ModelT | None:
    """Fetch the row matching a compound unique key, e.g. ``external_id`` + ``store_id``."""
    stmt = select(model).filter_by(**key)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def find_first(session: AsyncSession, model: type[ModelT], *criteria: Any) -> ModelT | None:
    """Return the oldest row matching ``criteria`` (lowest primary key)."""
    pk = model.__mapper__.primary_key
    stmt = select(model).where(*criteria).order_by(*pk).limit(1)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()
