"""Create-or-update of inbound entities keyed by (external id, store)."""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any

import structlog
from sqlalchemy.exc import DataError
from sqlalchemy.ext.asyncio import AsyncSession

from commerce_sync.infrastructure.database import repository
from commerce_sync.infrastructure.database.models import Base, Customer, Order, Product
from commerce_sync.services.errors import MalformedPayload
from commerce_sync.services.identity import IdentityResolver, IdentityResult, clean_email
from shared.constants import ENTITY_CUSTOMERS, ENTITY_ORDERS, ENTITY_PRODUCTS

logger = structlog.get_logger()

ZERO = Decimal("0.00")
CENTS = Decimal("0.01")
# Exclusive bound of Numeric(12, 2)
MAX_PRICE = Decimal("1e10")

KEY_COLUMNS = ("external_id", "store_id")


def parse_price(value: Any) -> Decimal:
    """Parse an upstream money string, defaulting to zero when unusable."""
    if value is None or isinstance(value, bool):
        return ZERO
    try:
        amount = Decimal(str(value).strip())
        if not amount.is_finite():
            return ZERO
        amount = amount.quantize(CENTS)
        if abs(amount) >= MAX_PRICE:
            logger.warning("Price out of range, defaulting to zero", value=str(value)[:64])
            return ZERO
        return amount
    except (InvalidOperation, ValueError):
        return ZERO


def _first(*values: Any) -> Any:
    for value in values:
        if value not in (None, ""):
            return value
    return None


def _external_id(payload: dict[str, Any]) -> str:
    value = payload.get("id")
    if value in (None, ""):
        raise MalformedPayload("payload has no id")
    return str(value)


@dataclass
class UpsertResult:
    record: Base
    identity: IdentityResult | None = None


@dataclass
class BatchResult:
    applied: int = 0
    skipped: int = 0
    unlinked_orders: list[str] = field(default_factory=list)


class RecordUpserter:
    """Apply orders, customers and products to storage.

    Safe to call repeatedly with the same payload: the second call only moves
    ``updated_at``.
    """

    def __init__(self, session: AsyncSession, resolver: IdentityResolver | None = None):
        self.session = session
        self.resolver = resolver or IdentityResolver(session)

    async def upsert(self, kind: str, payload: dict[str, Any], store_id: int) -> UpsertResult:
        """Create or update one entity.

        Raises:
            MalformedPayload: when the payload has no upstream id
            ValueError: for an unknown entity kind
        """
        if not isinstance(payload, dict):
            raise MalformedPayload(f"expected an object, got {type(payload).__name__}")
        if kind == ENTITY_ORDERS:
            return await self.upsert_order(payload, store_id)
        if kind == ENTITY_CUSTOMERS:
            return UpsertResult(await self.upsert_customer(payload, store_id))
        if kind == ENTITY_PRODUCTS:
            return UpsertResult(await self.upsert_product(payload, store_id))
        raise ValueError(f"unknown entity kind: {kind}")

    async def upsert_order(self, payload: dict[str, Any], store_id: int) -> UpsertResult:
        external_id = _external_id(payload)
        customer = payload.get("customer") or {}
        if not isinstance(customer, dict):
            customer = {}

        identity = await self.resolver.resolve(
            store_id,
            external_id=_first(customer.get("id"), payload.get("customer_id")),
            email=_first(customer.get("email"), payload.get("email"), payload.get("customer_email")),
            first_name=_first(customer.get("first_name"), customer.get("firstName")),
            last_name=_first(customer.get("last_name"), customer.get("lastName")),
        )

        values = {
            "external_id": external_id,
            "store_id": store_id,
            "total_price": parse_price(payload.get("total_price")),
            "currency": _first(payload.get("currency"), payload.get("currency_code")),
        }
        # An unresolved link never clears one attached by an earlier write
        if identity.customer_id is not None:
            values["customer_id"] = identity.customer_id

        order = await repository.upsert(self.session, Order, values, key=KEY_COLUMNS)
        logger.debug(
            "Order upserted",
            store_id=store_id,
            external_id=external_id,
            link=identity.outcome.value,
        )
        return UpsertResult(order, identity)

    async def upsert_customer(self, payload: dict[str, Any], store_id: int) -> Customer:
        external_id = _external_id(payload)
        values = {
            "external_id": external_id,
            "store_id": store_id,
            "email": clean_email(payload.get("email")),
            "first_name": _first(payload.get("first_name"), payload.get("firstName")),
            "last_name": _first(payload.get("last_name"), payload.get("lastName")),
        }
        return await repository.upsert(self.session, Customer, values, key=KEY_COLUMNS)

    async def upsert_product(self, payload: dict[str, Any], store_id: int) -> Product:
        external_id = _external_id(payload)
        values = {
            "external_id": external_id,
            "store_id": store_id,
            "title": _first(payload.get("title")),
        }
        return await repository.upsert(self.session, Product, values, key=KEY_COLUMNS)

    async def apply_batch(
        self, kind: str, items: list[dict[str, Any]], store_id: int
    ) -> BatchResult:
        """Upsert a page of entities, skipping malformed records.

        Each record runs in its own savepoint so a value the database rejects
        only loses that record.
        """
        result = BatchResult()
        for item in items:
            try:
                async with self.session.begin_nested():
                    outcome = await self.upsert(kind, item, store_id)
            except MalformedPayload as e:
                logger.warning(
                    "Skipping malformed record",
                    kind=kind,
                    store_id=store_id,
                    error=str(e),
                )
                result.skipped += 1
                continue
            except DataError as e:
                logger.warning(
                    "Skipping record rejected by storage",
                    kind=kind,
                    store_id=store_id,
                    external_id=item.get("id") if isinstance(item, dict) else None,
                    error=str(e.orig),
                )
                result.skipped += 1
                continue
            result.applied += 1
            if outcome.identity is not None and outcome.identity.customer_id is None:
                result.unlinked_orders.append(outcome.record.external_id)
        return result
