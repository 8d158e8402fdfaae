"""Customer identity resolution.

Order and webhook payloads carry partial customer identifiers. Resolution
prefers the upstream customer id, falls back to email within the same store,
and creates a customer only when neither matches.
"""

from dataclasses import dataclass
from enum import Enum

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from commerce_sync.infrastructure.database import repository
from commerce_sync.infrastructure.database.models import Customer
from commerce_sync.services.errors import IdentityConflict

logger = structlog.get_logger()


class LinkOutcome(str, Enum):
    """How an identity resolution ended."""

    LINKED = "linked"
    UNLINKED = "unlinked"
    FAILED = "failed"


@dataclass
class IdentityResult:
    outcome: LinkOutcome
    customer: Customer | None = None
    created: bool = False
    error: IdentityConflict | None = None

    @property
    def customer_id(self) -> int | None:
        return self.customer.id if self.customer is not None else None

    @classmethod
    def linked(cls, customer: Customer, created: bool = False) -> "IdentityResult":
        return cls(LinkOutcome.LINKED, customer=customer, created=created)

    @classmethod
    def unlinked(cls) -> "IdentityResult":
        return cls(LinkOutcome.UNLINKED)

    @classmethod
    def failed(cls, error: IdentityConflict) -> "IdentityResult":
        return cls(LinkOutcome.FAILED, error=error)


def _clean(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def clean_email(value: object) -> str | None:
    """Trimmed, lower-cased email; mailbox matching is case-insensitive."""
    text = _clean(value)
    return text.lower() if text else None


class IdentityResolver:
    """Find or create the canonical customer for a set of identifiers."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def resolve(
        self,
        store_id: int,
        external_id: str | int | None = None,
        email: str | None = None,
        first_name: str | None = None,
        last_name: str | None = None,
    ) -> IdentityResult:
        """
        Resolve a customer, first match wins:

        1. (external_id, store_id)
        2. (email, store_id)
        3. create with whatever identifiers are available

        A creation failure is reported as ``LinkOutcome.FAILED`` instead of
        raising, so the caller can still write the order without a link.
        """
        external_id = _clean(external_id)
        email = clean_email(email)
        first_name = _clean(first_name)
        last_name = _clean(last_name)

        if external_id is None and email is None:
            return IdentityResult.unlinked()

        if external_id is not None:
            customer = await self._find_by_external_id(external_id, store_id)
            if customer is not None:
                await self._refresh(customer, email=email, first_name=first_name, last_name=last_name)
                return IdentityResult.linked(customer)

        if email is not None:
            customer = await self._find_by_email(email, store_id)
            if customer is not None:
                adopt = external_id if customer.external_id is None else None
                await self._refresh(
                    customer, external_id=adopt, first_name=first_name, last_name=last_name
                )
                return IdentityResult.linked(customer)

        return await self._create(store_id, external_id, email, first_name, last_name)

    async def _find_by_external_id(self, external_id: str, store_id: int) -> Customer | None:
        return await repository.get_by_key(
            self.session, Customer, external_id=external_id, store_id=store_id
        )

    async def _find_by_email(self, email: str, store_id: int) -> Customer | None:
        return await repository.find_first(
            self.session,
            Customer,
            Customer.email == email,
            Customer.store_id == store_id,
        )

    async def _refresh(self, customer: Customer, **fields: str | None) -> None:
        """Fill in newly seen, non-empty attributes on a matched customer."""
        changes = {
            name: value
            for name, value in fields.items()
            if value is not None and getattr(customer, name) != value
        }
        if not changes:
            return
        try:
            async with self.session.begin_nested():
                for name, value in changes.items():
                    setattr(customer, name, value)
                await self.session.flush()
        except SQLAlchemyError as e:
            # Matched customer stays linked; only the refresh is lost
            logger.warning(
                "Customer refresh failed",
                customer_id=customer.id,
                fields=sorted(changes),
                error=str(e),
            )
            await self.session.refresh(customer)

    async def _create(
        self,
        store_id: int,
        external_id: str | None,
        email: str | None,
        first_name: str | None,
        last_name: str | None,
    ) -> IdentityResult:
        customer = Customer(
            external_id=external_id,
            email=email,
            first_name=first_name,
            last_name=last_name,
            store_id=store_id,
        )
        try:
            async with self.session.begin_nested():
                self.session.add(customer)
                await self.session.flush()
        except SQLAlchemyError as e:
            conflict = IdentityConflict(
                f"could not create customer external_id={external_id} email={email}: {e}"
            )
            logger.error(
                "Customer creation failed, leaving link for a later resync",
                store_id=store_id,
                external_id=external_id,
                email=email,
                error=str(e),
            )
            return IdentityResult.failed(conflict)

        logger.info(
            "Customer created",
            store_id=store_id,
            customer_id=customer.id,
            external_id=external_id,
        )
        return IdentityResult.linked(customer, created=True)
