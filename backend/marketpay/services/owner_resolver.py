"""OwnerResolver: maps a provider event to the local owner it belongs to."""

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketpay.core.exceptions import ErrorKind, PaymentError
from marketpay.db.models.billing_profile import BillingProfile
from marketpay.domain.events import ProviderEvent
from marketpay.integrations.stripe_provider import StripeProvider

logger = structlog.get_logger(__name__)


class OwnerResolver:
    """Resolution order, first hit wins:

    1. owner id carried in the event object's metadata
    2. local BillingProfile mapping for the provider customer
    3. the provider customer's metadata (one provider call)

    Returns None when none of these yield an owner, including a customer the
    provider no longer knows. Other provider failures propagate: they are
    transient and the event must be retried.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        provider: StripeProvider | None = None,
        owner_metadata_key: str = "user_id",
    ):
        self.session_factory = session_factory
        self.provider = provider
        self.owner_metadata_key = owner_metadata_key

    async def resolve(self, event: ProviderEvent) -> str | None:
        if event.owner_hint:
            return event.owner_hint
        if not event.customer_id:
            return None

        owner_id = await self.owner_for_customer(event.customer_id)
        if owner_id:
            return owner_id

        if self.provider is None:
            return None
        return await self._owner_from_provider(event.customer_id)

    async def owner_for_customer(self, customer_id: str) -> str | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(BillingProfile.owner_id).where(BillingProfile.provider_customer_id == customer_id)
            )
            return result.scalar_one_or_none()

    async def _owner_from_provider(self, customer_id: str) -> str | None:
        try:
            customer = await self.provider.retrieve_customer(customer_id)
        except PaymentError as exc:
            if exc.kind != ErrorKind.UNRESOLVED_REFERENCE:
                raise
            logger.info("provider_customer_unknown", customer_id=customer_id)
            return None
        if customer is None:
            logger.info("provider_customer_deleted", customer_id=customer_id)
            return None

        metadata = customer.get("metadata") or {}
        owner_id = metadata.get(self.owner_metadata_key)
        if not owner_id:
            logger.info("provider_customer_missing_owner", customer_id=customer_id, key=self.owner_metadata_key)
            return None
        return owner_id
