"""Per-request service construction.

Services hold no process-wide state of their own: each request builds them
from the shared session factory and Redis pool. Tests swap any piece through
``app.dependency_overrides``.
"""

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketpay.core.config import get_settings
from marketpay.db.base import get_session_factory
from marketpay.db.redis import get_redis
from marketpay.integrations.stripe_provider import StripeProvider
from marketpay.services.change_feed import ChangeFeed
from marketpay.services.checkout_service import CheckoutService
from marketpay.services.owner_resolver import OwnerResolver
from marketpay.services.reconciler import Reconciler
from marketpay.services.sync_service import PaymentSyncService


def get_db_session_factory() -> async_sessionmaker[AsyncSession]:
    return get_session_factory()


def get_provider() -> StripeProvider:
    return StripeProvider(get_settings())


def get_change_feed() -> ChangeFeed:
    return ChangeFeed(get_redis(), prefix=get_settings().change_feed_prefix)


def get_sync_service(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_db_session_factory),
    provider: StripeProvider = Depends(get_provider),
    change_feed: ChangeFeed = Depends(get_change_feed),
) -> PaymentSyncService:
    return PaymentSyncService(session_factory, provider, change_feed, settings=get_settings())


def get_checkout_service(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_db_session_factory),
    sync: PaymentSyncService = Depends(get_sync_service),
) -> CheckoutService:
    return CheckoutService(session_factory, sync)


def get_reconciler(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_db_session_factory),
    provider: StripeProvider = Depends(get_provider),
    change_feed: ChangeFeed = Depends(get_change_feed),
) -> Reconciler:
    key = get_settings().customer_owner_metadata_key
    resolver = OwnerResolver(session_factory, provider, owner_metadata_key=key)
    return Reconciler(session_factory, resolver, change_feed, owner_metadata_key=key)
