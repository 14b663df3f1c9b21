"""PaymentSyncService: client-facing reads and outbound payment commands.

Reads:
- load(): consistent snapshot of one owner's payment tables
- observe(): PaymentStateObserver fed by the change feed

Commands call the provider synchronously, bounded by the provider timeout and
never retried. They do not write reconciled state: the resulting webhook does.
The only local write is a speculative pending Transaction after a charge the
provider accepted.
"""

import asyncio
import re
from datetime import UTC, datetime

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketpay.core.config import Settings, get_settings
from marketpay.core.exceptions import ErrorKind, PaymentError
from marketpay.db.base import dialect_insert
from marketpay.db.models.billing_profile import BillingProfile
from marketpay.db.models.payment_method import PaymentMethod
from marketpay.db.models.subscription import Subscription
from marketpay.db.models.transaction import Transaction
from marketpay.domain.states import (
    TERMINAL_TRANSACTION_STATUSES,
    SubscriptionStatus,
    TransactionStatus,
    is_expired,
)
from marketpay.integrations.stripe_provider import StripeProvider
from marketpay.schemas.payments import (
    CommandAccepted,
    EntitlementView,
    PaymentMethodView,
    PaymentSnapshot,
    SubscriptionView,
    TransactionView,
)
from marketpay.services.change_feed import ChangeFeed
from marketpay.services.observer import PaymentStateObserver
from marketpay.services.payment_store import PaymentStore, StoreChange

logger = structlog.get_logger(__name__)

SNAPSHOT_TRANSACTION_LIMIT = 50

_CURRENCY_RE = re.compile(r"^[a-z]{3}$")


def validate_charge(amount: int, currency: str) -> str:
    """Check charge input; return the normalized currency code."""
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise PaymentError.validation("Amount must be a positive integer of minor units", field="amount")
    normalized = (currency or "").lower()
    if not _CURRENCY_RE.match(normalized):
        raise PaymentError.validation("Currency must be a 3-letter ISO code", field="currency")
    return normalized


def entitlement_view(profile: BillingProfile | None, now: datetime | None = None) -> EntitlementView | None:
    """Project the stored entitlement snapshot, reading a lapsed plan as expired."""
    if profile is None:
        return None
    now = now or datetime.now(UTC)
    status = profile.subscription_status
    if status == SubscriptionStatus.ACTIVE and is_expired(profile.entitlement_expires_at, now):
        status = SubscriptionStatus.EXPIRED.value
    return EntitlementView(
        current_plan_id=profile.current_plan_id,
        subscription_status=status,
        expires_at=profile.entitlement_expires_at,
        active=status == SubscriptionStatus.ACTIVE,
    )


class PaymentSyncService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        provider: StripeProvider,
        change_feed: ChangeFeed | None = None,
        store: PaymentStore | None = None,
        settings: Settings | None = None,
    ):
        self.session_factory = session_factory
        self.provider = provider
        self.change_feed = change_feed
        self.store = store or PaymentStore()
        self.settings = settings or get_settings()

    # ── Reads ───────────────────────────────────────────────────────

    async def load(self, owner_id: str) -> PaymentSnapshot:
        """Read methods, recent transactions, latest subscription and entitlement.

        On PostgreSQL all reads share one REPEATABLE READ transaction, so the
        snapshot never shows half of a reconciler write.
        """
        async with self.session_factory() as session:
            if session.get_bind().dialect.name == "postgresql":
                await session.connection(execution_options={"isolation_level": "REPEATABLE READ"})

            methods = (
                await session.execute(
                    select(PaymentMethod)
                    .where(PaymentMethod.owner_id == owner_id)
                    .order_by(PaymentMethod.created_at, PaymentMethod.id)
                )
            ).scalars().all()

            transactions = (
                await session.execute(
                    select(Transaction)
                    .where(Transaction.owner_id == owner_id)
                    .order_by(Transaction.created_at.desc(), Transaction.id)
                    .limit(SNAPSHOT_TRANSACTION_LIMIT)
                )
            ).scalars().all()

            subscription = (
                await session.execute(
                    select(Subscription)
                    .where(Subscription.owner_id == owner_id)
                    .order_by(Subscription.created_at.desc())
                    .limit(1)
                )
            ).scalar_one_or_none()

            profile = await session.get(BillingProfile, owner_id)

        return PaymentSnapshot(
            owner_id=owner_id,
            payment_methods=[PaymentMethodView.model_validate(m) for m in methods],
            transactions=[TransactionView.model_validate(t) for t in transactions],
            subscription=SubscriptionView.model_validate(subscription) if subscription else None,
            entitlement=entitlement_view(profile),
        )

    async def entitlement(self, owner_id: str) -> EntitlementView | None:
        """Current plan entitlement only; cheaper than a full snapshot."""
        async with self.session_factory() as session:
            profile = await session.get(BillingProfile, owner_id)
        return entitlement_view(profile)

    def observe(self, owner_id: str) -> PaymentStateObserver:
        return PaymentStateObserver(
            owner_id,
            loader=self.load,
            change_feed=self.change_feed,
            refresh_seconds=self.settings.observer_refresh_seconds,
        )

    async def wait_for_settlement(
        self,
        owner_id: str,
        intent_id: str,
        timeout: float | None = None,
    ) -> TransactionView:
        """Wait until the intent's Transaction reaches a terminal status.

        Raises:
            PaymentError(kind=timeout): not settled within ``timeout`` seconds
        """
        timeout = timeout if timeout is not None else self.settings.settlement_timeout_seconds
        async with self.observe(owner_id) as observer:
            try:
                async with asyncio.timeout(timeout):
                    async for snapshot in observer.updates():
                        tx = snapshot.transaction(intent_id)
                        if tx is not None and tx.status in TERMINAL_TRANSACTION_STATUSES:
                            return tx
            except TimeoutError:
                logger.info("settlement_wait_timeout", owner_id=owner_id, intent_id=intent_id, timeout=timeout)
                raise PaymentError(
                    ErrorKind.TIMEOUT,
                    f"Payment {intent_id} did not settle within {timeout:g}s",
                    field="intent_id",
                )

    # ── Customer mapping ────────────────────────────────────────────

    async def get_or_create_customer(self, owner_id: str) -> str:
        """Return the owner's provider customer id, creating the customer if needed.

        Two concurrent first calls may each create a provider customer; the
        conditional upsert keeps whichever mapping landed first and both
        callers return it.
        """
        async with self.session_factory() as session:
            existing = (
                await session.execute(
                    select(BillingProfile.provider_customer_id).where(BillingProfile.owner_id == owner_id)
                )
            ).scalar_one_or_none()
        if existing:
            return existing

        customer_id = await self.provider.create_customer(owner_id)

        async with self.session_factory() as session:
            stmt = dialect_insert(session, BillingProfile).values(
                owner_id=owner_id,
                provider_customer_id=customer_id,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["owner_id"],
                set_={"provider_customer_id": stmt.excluded.provider_customer_id},
                where=BillingProfile.provider_customer_id.is_(None),
            )
            await session.execute(stmt)
            await session.commit()

            winner = (
                await session.execute(
                    select(BillingProfile.provider_customer_id).where(BillingProfile.owner_id == owner_id)
                )
            ).scalar_one()

        if winner != customer_id:
            logger.warning("provider_customer_race_lost", owner_id=owner_id, orphan_customer_id=customer_id)
        else:
            logger.info("provider_customer_created", owner_id=owner_id, customer_id=customer_id)
        return winner

    async def require_owned_method(self, owner_id: str, instrument_id: str) -> None:
        async with self.session_factory() as session:
            found = (
                await session.execute(
                    select(PaymentMethod.id).where(
                        PaymentMethod.owner_id == owner_id,
                        PaymentMethod.provider_instrument_id == instrument_id,
                    )
                )
            ).scalar_one_or_none()
        if found is None:
            raise PaymentError.not_found("Payment method not found", field="instrument_id")

    # ── Commands ────────────────────────────────────────────────────

    async def request_attach(self, owner_id: str, instrument_id: str) -> CommandAccepted:
        if not instrument_id:
            raise PaymentError.validation("Payment method id is required", field="instrument_id")
        customer_id = await self.get_or_create_customer(owner_id)
        await self.provider.attach_payment_method(instrument_id, customer_id)
        logger.info("attach_requested", owner_id=owner_id, instrument_id=instrument_id)
        return CommandAccepted(instrument_id=instrument_id)

    async def request_detach(self, owner_id: str, instrument_id: str) -> CommandAccepted:
        await self.require_owned_method(owner_id, instrument_id)
        await self.provider.detach_payment_method(instrument_id)
        logger.info("detach_requested", owner_id=owner_id, instrument_id=instrument_id)
        return CommandAccepted(instrument_id=instrument_id)

    async def request_set_default(self, owner_id: str, instrument_id: str) -> CommandAccepted:
        await self.require_owned_method(owner_id, instrument_id)
        customer_id = await self.get_or_create_customer(owner_id)
        await self.provider.set_default_payment_method(customer_id, instrument_id)
        logger.info("set_default_requested", owner_id=owner_id, instrument_id=instrument_id)
        return CommandAccepted(instrument_id=instrument_id)

    async def request_charge(
        self,
        owner_id: str,
        amount: int,
        currency: str = "usd",
        description: str | None = None,
        instrument_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> CommandAccepted:
        """Create a payment intent and record it as pending.

        Raises:
            PaymentError(kind=validation): bad amount or currency
            PaymentError(kind=not_found): instrument does not belong to owner
            PaymentError(kind=provider|timeout): provider call failed
        """
        currency = validate_charge(amount, currency)
        if instrument_id:
            await self.require_owned_method(owner_id, instrument_id)

        customer_id = await self.get_or_create_customer(owner_id)
        intent = await self.provider.create_payment_intent(
            amount=amount,
            currency=currency,
            customer_id=customer_id,
            owner_id=owner_id,
            description=description,
            instrument_id=instrument_id,
            idempotency_key=idempotency_key,
        )

        await self.record_pending_transaction(owner_id, intent.intent_id, amount, currency, description)
        logger.info("charge_requested", owner_id=owner_id, intent_id=intent.intent_id, amount=amount, currency=currency)
        return CommandAccepted(intent_id=intent.intent_id, client_secret=intent.client_secret)

    async def record_pending_transaction(
        self,
        owner_id: str,
        intent_id: str,
        amount: int,
        currency: str,
        description: str | None = None,
    ) -> bool:
        """Insert the speculative pending row; a settled row already present wins."""
        async with self.session_factory() as session:
            inserted = await self.store.insert_pending_transaction(
                session, owner_id, intent_id, amount, currency, description
            )
            await session.commit()

        if inserted and self.change_feed is not None:
            await self.change_feed.publish(
                StoreChange(owner_id, Transaction.__tablename__, TransactionStatus.PENDING.value, intent_id)
            )
        return inserted
