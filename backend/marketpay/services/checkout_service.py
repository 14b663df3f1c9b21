"""CheckoutService: one-time plan purchases paid through a payment intent.

The purchase writes a pending Subscription keyed by the intent id. Activation
happens in the reconciler when ``payment_intent.succeeded`` arrives, or right
here if that webhook already landed before the pending row did. An owner holds
at most one unexpired active plan at a time.
"""

from datetime import UTC, datetime, timedelta

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketpay.core.exceptions import PaymentError
from marketpay.db.models.plan import Plan
from marketpay.db.models.subscription import Subscription
from marketpay.db.models.transaction import Transaction
from marketpay.domain.states import (
    BillingInterval,
    SubscriptionKind,
    SubscriptionStatus,
    TransactionStatus,
    is_expired,
)
from marketpay.schemas.payments import CommandAccepted
from marketpay.services.payment_store import PaymentStore, StoreChange
from marketpay.services.sync_service import PaymentSyncService

logger = structlog.get_logger(__name__)

PURCHASE_TYPE = "one_time_entitlement"


def entitlement_expiry(interval: str, start: datetime) -> datetime:
    """When a one-time entitlement bought at ``start`` lapses."""
    if interval == BillingInterval.MONTH:
        return start + timedelta(days=30)
    if interval == BillingInterval.YEAR:
        return start + timedelta(days=365)
    return start + timedelta(hours=24)


class CheckoutService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        sync: PaymentSyncService,
        store: PaymentStore | None = None,
    ):
        self.session_factory = session_factory
        self.sync = sync
        self.store = store or PaymentStore()

    async def list_plans(self) -> list[Plan]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Plan).where(Plan.is_active.is_(True)).order_by(Plan.price_amount)
            )
            return list(result.scalars().all())

    async def purchase_plan(
        self,
        owner_id: str,
        plan_id: str,
        instrument_id: str | None = None,
    ) -> CommandAccepted:
        """Start a plan purchase.

        Raises:
            PaymentError(kind=not_found): unknown or inactive plan
            PaymentError(kind=validation): owner already holds an unexpired plan
            PaymentError(kind=provider|timeout): provider call failed
        """
        now = datetime.now(UTC)
        async with self.session_factory() as session:
            plan = await session.get(Plan, plan_id)
            current = await self._current_subscription(session, owner_id, now, statuses=(SubscriptionStatus.ACTIVE,))
        if plan is None or not plan.is_active:
            raise PaymentError.not_found(f"Plan '{plan_id}' not found", field="plan_id")
        if current is not None:
            logger.info("plan_purchase_rejected_active", owner_id=owner_id, current_plan_id=current.plan_id)
            raise PaymentError.validation("Owner already has an active plan", field="plan_id")

        if instrument_id:
            await self.sync.require_owned_method(owner_id, instrument_id)

        customer_id = await self.sync.get_or_create_customer(owner_id)
        description = f"{plan.name} purchase"
        intent = await self.sync.provider.create_payment_intent(
            amount=plan.price_amount,
            currency=plan.price_currency,
            customer_id=customer_id,
            owner_id=owner_id,
            description=description,
            instrument_id=instrument_id,
            metadata={"plan_id": plan.id, "type": PURCHASE_TYPE},
        )

        changes: list[StoreChange] = []
        async with self.session_factory() as session:
            async with session.begin():
                # Transaction row first: a concurrent succeeded webhook settles the same
                # intent key, so one of the two waits for the other to commit
                if await self.store.insert_pending_transaction(
                    session, owner_id, intent.intent_id, plan.price_amount, plan.price_currency, description
                ):
                    pending = TransactionStatus.PENDING.value
                    changes.append(StoreChange(owner_id, Transaction.__tablename__, pending, intent.intent_id))
                await self.store.insert_pending_subscription(
                    session,
                    owner_id=owner_id,
                    plan_id=plan.id,
                    intent_id=intent.intent_id,
                    expires_at=entitlement_expiry(plan.billing_interval, now),
                    kind=SubscriptionKind.ONE_TIME,
                )
                # The succeeded webhook may have settled the intent before this row existed
                changes.extend(await self.store.activate_subscription(session, intent.intent_id, require_settled=True))

        if changes and self.sync.change_feed is not None:
            await self.sync.change_feed.publish_many(changes)

        logger.info("plan_purchase_started", owner_id=owner_id, plan_id=plan.id, intent_id=intent.intent_id)
        return CommandAccepted(intent_id=intent.intent_id, client_secret=intent.client_secret)

    async def cancel_plan(self, owner_id: str) -> CommandAccepted:
        """Cancel the owner's current plan.

        An unpaid purchase has its intent canceled at the provider; the
        ``payment_intent.canceled`` webhook then cancels the pending row. A paid
        plan is kept until it expires and is marked cancel-at-period-end.

        Raises:
            PaymentError(kind=not_found): no pending or unexpired active plan
            PaymentError(kind=provider|timeout): provider call failed
        """
        now = datetime.now(UTC)
        async with self.session_factory() as session:
            current = await self._current_subscription(
                session, owner_id, now, statuses=(SubscriptionStatus.ACTIVE, SubscriptionStatus.PENDING)
            )
        if current is None:
            raise PaymentError.not_found("No active plan found", field="plan_id")

        if current.status == SubscriptionStatus.PENDING:
            await self.sync.provider.cancel_payment_intent(current.provider_intent_id)
            logger.info("plan_purchase_cancel_requested", owner_id=owner_id, intent_id=current.provider_intent_id)
            return CommandAccepted(intent_id=current.provider_intent_id)

        async with self.session_factory() as session:
            async with session.begin():
                changes = await self.store.schedule_cancellation(session, owner_id, now)
        if changes and self.sync.change_feed is not None:
            await self.sync.change_feed.publish_many(changes)
        return CommandAccepted(status="cancel_at_period_end", intent_id=current.provider_intent_id)

    async def _current_subscription(
        self,
        session: AsyncSession,
        owner_id: str,
        now: datetime,
        statuses: tuple[SubscriptionStatus, ...],
    ) -> Subscription | None:
        """Newest subscription in one of ``statuses`` that has not expired."""
        result = await session.execute(
            select(Subscription)
            .where(Subscription.owner_id == owner_id, Subscription.status.in_([s.value for s in statuses]))
            .order_by(Subscription.created_at.desc())
        )
        for subscription in result.scalars():
            if not is_expired(subscription.expires_at, now):
                return subscription
        return None
