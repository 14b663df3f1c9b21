"""PaymentStore: applies reconciliation effects as conditional writes.

Each effect maps to a single conditional statement (or a fixed pair inside the
caller's transaction) keyed by a natural provider id. Nothing here reads a row
and then writes based on what it read, so two handler instances applying the
same effects concurrently cannot interleave into a wrong state.
"""

import uuid
from dataclasses import asdict, dataclass
from datetime import UTC, datetime

import structlog
from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from marketpay.db.base import dialect_insert
from marketpay.db.models.billing_profile import BillingProfile
from marketpay.db.models.payment_method import PaymentMethod
from marketpay.db.models.subscription import Subscription
from marketpay.db.models.transaction import Transaction
from marketpay.domain.reconciliation import (
    ActivateSubscription,
    AttachPaymentMethod,
    CancelSubscription,
    DetachPaymentMethod,
    Effect,
    ReassignDefault,
    RefreshPaymentMethod,
    SettleTransaction,
)
from marketpay.domain.states import SubscriptionKind, SubscriptionStatus, TransactionStatus

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class StoreChange:
    """A committed row-level change, published to the owner's change feed."""

    owner_id: str
    table: str
    operation: str
    key: str

    def to_message(self) -> dict:
        return asdict(self)


class PaymentStore:
    """Conditional writers for payment methods, transactions and subscriptions.

    All methods take the caller's session and never commit: the caller owns
    the transaction boundary (see Reconciler.process).
    """

    async def apply(self, session: AsyncSession, effects: list[Effect]) -> list[StoreChange]:
        """Apply effects in order and return the changes that touched a row."""
        changes: list[StoreChange] = []
        for effect in effects:
            changes.extend(await self._apply_one(session, effect))
        return changes

    async def _apply_one(self, session: AsyncSession, effect: Effect) -> list[StoreChange]:
        if isinstance(effect, AttachPaymentMethod):
            return await self.attach_payment_method(session, effect)
        if isinstance(effect, DetachPaymentMethod):
            return await self.detach_payment_method(session, effect)
        if isinstance(effect, RefreshPaymentMethod):
            return await self.refresh_payment_method(session, effect)
        if isinstance(effect, ReassignDefault):
            return await self.reassign_default(session, effect)
        if isinstance(effect, ActivateSubscription):
            return await self.activate_subscription(session, effect.intent_id)
        if isinstance(effect, CancelSubscription):
            return await self.cancel_subscription(session, effect.intent_id)
        if isinstance(effect, SettleTransaction):
            return await self.settle_transaction(session, effect)
        raise TypeError(f"Unsupported effect: {effect!r}")

    # ── Payment methods ─────────────────────────────────────────────

    async def attach_payment_method(self, session: AsyncSession, effect: AttachPaymentMethod) -> list[StoreChange]:
        """Insert-if-absent; the owner's first method becomes the default."""
        existing = aliased(PaymentMethod)
        has_methods = select(existing.id).where(existing.owner_id == effect.owner_id).exists()

        stmt = (
            dialect_insert(session, PaymentMethod)
            .values(
                id=str(uuid.uuid4()),
                owner_id=effect.owner_id,
                provider_instrument_id=effect.instrument_id,
                method_type=effect.card.method_type,
                brand=effect.card.brand,
                last4=effect.card.last4,
                exp_month=effect.card.exp_month,
                exp_year=effect.card.exp_year,
                is_default=~has_methods,
            )
            .on_conflict_do_nothing(index_elements=["provider_instrument_id"])
        )
        result = await session.execute(stmt)
        if result.rowcount == 0:
            logger.info("payment_method_already_attached", instrument_id=effect.instrument_id)
            return []

        logger.info("payment_method_attached", instrument_id=effect.instrument_id, owner_id=effect.owner_id)
        return [StoreChange(effect.owner_id, PaymentMethod.__tablename__, "insert", effect.instrument_id)]

    async def detach_payment_method(self, session: AsyncSession, effect: DetachPaymentMethod) -> list[StoreChange]:
        """Delete-if-present; absence is not an error."""
        stmt = (
            delete(PaymentMethod)
            .where(PaymentMethod.provider_instrument_id == effect.instrument_id)
            .returning(PaymentMethod.owner_id)
            .execution_options(synchronize_session=False)
        )
        owners = (await session.execute(stmt)).scalars().all()
        if not owners:
            logger.info("payment_method_detach_noop", instrument_id=effect.instrument_id)
            return []

        logger.info("payment_method_detached", instrument_id=effect.instrument_id, owner_id=owners[0])
        return [StoreChange(owner, PaymentMethod.__tablename__, "delete", effect.instrument_id) for owner in owners]

    async def refresh_payment_method(self, session: AsyncSession, effect: RefreshPaymentMethod) -> list[StoreChange]:
        """Overwrite card display fields on the matching row, if any."""
        stmt = (
            update(PaymentMethod)
            .where(PaymentMethod.provider_instrument_id == effect.instrument_id)
            .values(
                method_type=effect.card.method_type,
                brand=effect.card.brand,
                last4=effect.card.last4,
                exp_month=effect.card.exp_month,
                exp_year=effect.card.exp_year,
                updated_at=datetime.now(UTC),
            )
            .returning(PaymentMethod.owner_id)
            .execution_options(synchronize_session=False)
        )
        owners = (await session.execute(stmt)).scalars().all()
        if not owners:
            logger.warning("payment_method_update_unmatched", instrument_id=effect.instrument_id)
            return []

        return [StoreChange(owner, PaymentMethod.__tablename__, "update", effect.instrument_id) for owner in owners]

    async def reassign_default(self, session: AsyncSession, effect: ReassignDefault) -> list[StoreChange]:
        """Clear every default for the owner, then mark the named instrument.

        Both statements run in the caller's transaction, so readers never see
        the cleared-but-not-yet-set intermediate state.
        """
        now = datetime.now(UTC)
        await session.execute(
            update(PaymentMethod)
            .where(PaymentMethod.owner_id == effect.owner_id, PaymentMethod.is_default.is_(True))
            .values(is_default=False, updated_at=now)
            .execution_options(synchronize_session=False)
        )

        if effect.instrument_id:
            result = await session.execute(
                update(PaymentMethod)
                .where(
                    PaymentMethod.owner_id == effect.owner_id,
                    PaymentMethod.provider_instrument_id == effect.instrument_id,
                )
                .values(is_default=True, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                # Default points at an instrument not synced yet; a later attach realigns it
                logger.warning(
                    "default_payment_method_not_synced",
                    owner_id=effect.owner_id,
                    instrument_id=effect.instrument_id,
                )
        else:
            logger.info("default_payment_method_cleared", owner_id=effect.owner_id)

        return [
            StoreChange(effect.owner_id, PaymentMethod.__tablename__, "default", effect.instrument_id or "")
        ]

    # ── Subscriptions ───────────────────────────────────────────────

    async def activate_subscription(
        self,
        session: AsyncSession,
        intent_id: str,
        require_settled: bool = False,
    ) -> list[StoreChange]:
        """Transition pending -> active for the subscription paid by intent_id.

        The status guard makes this happen at most once. One-time purchases
        also update the owner's entitlement snapshot.

        Args:
            require_settled: only transition if a succeeded Transaction for the
                intent already exists (used by checkout when the intent settled
                before the pending row was written)
        """
        now = datetime.now(UTC)
        conditions = [
            Subscription.provider_intent_id == intent_id,
            Subscription.status == SubscriptionStatus.PENDING.value,
        ]
        if require_settled:
            conditions.append(
                select(Transaction.id)
                .where(
                    Transaction.provider_intent_id == intent_id,
                    Transaction.status == TransactionStatus.SUCCEEDED.value,
                )
                .exists()
            )

        stmt = (
            update(Subscription)
            .where(and_(*conditions))
            .values(status=SubscriptionStatus.ACTIVE.value, activated_at=now, updated_at=now)
            .returning(Subscription.owner_id, Subscription.plan_id, Subscription.kind, Subscription.expires_at)
            .execution_options(synchronize_session=False)
        )
        rows = (await session.execute(stmt)).all()

        changes: list[StoreChange] = []
        for owner_id, plan_id, kind, expires_at in rows:
            logger.info("subscription_activated", owner_id=owner_id, plan_id=plan_id, intent_id=intent_id)
            changes.append(StoreChange(owner_id, Subscription.__tablename__, "activate", intent_id))
            if kind == SubscriptionKind.ONE_TIME.value:
                await self._record_entitlement(session, owner_id, plan_id, expires_at, now)
        return changes

    async def cancel_subscription(self, session: AsyncSession, intent_id: str) -> list[StoreChange]:
        """Transition pending -> cancelled when the paying intent is canceled."""
        now = datetime.now(UTC)
        stmt = (
            update(Subscription)
            .where(
                Subscription.provider_intent_id == intent_id,
                Subscription.status == SubscriptionStatus.PENDING.value,
            )
            .values(status=SubscriptionStatus.CANCELLED.value, updated_at=now)
            .returning(Subscription.owner_id)
            .execution_options(synchronize_session=False)
        )
        owners = (await session.execute(stmt)).scalars().all()
        return [StoreChange(owner, Subscription.__tablename__, "cancel", intent_id) for owner in owners]

    async def schedule_cancellation(self, session: AsyncSession, owner_id: str, now: datetime) -> list[StoreChange]:
        """Mark the owner's unexpired active subscriptions to end at their expiry."""
        stmt = (
            update(Subscription)
            .where(
                Subscription.owner_id == owner_id,
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                Subscription.cancel_at_period_end.is_(False),
                or_(Subscription.expires_at.is_(None), Subscription.expires_at > now),
            )
            .values(cancel_at_period_end=True, updated_at=now)
            .returning(Subscription.provider_intent_id)
            .execution_options(synchronize_session=False)
        )
        intents = (await session.execute(stmt)).scalars().all()
        for intent_id in intents:
            logger.info("subscription_cancel_scheduled", owner_id=owner_id, intent_id=intent_id)
        return [
            StoreChange(owner_id, Subscription.__tablename__, "cancel_at_period_end", intent_id or "")
            for intent_id in intents
        ]

    async def insert_pending_subscription(
        self,
        session: AsyncSession,
        owner_id: str,
        plan_id: str,
        intent_id: str,
        expires_at: datetime | None,
        kind: SubscriptionKind = SubscriptionKind.ONE_TIME,
    ) -> bool:
        stmt = (
            dialect_insert(session, Subscription)
            .values(
                id=str(uuid.uuid4()),
                owner_id=owner_id,
                plan_id=plan_id,
                kind=kind.value,
                status=SubscriptionStatus.PENDING.value,
                provider_intent_id=intent_id,
                expires_at=expires_at,
            )
            .on_conflict_do_nothing(index_elements=["provider_intent_id"])
        )
        result = await session.execute(stmt)
        return result.rowcount == 1

    async def _record_entitlement(
        self,
        session: AsyncSession,
        owner_id: str,
        plan_id: str,
        expires_at: datetime | None,
        now: datetime,
    ) -> None:
        stmt = dialect_insert(session, BillingProfile).values(
            owner_id=owner_id,
            current_plan_id=plan_id,
            subscription_status=SubscriptionStatus.ACTIVE.value,
            entitlement_expires_at=expires_at,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["owner_id"],
            set_={
                "current_plan_id": stmt.excluded.current_plan_id,
                "subscription_status": stmt.excluded.subscription_status,
                "entitlement_expires_at": stmt.excluded.entitlement_expires_at,
                "updated_at": now,
            },
        )
        await session.execute(stmt)

    # ── Transactions ────────────────────────────────────────────────

    async def settle_transaction(self, session: AsyncSession, effect: SettleTransaction) -> list[StoreChange]:
        """Upsert the terminal status for an intent.

        Inserts when the provider event outraces (or replaces) the client's
        speculative row. A succeeded row is never downgraded, and re-applying
        the same status touches nothing.
        """
        stmt = dialect_insert(session, Transaction).values(
            id=str(uuid.uuid4()),
            owner_id=effect.owner_id,
            provider_intent_id=effect.intent_id,
            amount=effect.amount,
            currency=effect.currency,
            status=effect.status.value,
            description=effect.description,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["provider_intent_id"],
            set_={
                "status": stmt.excluded.status,
                "description": func.coalesce(Transaction.description, stmt.excluded.description),
                "updated_at": datetime.now(UTC),
            },
            where=and_(
                Transaction.status != TransactionStatus.SUCCEEDED.value,
                Transaction.status != stmt.excluded.status,
            ),
        )
        result = await session.execute(stmt)
        if result.rowcount == 0:
            logger.info("transaction_status_unchanged", intent_id=effect.intent_id, status=effect.status.value)
            return []

        logger.info("transaction_settled", intent_id=effect.intent_id, status=effect.status.value)
        return [StoreChange(effect.owner_id, Transaction.__tablename__, effect.status.value, effect.intent_id)]

    async def insert_pending_transaction(
        self,
        session: AsyncSession,
        owner_id: str,
        intent_id: str,
        amount: int,
        currency: str,
        description: str | None = None,
    ) -> bool:
        """Speculative pending row; a row already written by the reconciler wins."""
        stmt = (
            dialect_insert(session, Transaction)
            .values(
                id=str(uuid.uuid4()),
                owner_id=owner_id,
                provider_intent_id=intent_id,
                amount=amount,
                currency=currency,
                status=TransactionStatus.PENDING.value,
                description=description,
            )
            .on_conflict_do_nothing(index_elements=["provider_intent_id"])
        )
        result = await session.execute(stmt)
        return result.rowcount == 1
