"""Reconciler: applies provider webhook events to the payment tables.

Flow per event:
1. parse the raw payload into a typed event
2. short-circuit if the ledger already holds the event id
3. resolve the owner when the event type needs one (may call the provider)
4. in ONE transaction: admit the event id, then apply its effects or
   dead-letter it when the owner could not be resolved
5. after commit, publish change notifications and business metrics

Any exception in step 4 rolls back the admission too, so the provider's
retry is processed from scratch.
"""

from dataclasses import dataclass, field
from enum import StrEnum

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketpay.core.logging import bind_provider_event
from marketpay.db.base import dialect_insert
from marketpay.db.models.subscription import Subscription
from marketpay.db.models.transaction import Transaction
from marketpay.db.models.unresolved_event import UnresolvedEvent
from marketpay.domain.events import ProviderEvent, parse_provider_event
from marketpay.domain.reconciliation import plan_effects
from marketpay.domain.states import TransactionStatus
from marketpay.metrics.cloudwatch import (
    PAYMENT_FAILED,
    PAYMENT_SUCCEEDED,
    PLAN_ACTIVATED,
    UNRESOLVED_PROVIDER_EVENT,
    emit_business_event,
)
from marketpay.services.change_feed import ChangeFeed
from marketpay.services.event_ledger import EventLedger
from marketpay.services.owner_resolver import OwnerResolver
from marketpay.services.payment_store import PaymentStore, StoreChange

logger = structlog.get_logger(__name__)


class ReconcileStatus(StrEnum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    UNRESOLVED = "unresolved"


@dataclass(frozen=True)
class ReconcileOutcome:
    status: ReconcileStatus
    event_id: str
    event_type: str
    owner_id: str | None = None
    changes: list[StoreChange] = field(default_factory=list)


class Reconciler:
    """Processes one provider event at a time; safe to run on many instances."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        resolver: OwnerResolver,
        change_feed: ChangeFeed | None = None,
        ledger: EventLedger | None = None,
        store: PaymentStore | None = None,
        owner_metadata_key: str = "user_id",
    ):
        self.session_factory = session_factory
        self.resolver = resolver
        self.change_feed = change_feed
        self.ledger = ledger or EventLedger(session_factory)
        self.store = store or PaymentStore()
        self.owner_metadata_key = owner_metadata_key

    async def process(self, raw_event: dict) -> ReconcileOutcome:
        """Reconcile one raw provider event.

        Raises:
            PaymentError(kind=malformed_event): payload cannot be parsed
            PaymentError(kind=provider|timeout): owner lookup failed; retryable
        """
        event = parse_provider_event(raw_event, self.owner_metadata_key)
        with bind_provider_event(event.event_id, event.event_type):
            return await self._reconcile(event)

    async def _reconcile(self, event: ProviderEvent) -> ReconcileOutcome:
        if await self.ledger.is_processed(event.event_id):
            logger.info("stripe_duplicate_event_ignored")
            return ReconcileOutcome(ReconcileStatus.DUPLICATE, event.event_id, event.event_type)

        owner_id = await self.resolver.resolve(event) if event.needs_owner else None

        changes: list[StoreChange] = []
        async with self.session_factory() as session:
            async with session.begin():
                if not await self.ledger.admit(session, event.event_id, event.event_type):
                    # Lost the race to a concurrent delivery of the same event
                    logger.info("stripe_duplicate_event_ignored", concurrent=True)
                    return ReconcileOutcome(ReconcileStatus.DUPLICATE, event.event_id, event.event_type)

                if event.needs_owner and owner_id is None:
                    await self._dead_letter(session, event, "owner could not be resolved")
                    status = ReconcileStatus.UNRESOLVED
                else:
                    effects = plan_effects(event, owner_id)
                    changes = await self.store.apply(session, effects)
                    status = ReconcileStatus.APPLIED if effects else ReconcileStatus.IGNORED

        logger.info("stripe_event_reconciled", status=status.value, owner_id=owner_id, changes=len(changes))

        if status == ReconcileStatus.UNRESOLVED:
            await emit_business_event(UNRESOLVED_PROVIDER_EVENT)
        if changes:
            if self.change_feed is not None:
                await self.change_feed.publish_many(changes)
            await self._emit_metrics(changes)

        return ReconcileOutcome(status, event.event_id, event.event_type, owner_id, changes)

    async def _dead_letter(self, session: AsyncSession, event: ProviderEvent, reason: str) -> None:
        logger.warning(
            "stripe_event_unresolved_owner",
            customer_id=event.customer_id,
        )
        stmt = (
            dialect_insert(session, UnresolvedEvent)
            .values(
                provider_event_id=event.event_id,
                event_type=event.event_type,
                customer_ref=event.customer_id,
                reason=reason,
                payload=event.payload,
            )
            .on_conflict_do_nothing(index_elements=["provider_event_id"])
        )
        await session.execute(stmt)

    async def _emit_metrics(self, changes: list[StoreChange]) -> None:
        for change in changes:
            if change.table == Transaction.__tablename__:
                if change.operation == TransactionStatus.SUCCEEDED.value:
                    await emit_business_event(PAYMENT_SUCCEEDED, user_id=change.owner_id)
                elif change.operation == TransactionStatus.FAILED.value:
                    await emit_business_event(PAYMENT_FAILED, user_id=change.owner_id)
            elif change.table == Subscription.__tablename__ and change.operation == "activate":
                await emit_business_event(PLAN_ACTIVATED, user_id=change.owner_id)
