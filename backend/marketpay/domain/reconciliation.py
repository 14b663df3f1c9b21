"""Payment-state reconciliation rules.

Pure domain functions that turn one provider event (plus its resolved owner)
into the list of store effects it implies. No DB access, fully deterministic.

Every effect is designed to be applied as a conditional write keyed by a
natural provider id, so applying the same list twice, or applying the lists of
two events in either order, converges on the same stored state:

- AttachPaymentMethod: insert-if-absent; default only when the owner has none
- DetachPaymentMethod: delete-if-present
- RefreshPaymentMethod: update-if-present
- ReassignDefault: clear all defaults for the owner, then set one (same transaction)
- ActivateSubscription / CancelSubscription: transition only from pending
- SettleTransaction: upsert by intent id; succeeded is never downgraded
"""

from dataclasses import dataclass

from marketpay.domain.events import (
    CardDetails,
    CustomerEvent,
    EventType,
    PaymentIntentEvent,
    PaymentMethodEvent,
    ProviderEvent,
)
from marketpay.domain.states import TransactionStatus


@dataclass(frozen=True)
class AttachPaymentMethod:
    owner_id: str
    instrument_id: str
    card: CardDetails


@dataclass(frozen=True)
class DetachPaymentMethod:
    instrument_id: str


@dataclass(frozen=True)
class RefreshPaymentMethod:
    instrument_id: str
    card: CardDetails


@dataclass(frozen=True)
class ReassignDefault:
    owner_id: str
    instrument_id: str | None


@dataclass(frozen=True)
class ActivateSubscription:
    intent_id: str


@dataclass(frozen=True)
class CancelSubscription:
    intent_id: str


@dataclass(frozen=True)
class SettleTransaction:
    owner_id: str
    intent_id: str
    status: TransactionStatus
    amount: int
    currency: str
    description: str | None = None


Effect = (
    AttachPaymentMethod
    | DetachPaymentMethod
    | RefreshPaymentMethod
    | ReassignDefault
    | ActivateSubscription
    | CancelSubscription
    | SettleTransaction
)


def plan_effects(event: ProviderEvent, owner_id: str | None) -> list[Effect]:
    """Return the store effects implied by a provider event.

    Args:
        event: Parsed provider event
        owner_id: Local owner resolved for the event (None when the event
            type does not need one)

    Returns:
        Ordered list of effects; empty for unhandled or no-op events

    Raises:
        ValueError: the event needs an owner and none was supplied
    """
    if event.needs_owner and not owner_id:
        raise ValueError(f"{event.event_type} requires a resolved owner")

    if isinstance(event, PaymentMethodEvent):
        if event.event_type == EventType.PAYMENT_METHOD_ATTACHED:
            return [AttachPaymentMethod(owner_id=owner_id, instrument_id=event.instrument_id, card=event.card)]
        if event.event_type == EventType.PAYMENT_METHOD_DETACHED:
            return [DetachPaymentMethod(instrument_id=event.instrument_id)]
        return [RefreshPaymentMethod(instrument_id=event.instrument_id, card=event.card)]

    if isinstance(event, CustomerEvent):
        if event.deleted:
            return []
        return [ReassignDefault(owner_id=owner_id, instrument_id=event.default_instrument_id)]

    if isinstance(event, PaymentIntentEvent):
        # Settle first: the transaction row's unique key serializes this with a concurrent checkout
        effects: list[Effect] = [
            SettleTransaction(
                owner_id=owner_id,
                intent_id=event.intent_id,
                status=event.outcome,
                amount=event.amount,
                currency=event.currency,
                description=event.description,
            )
        ]
        if event.outcome == TransactionStatus.SUCCEEDED:
            effects.append(ActivateSubscription(intent_id=event.intent_id))
        elif event.canceled:
            effects.append(CancelSubscription(intent_id=event.intent_id))
        return effects

    return []
