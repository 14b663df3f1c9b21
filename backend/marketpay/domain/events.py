"""Typed provider events.

Normalizes raw Stripe webhook payloads into immutable dataclasses so the
reconciliation rules never touch untyped dicts. Pure: no I/O.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from marketpay.core.exceptions import PaymentError
from marketpay.domain.states import TransactionStatus


class EventType(StrEnum):
    """Stripe event types the reconciler acts on."""

    PAYMENT_METHOD_ATTACHED = "payment_method.attached"
    PAYMENT_METHOD_DETACHED = "payment_method.detached"
    PAYMENT_METHOD_UPDATED = "payment_method.updated"
    CUSTOMER_UPDATED = "customer.updated"
    PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
    PAYMENT_INTENT_FAILED = "payment_intent.payment_failed"
    PAYMENT_INTENT_CANCELED = "payment_intent.canceled"


_INTENT_OUTCOMES = {
    EventType.PAYMENT_INTENT_SUCCEEDED: TransactionStatus.SUCCEEDED,
    EventType.PAYMENT_INTENT_FAILED: TransactionStatus.FAILED,
    EventType.PAYMENT_INTENT_CANCELED: TransactionStatus.FAILED,
}


@dataclass(frozen=True)
class CardDetails:
    """Display fields of a stored instrument."""

    method_type: str = "card"
    brand: str | None = None
    last4: str | None = None
    exp_month: int | None = None
    exp_year: int | None = None


@dataclass(frozen=True, kw_only=True)
class ProviderEvent:
    event_id: str
    event_type: str
    customer_id: str | None = None
    # Owner id carried directly in the object's metadata, if any
    owner_hint: str | None = None
    payload: dict = field(default_factory=dict, compare=False, repr=False)

    @property
    def needs_owner(self) -> bool:
        return False


@dataclass(frozen=True, kw_only=True)
class PaymentMethodEvent(ProviderEvent):
    instrument_id: str
    card: CardDetails

    @property
    def needs_owner(self) -> bool:
        # Detach and refresh are keyed by instrument id alone
        return self.event_type == EventType.PAYMENT_METHOD_ATTACHED


@dataclass(frozen=True, kw_only=True)
class CustomerEvent(ProviderEvent):
    default_instrument_id: str | None = None
    deleted: bool = False

    @property
    def needs_owner(self) -> bool:
        return not self.deleted


@dataclass(frozen=True, kw_only=True)
class PaymentIntentEvent(ProviderEvent):
    intent_id: str
    amount: int
    currency: str
    outcome: TransactionStatus
    description: str | None = None

    @property
    def canceled(self) -> bool:
        return self.event_type == EventType.PAYMENT_INTENT_CANCELED

    @property
    def needs_owner(self) -> bool:
        return True


@dataclass(frozen=True, kw_only=True)
class UnhandledEvent(ProviderEvent):
    pass


def _id_of(value: Any) -> str | None:
    """Stripe references may be an id string or an expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value or None
    if isinstance(value, Mapping):
        ref = value.get("id")
        return ref if isinstance(ref, str) and ref else None
    return None


def _optional_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _card_details(obj: Mapping) -> CardDetails:
    card = obj.get("card") or {}
    return CardDetails(
        method_type=obj.get("type") or "card",
        brand=card.get("brand"),
        last4=card.get("last4"),
        exp_month=_optional_int(card.get("exp_month")),
        exp_year=_optional_int(card.get("exp_year")),
    )


def _owner_hint(obj: Mapping, owner_metadata_key: str) -> str | None:
    metadata = obj.get("metadata") or {}
    hint = metadata.get(owner_metadata_key)
    return hint if isinstance(hint, str) and hint else None


def _require_str(obj: Mapping, key: str, field_name: str) -> str:
    value = obj.get(key)
    if not isinstance(value, str) or not value:
        raise PaymentError.malformed_event(f"Event is missing '{field_name}'", field=field_name)
    return value


def parse_provider_event(raw: Mapping, owner_metadata_key: str = "user_id") -> ProviderEvent:
    """Normalize a Stripe event payload into a typed ProviderEvent.

    Raises:
        PaymentError(kind=malformed_event): id, type or data.object missing, or
        a handled event type lacks the fields its rule needs.
    """
    if not isinstance(raw, Mapping):
        raise PaymentError.malformed_event("Event payload must be an object")

    event_id = _require_str(raw, "id", "id")
    event_type = _require_str(raw, "type", "type")

    data = raw.get("data")
    obj = data.get("object") if isinstance(data, Mapping) else None
    if not isinstance(obj, Mapping):
        raise PaymentError.malformed_event("Event is missing 'data.object'", field="data.object")

    common = {
        "event_id": event_id,
        "event_type": event_type,
        "payload": dict(obj),
    }

    if event_type in (
        EventType.PAYMENT_METHOD_ATTACHED,
        EventType.PAYMENT_METHOD_DETACHED,
        EventType.PAYMENT_METHOD_UPDATED,
    ):
        return PaymentMethodEvent(
            **common,
            customer_id=_id_of(obj.get("customer")),
            owner_hint=_owner_hint(obj, owner_metadata_key),
            instrument_id=_require_str(obj, "id", "data.object.id"),
            card=_card_details(obj),
        )

    if event_type == EventType.CUSTOMER_UPDATED:
        invoice_settings = obj.get("invoice_settings") or {}
        return CustomerEvent(
            **common,
            customer_id=_require_str(obj, "id", "data.object.id"),
            owner_hint=_owner_hint(obj, owner_metadata_key),
            default_instrument_id=_id_of(invoice_settings.get("default_payment_method")),
            deleted=bool(obj.get("deleted", False)),
        )

    if event_type in _INTENT_OUTCOMES:
        amount = obj.get("amount")
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise PaymentError.malformed_event("Payment intent amount must be an integer", field="data.object.amount")
        currency = _require_str(obj, "currency", "data.object.currency")
        return PaymentIntentEvent(
            **common,
            customer_id=_id_of(obj.get("customer")),
            owner_hint=_owner_hint(obj, owner_metadata_key),
            intent_id=_require_str(obj, "id", "data.object.id"),
            amount=amount,
            currency=currency,
            outcome=_INTENT_OUTCOMES[EventType(event_type)],
            description=obj.get("description"),
        )

    return UnhandledEvent(**common, customer_id=_id_of(obj.get("customer")))
