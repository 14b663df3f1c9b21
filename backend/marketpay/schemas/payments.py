"""Pydantic schemas for the payment sync API.

Snapshot models read straight from ORM rows (``from_attributes``); command
models validate client input before anything reaches the provider.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ==================== SNAPSHOT ====================


class PaymentMethodView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    provider_instrument_id: str
    method_type: str
    brand: str | None = None
    last4: str | None = None
    exp_month: int | None = None
    exp_year: int | None = None
    is_default: bool
    created_at: datetime | None = None


class TransactionView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    provider_intent_id: str
    amount: int
    currency: str
    status: str
    description: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class SubscriptionView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    plan_id: str
    kind: str
    status: str
    provider_intent_id: str | None = None
    expires_at: datetime | None = None
    activated_at: datetime | None = None
    cancel_at_period_end: bool = False


class EntitlementView(BaseModel):
    """The owner's plan entitlement as of the read; lapsed plans read as expired."""

    current_plan_id: str | None = None
    subscription_status: str | None = None
    expires_at: datetime | None = None
    active: bool = False


class PaymentSnapshot(BaseModel):
    """Everything a client renders for one owner, read at a single point in time."""

    owner_id: str
    payment_methods: list[PaymentMethodView] = Field(default_factory=list)
    transactions: list[TransactionView] = Field(default_factory=list)
    subscription: SubscriptionView | None = None
    entitlement: EntitlementView | None = None

    @property
    def default_method(self) -> PaymentMethodView | None:
        return next((m for m in self.payment_methods if m.is_default), None)

    def transaction(self, intent_id: str) -> TransactionView | None:
        return next((t for t in self.transactions if t.provider_intent_id == intent_id), None)


# ==================== COMMANDS ====================


class AttachMethodRequest(BaseModel):
    instrument_id: str = Field(..., min_length=1, max_length=255)


class ChargeRequest(BaseModel):
    amount: int = Field(..., description="Positive amount in minor currency units")
    currency: str = Field("usd", min_length=3, max_length=3)
    description: str | None = Field(None, max_length=500)
    instrument_id: str | None = None

    @field_validator("currency")
    @classmethod
    def normalize_currency(cls, v: str) -> str:
        return v.lower()


class PurchasePlanRequest(BaseModel):
    instrument_id: str | None = None


class CommandAccepted(BaseModel):
    """Outbound command accepted by the provider; effects arrive via the change feed."""

    status: str = "submitted"
    instrument_id: str | None = None
    intent_id: str | None = None
    client_secret: str | None = None


class PlanView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    price_amount: int
    price_currency: str
    billing_interval: str
