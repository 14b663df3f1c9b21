"""BillingProfile model: owner <-> provider customer mapping and entitlement snapshot."""

from datetime import UTC, datetime

from sqlalchemy import Column, DateTime, ForeignKey, String

from marketpay.db.base import Base


class BillingProfile(Base):
    __tablename__ = "billing_profiles"

    owner_id = Column(String(255), primary_key=True)

    # Stripe
    provider_customer_id = Column(String(255), unique=True, nullable=True, index=True)

    # Entitlement snapshot, updated when a one-time plan purchase settles
    current_plan_id = Column(String(50), ForeignKey("plans.id"), nullable=True)
    subscription_status = Column(String(20), nullable=True)
    entitlement_expires_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
