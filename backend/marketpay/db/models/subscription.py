"""Subscription model: plan entitlements purchased by an owner."""

import uuid
from datetime import UTC, datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String

from marketpay.db.base import Base


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    owner_id = Column(String(255), nullable=False, index=True)
    plan_id = Column(String(50), ForeignKey("plans.id"), nullable=False)

    kind = Column(String(20), nullable=False, default="one_time")  # one_time | recurring
    status = Column(String(20), nullable=False, default="pending")  # pending | active | cancelled
    provider_intent_id = Column(String(255), unique=True, nullable=True)

    expires_at = Column(DateTime(timezone=True), nullable=True)
    activated_at = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
