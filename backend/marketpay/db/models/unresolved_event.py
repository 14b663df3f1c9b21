"""UnresolvedEvent model: dead letter for events with no resolvable owner."""

from datetime import UTC, datetime

from sqlalchemy import JSON, Column, DateTime, String, Text

from marketpay.db.base import Base


class UnresolvedEvent(Base):
    """Provider events whose customer could not be mapped to a local owner.

    Kept for operator follow-up; retrying automatically would not help until
    the customer mapping exists.
    """

    __tablename__ = "unresolved_events"

    provider_event_id = Column(String(255), primary_key=True)
    event_type = Column(String(100), nullable=False)
    customer_ref = Column(String(255), nullable=True, index=True)
    reason = Column(Text, nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
