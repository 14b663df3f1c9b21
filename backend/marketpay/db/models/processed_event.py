"""ProcessedEvent model for webhook idempotency tracking."""

from datetime import UTC, datetime

from sqlalchemy import Column, DateTime, String

from marketpay.db.base import Base


class ProcessedEvent(Base):
    """Write-once record of provider event IDs that have been applied."""

    __tablename__ = "processed_events"

    provider_event_id = Column(String(255), primary_key=True)
    event_type = Column(String(100), nullable=True)
    processed_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
