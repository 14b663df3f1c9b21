"""Lifecycle states for reconciled payment records."""

from datetime import UTC, datetime
from enum import StrEnum


class TransactionStatus(StrEnum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


TERMINAL_TRANSACTION_STATUSES = frozenset({TransactionStatus.SUCCEEDED, TransactionStatus.FAILED})


class SubscriptionStatus(StrEnum):
    PENDING = "pending"
    ACTIVE = "active"
    CANCELLED = "cancelled"
    # Derived on read from an active entitlement past its expiry; never stored
    EXPIRED = "expired"


class SubscriptionKind(StrEnum):
    ONE_TIME = "one_time"
    RECURRING = "recurring"


class BillingInterval(StrEnum):
    ONE_TIME = "one_time"
    MONTH = "month"
    YEAR = "year"


def is_expired(expires_at: datetime | None, now: datetime) -> bool:
    """True once ``expires_at`` has passed. No expiry means never.

    Naive timestamps (SQLite drops the offset) are read as UTC.
    """
    if expires_at is None:
        return False
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=UTC)
    return expires_at <= now
