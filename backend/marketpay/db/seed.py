"""Idempotent seed data for merchant plans."""

from sqlalchemy import select

from marketpay.db.base import get_session_factory
from marketpay.db.models.plan import Plan

PLANS = [
    {
        "id": "daily",
        "name": "Daily Access",
        "price_amount": 499,
        "price_currency": "usd",
        "billing_interval": "one_time",
        "is_active": True,
    },
    {
        "id": "monthly",
        "name": "Monthly Plan",
        "price_amount": 2999,
        "price_currency": "usd",
        "billing_interval": "month",
        "is_active": True,
    },
    {
        "id": "yearly",
        "name": "Yearly Plan",
        "price_amount": 29999,
        "price_currency": "usd",
        "billing_interval": "year",
        "is_active": True,
    },
]


async def seed_plans(session_factory=None) -> None:
    """Insert default plans if they don't already exist."""
    factory = session_factory or get_session_factory()

    async with factory() as session:
        for plan_data in PLANS:
            result = await session.execute(select(Plan).where(Plan.id == plan_data["id"]))
            existing = result.scalar_one_or_none()

            if existing is None:
                session.add(Plan(**plan_data))

        await session.commit()
