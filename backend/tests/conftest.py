"""Shared test fixtures for all test groups.

Tests run against a file-backed SQLite database (aiosqlite) so the same
database is reachable from the pytest-asyncio loop and from TestClient's loop.
"""

import os

# Settings are cached on first use; set the environment before any marketpay import
os.environ.setdefault("METRICS_ENABLED", "false")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_dummy")
os.environ.setdefault("AUTH_JWT_SECRET", "test-secret-for-session-jwts-0123456789")

from unittest.mock import MagicMock

import fakeredis.aioredis
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from marketpay.db.base import Base
from marketpay.integrations.stripe_provider import IntentHandle, StripeProvider
from marketpay.services.change_feed import ChangeFeed


@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'payments.db'}"


@pytest_asyncio.fixture
async def engine(db_url) -> AsyncEngine:
    """Fresh schema per test."""
    import marketpay.db.models  # noqa: F401

    engine = create_async_engine(db_url, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def seeded_plans(session_factory):
    from marketpay.db.seed import seed_plans

    await seed_plans(session_factory)


@pytest_asyncio.fixture
async def redis():
    """In-process fake Redis with Pub/Sub support."""
    r = fakeredis.aioredis.FakeRedis(decode_responses=True)
    yield r
    await r.aclose()


@pytest.fixture
def change_feed(redis) -> ChangeFeed:
    return ChangeFeed(redis, prefix="payments")


@pytest.fixture
def provider():
    """StripeProvider double: every async method is an AsyncMock."""
    fake = MagicMock(spec=StripeProvider)
    fake.owner_metadata_key = "user_id"
    fake.create_customer.return_value = "cus_new"
    fake.retrieve_customer.return_value = None
    fake.create_payment_intent.return_value = IntentHandle(
        intent_id="pi_new",
        status="requires_confirmation",
        client_secret="pi_new_secret",
        amount=1500,
        currency="usd",
    )
    return fake
