"""API-specific test fixtures."""

from contextlib import asynccontextmanager

import fakeredis
import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient

from marketpay.api.deps import get_change_feed, get_provider
from marketpay.core.exceptions import PaymentError
from marketpay.services.change_feed import ChangeFeed


@pytest.fixture
def redis_server():
    """One fake Redis server shared by every client the app opens."""
    return fakeredis.FakeServer()


@pytest.fixture
def api_app(engine, db_url, provider, redis_server) -> FastAPI:
    """FastAPI app wired to the test database, fake Redis and provider double.

    init_db runs inside TestClient's own event loop so route handlers can use
    get_session_factory(). The engine fixture creates the tables first.
    """
    from fastapi.middleware.cors import CORSMiddleware

    from marketpay.api.routes import api_router
    from marketpay.core.config import get_settings
    from marketpay.db import close_db, init_db
    from marketpay.db.seed import seed_plans
    from marketpay.main import generic_exception_handler, http_exception_handler, payment_error_handler

    @asynccontextmanager
    async def test_lifespan(app: FastAPI):
        """Test lifespan - initialize DB in TestClient's event loop."""
        import marketpay.db.base as db_mod

        db_mod._engine = None
        db_mod._session_factory = None
        await init_db(db_url)
        await seed_plans()
        yield
        await close_db()

    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Marketplace Payments - Test Client",
        version="0.1.0",
        lifespan=test_lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:8081"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.exception_handler(PaymentError)(payment_error_handler)
    app.exception_handler(HTTPException)(http_exception_handler)
    app.exception_handler(Exception)(generic_exception_handler)

    app.include_router(api_router, prefix="/api")

    app.dependency_overrides[get_provider] = lambda: provider
    app.dependency_overrides[get_change_feed] = lambda: ChangeFeed(
        fakeredis.FakeAsyncRedis(server=redis_server, decode_responses=True)
    )
    return app


@pytest.fixture
def api_client(api_app):
    with TestClient(api_app) as client:
        yield client
