"""Tests for the shared change-feed Redis client."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import redis.asyncio as redis

from marketpay.core.config import get_settings
from marketpay.db import redis as redis_module

pytestmark = pytest.mark.unit


@pytest.fixture(autouse=True)
def reset_client():
    redis_module._redis = None
    yield
    redis_module._redis = None


@pytest.fixture
def settings():
    return get_settings().model_copy(update={"redis_max_connections": 12, "redis_health_check_interval": 15})


def test_options_keep_idle_subscriptions_healthy(settings):
    options = redis_module.redis_client_options(settings)

    assert options["health_check_interval"] == 15
    assert options["socket_keepalive"] is True
    assert options["max_connections"] == 12
    assert options["decode_responses"] is True


async def test_init_redis_uses_pubsub_options(settings):
    client = MagicMock()
    client.ping = AsyncMock(return_value=True)

    with patch("redis.asyncio.from_url", return_value=client) as from_url:
        await redis_module.init_redis("redis://cache:6379", settings=settings)

    from_url.assert_called_once()
    assert from_url.call_args.args == ("redis://cache:6379",)
    assert from_url.call_args.kwargs["health_check_interval"] == 15
    assert redis_module.get_redis() is client


async def test_unreachable_redis_is_not_kept(settings):
    client = MagicMock()
    client.ping = AsyncMock(side_effect=redis.ConnectionError("refused"))
    client.aclose = AsyncMock()

    with patch("redis.asyncio.from_url", return_value=client):
        with pytest.raises(redis.ConnectionError):
            await redis_module.init_redis("redis://cache:6379", settings=settings)

    client.aclose.assert_awaited_once()
    with pytest.raises(RuntimeError):
        redis_module.get_redis()
