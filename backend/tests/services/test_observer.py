"""Tests for PaymentStateObserver lifecycle and reload behavior."""

import asyncio

import pytest

from marketpay.schemas.payments import PaymentSnapshot, TransactionView
from marketpay.services.observer import PaymentStateObserver
from marketpay.services.payment_store import StoreChange

pytestmark = pytest.mark.unit


class FakeLoader:
    """Returns snapshots whose transaction count grows with each load."""

    def __init__(self):
        self.calls = 0

    async def __call__(self, owner_id: str) -> PaymentSnapshot:
        self.calls += 1
        return _snapshot(owner_id, self.calls)


def _snapshot(owner_id: str, n: int) -> PaymentSnapshot:
    return PaymentSnapshot(
        owner_id=owner_id,
        transactions=[
            TransactionView(provider_intent_id=f"pi_{i}", amount=100, currency="usd", status="pending")
            for i in range(n)
        ],
    )


async def test_context_manager_subscribes_and_loads(change_feed, redis):
    loader = FakeLoader()

    async with PaymentStateObserver("U1", loader, change_feed) as observer:
        assert observer.subscribed is True
        assert observer.snapshot.owner_id == "U1"
        assert (await redis.pubsub_numsub("payments:U1:changes"))[0][1] == 1

    assert observer.subscribed is False
    assert (await redis.pubsub_numsub("payments:U1:changes"))[0][1] == 0


async def test_unsubscribe_is_idempotent(change_feed):
    observer = PaymentStateObserver("U1", FakeLoader(), change_feed)

    await observer.unsubscribe()
    await observer.subscribe()
    await observer.unsubscribe()
    await observer.unsubscribe()

    assert observer.subscribed is False


async def test_stale_load_does_not_overwrite_newer_snapshot():
    release_first = asyncio.Event()
    calls = 0

    async def loader(owner_id):
        nonlocal calls
        calls += 1
        n = calls
        if n == 1:
            await release_first.wait()
        return _snapshot(owner_id, n)

    observer = PaymentStateObserver("U1", loader)
    slow = asyncio.create_task(observer.load())
    await asyncio.sleep(0)
    fast = await observer.load()
    release_first.set()
    await slow

    assert len(fast.transactions) == 2
    assert len(observer.snapshot.transactions) == 2


async def test_change_notification_wakes_waiter(change_feed):
    async with PaymentStateObserver("U1", FakeLoader(), change_feed) as observer:
        await change_feed.publish(StoreChange("U1", "transactions", "succeeded", "pi_1"))
        assert await observer.wait_for_change(2.0) is True


async def test_other_owner_changes_are_not_seen(change_feed):
    async with PaymentStateObserver("U1", FakeLoader(), change_feed) as observer:
        await change_feed.publish(StoreChange("U2", "transactions", "succeeded", "pi_1"))
        assert await observer.wait_for_change(0.3) is False


async def test_updates_yield_current_then_changes(change_feed):
    loader = FakeLoader()

    async with PaymentStateObserver("U1", loader, change_feed, refresh_seconds=5) as observer:
        updates = observer.updates()
        first = await anext(updates)
        await change_feed.publish(StoreChange("U1", "payment_methods", "insert", "pm_1"))
        second = await asyncio.wait_for(anext(updates), timeout=3)
        await updates.aclose()

    assert len(first.transactions) == 1
    assert len(second.transactions) == 2


async def test_without_feed_falls_back_to_refresh():
    loader = FakeLoader()
    observer = PaymentStateObserver("U1", loader, change_feed=None, refresh_seconds=0.05)

    updates = observer.updates(include_current=False)
    snapshot = await asyncio.wait_for(anext(updates), timeout=2)
    await updates.aclose()

    assert loader.calls == 2
    assert len(snapshot.transactions) == 2
