"""Tests for Reconciler.process: end-to-end event handling against SQLite.

Owner resolution uses the BillingProfile mapping seeded per test; the provider
double is only consulted when the mapping is absent.
"""

import asyncio
import json
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select

from marketpay.core.exceptions import ErrorKind, PaymentError
from marketpay.db.models.billing_profile import BillingProfile
from marketpay.db.models.payment_method import PaymentMethod
from marketpay.db.models.processed_event import ProcessedEvent
from marketpay.db.models.subscription import Subscription
from marketpay.db.models.transaction import Transaction
from marketpay.db.models.unresolved_event import UnresolvedEvent
from marketpay.services.owner_resolver import OwnerResolver
from marketpay.services.payment_store import PaymentStore
from marketpay.services.reconciler import Reconciler, ReconcileStatus

pytestmark = pytest.mark.unit


def _make_stripe_event(event_id: str, event_type: str, data: dict) -> dict:
    """Build a minimal Stripe-style event dict."""
    return {"id": event_id, "type": event_type, "data": {"object": data}}


def _attached(event_id: str, pm_id: str, customer: str = "cus_U1", last4: str = "4242") -> dict:
    return _make_stripe_event(
        event_id,
        "payment_method.attached",
        {
            "id": pm_id,
            "type": "card",
            "customer": customer,
            "card": {"brand": "visa", "last4": last4, "exp_month": 12, "exp_year": 2030},
        },
    )


def _intent(event_id: str, event_type: str, intent_id: str = "pi_1", amount: int = 2999) -> dict:
    return _make_stripe_event(
        event_id,
        event_type,
        {"id": intent_id, "amount": amount, "currency": "usd", "customer": "cus_U1", "metadata": {}},
    )


@pytest.fixture
async def customer_mapping(session_factory, seeded_plans):
    async with session_factory() as session:
        session.add(BillingProfile(owner_id="U1", provider_customer_id="cus_U1"))
        await session.commit()


@pytest.fixture
def reconciler(session_factory, provider, change_feed):
    resolver = OwnerResolver(session_factory, provider)
    return Reconciler(session_factory, resolver, change_feed)


async def _methods(session_factory) -> dict[str, bool]:
    async with session_factory() as session:
        rows = (await session.execute(select(PaymentMethod))).scalars()
        return {row.provider_instrument_id: row.is_default for row in rows}


async def _count(session_factory, model) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar_one()


# ============================================================================
# Scenarios
# ============================================================================


async def test_first_attached_method_becomes_default(reconciler, session_factory, customer_mapping):
    outcome = await reconciler.process(_attached("evt_1", "pm_1"))

    assert outcome.status == ReconcileStatus.APPLIED
    assert outcome.owner_id == "U1"
    assert await _methods(session_factory) == {"pm_1": True}


async def test_customer_updated_moves_default(reconciler, session_factory, customer_mapping):
    await reconciler.process(_attached("evt_1", "pm_1"))
    await reconciler.process(_attached("evt_2", "pm_2", last4="1881"))

    outcome = await reconciler.process(
        _make_stripe_event(
            "evt_3",
            "customer.updated",
            {"id": "cus_U1", "invoice_settings": {"default_payment_method": "pm_2"}},
        )
    )

    assert outcome.status == ReconcileStatus.APPLIED
    assert await _methods(session_factory) == {"pm_1": False, "pm_2": True}


async def test_succeeded_twice_settles_and_activates_once(reconciler, session_factory, customer_mapping):
    async with session_factory() as session:
        await PaymentStore().insert_pending_subscription(session, "U1", "monthly", "pi_1", expires_at=None)
        await session.commit()

    with patch("marketpay.services.reconciler.emit_business_event", new_callable=AsyncMock) as emit:
        first = await reconciler.process(_intent("evt_pi_1", "payment_intent.succeeded"))
        second = await reconciler.process(_intent("evt_pi_1", "payment_intent.succeeded"))

    assert first.status == ReconcileStatus.APPLIED
    assert second.status == ReconcileStatus.DUPLICATE

    async with session_factory() as session:
        txs = (await session.execute(select(Transaction))).scalars().all()
        sub = (await session.execute(select(Subscription))).scalar_one()
    assert len(txs) == 1
    assert txs[0].status == "succeeded"
    assert txs[0].amount == 2999
    assert sub.status == "active"

    emitted = [call.args[0] for call in emit.await_args_list]
    assert emitted.count("payment_succeeded") == 1
    assert emitted.count("plan_activated") == 1


async def test_succeeded_without_prior_transaction_creates_one(reconciler, session_factory, customer_mapping):
    await reconciler.process(_intent("evt_pi_2", "payment_intent.succeeded", intent_id="pi_2", amount=1234))

    async with session_factory() as session:
        tx = (await session.execute(select(Transaction))).scalar_one()
    assert tx.provider_intent_id == "pi_2"
    assert tx.owner_id == "U1"
    assert tx.amount == 1234
    assert tx.currency == "usd"


async def test_failed_after_succeeded_keeps_succeeded(reconciler, session_factory, customer_mapping):
    await reconciler.process(_intent("evt_a", "payment_intent.succeeded"))
    await reconciler.process(_intent("evt_b", "payment_intent.payment_failed"))

    async with session_factory() as session:
        tx = (await session.execute(select(Transaction))).scalar_one()
    assert tx.status == "succeeded"


async def test_canceled_intent_cancels_pending_subscription(reconciler, session_factory, customer_mapping):
    async with session_factory() as session:
        await PaymentStore().insert_pending_subscription(session, "U1", "daily", "pi_1", expires_at=None)
        await session.commit()

    await reconciler.process(_intent("evt_c", "payment_intent.canceled"))

    async with session_factory() as session:
        sub = (await session.execute(select(Subscription))).scalar_one()
        tx = (await session.execute(select(Transaction))).scalar_one()
    assert sub.status == "cancelled"
    assert tx.status == "failed"


# ============================================================================
# Idempotency and ordering
# ============================================================================


async def test_replay_yields_same_state(reconciler, session_factory, customer_mapping):
    events = [
        _attached("evt_1", "pm_1"),
        _attached("evt_2", "pm_2"),
        _make_stripe_event(
            "evt_3", "customer.updated", {"id": "cus_U1", "invoice_settings": {"default_payment_method": "pm_2"}}
        ),
    ]
    for event in events:
        await reconciler.process(event)
    once = await _methods(session_factory)

    for event in events:
        outcome = await reconciler.process(event)
        assert outcome.status == ReconcileStatus.DUPLICATE

    assert await _methods(session_factory) == once


async def test_updated_before_attached_matches_reverse_order(session_factory, provider, change_feed, seeded_plans):
    async with session_factory() as session:
        session.add_all([
            BillingProfile(owner_id="U1", provider_customer_id="cus_U1"),
            BillingProfile(owner_id="U2", provider_customer_id="cus_U2"),
        ])
        await session.commit()
    reconciler = Reconciler(session_factory, OwnerResolver(session_factory, provider), change_feed)

    def updated(event_id, pm_id, customer):
        event = _attached(event_id, pm_id, customer=customer)
        event["type"] = "payment_method.updated"
        return event

    await reconciler.process(updated("evt_u1", "pm_a", "cus_U1"))
    await reconciler.process(_attached("evt_a1", "pm_a", customer="cus_U1"))

    await reconciler.process(_attached("evt_a2", "pm_b", customer="cus_U2"))
    await reconciler.process(updated("evt_u2", "pm_b", "cus_U2"))

    async with session_factory() as session:
        rows = {r.provider_instrument_id: r for r in (await session.execute(select(PaymentMethod))).scalars()}
    a, b = rows["pm_a"], rows["pm_b"]
    assert (a.brand, a.last4, a.exp_month, a.exp_year, a.is_default) == (
        b.brand,
        b.last4,
        b.exp_month,
        b.exp_year,
        b.is_default,
    )


async def test_failure_during_apply_rolls_back_admission(session_factory, provider, change_feed, customer_mapping):
    failing_store = PaymentStore()
    failing_store.apply = AsyncMock(side_effect=RuntimeError("db went away"))
    reconciler = Reconciler(
        session_factory, OwnerResolver(session_factory, provider), change_feed, store=failing_store
    )

    with pytest.raises(RuntimeError):
        await reconciler.process(_attached("evt_1", "pm_1"))

    assert await _count(session_factory, ProcessedEvent) == 0

    healthy = Reconciler(session_factory, OwnerResolver(session_factory, provider), change_feed)
    outcome = await healthy.process(_attached("evt_1", "pm_1"))
    assert outcome.status == ReconcileStatus.APPLIED


async def test_concurrent_deliveries_apply_once(reconciler, session_factory, customer_mapping):
    event = _attached("evt_race", "pm_1")

    # Both deliveries pass the early ledger check; admission decides the winner
    with patch.object(reconciler.ledger, "is_processed", AsyncMock(return_value=False)):
        outcomes = await asyncio.gather(reconciler.process(event), reconciler.process(event))

    assert sorted(o.status for o in outcomes) == sorted([ReconcileStatus.APPLIED, ReconcileStatus.DUPLICATE])
    duplicate = next(o for o in outcomes if o.status == ReconcileStatus.DUPLICATE)
    assert duplicate.changes == []
    assert await _count(session_factory, ProcessedEvent) == 1
    assert await _methods(session_factory) == {"pm_1": True}


async def test_concurrent_succeeded_deliveries_activate_once(reconciler, session_factory, customer_mapping):
    async with session_factory() as session:
        session.add(Subscription(owner_id="U1", plan_id="monthly", status="pending", provider_intent_id="pi_1"))
        await session.commit()
    event = _intent("evt_paid", "payment_intent.succeeded")

    with patch.object(reconciler.ledger, "is_processed", AsyncMock(return_value=False)):
        outcomes = await asyncio.gather(reconciler.process(event), reconciler.process(event))

    applied = [o for o in outcomes if o.status == ReconcileStatus.APPLIED]
    assert len(applied) == 1
    assert [c.operation for c in applied[0].changes] == ["succeeded", "activate"]
    assert await _count(session_factory, Transaction) == 1


# ============================================================================
# Owner resolution
# ============================================================================


async def test_unresolved_owner_is_dead_lettered(reconciler, session_factory, provider):
    provider.retrieve_customer.return_value = None

    with patch("marketpay.services.reconciler.emit_business_event", new_callable=AsyncMock) as emit:
        outcome = await reconciler.process(_attached("evt_9", "pm_9", customer="cus_unknown"))

    assert outcome.status == ReconcileStatus.UNRESOLVED
    assert await _methods(session_factory) == {}
    async with session_factory() as session:
        dead = await session.get(UnresolvedEvent, "evt_9")
    assert dead.customer_ref == "cus_unknown"
    assert dead.payload["id"] == "pm_9"
    emit.assert_awaited_once_with("unresolved_provider_event")

    # Admitted: redelivery is a duplicate, not another dead letter
    again = await reconciler.process(_attached("evt_9", "pm_9", customer="cus_unknown"))
    assert again.status == ReconcileStatus.DUPLICATE


async def test_owner_resolved_from_provider_metadata(reconciler, session_factory, provider):
    provider.retrieve_customer.return_value = {"id": "cus_remote", "metadata": {"user_id": "U5"}}

    outcome = await reconciler.process(_attached("evt_r", "pm_r", customer="cus_remote"))

    assert outcome.owner_id == "U5"
    provider.retrieve_customer.assert_awaited_once_with("cus_remote")


async def test_intent_metadata_owner_skips_lookup(reconciler, session_factory, provider):
    event = _intent("evt_m", "payment_intent.payment_failed")
    event["data"]["object"]["metadata"] = {"user_id": "U8"}

    outcome = await reconciler.process(event)

    assert outcome.owner_id == "U8"
    provider.retrieve_customer.assert_not_awaited()


async def test_provider_error_during_resolution_is_retryable(reconciler, session_factory, provider):
    provider.retrieve_customer.side_effect = PaymentError(ErrorKind.TIMEOUT, "slow")

    with pytest.raises(PaymentError):
        await reconciler.process(_attached("evt_t", "pm_t", customer="cus_slow"))

    assert await _count(session_factory, ProcessedEvent) == 0


async def test_detached_needs_no_owner(reconciler, session_factory, provider, customer_mapping):
    await reconciler.process(_attached("evt_1", "pm_1"))

    detached = _attached("evt_2", "pm_1", customer=None)
    detached["type"] = "payment_method.detached"
    outcome = await reconciler.process(detached)

    assert outcome.status == ReconcileStatus.APPLIED
    assert await _methods(session_factory) == {}
    provider.retrieve_customer.assert_not_awaited()


async def test_unhandled_event_is_admitted_and_ignored(reconciler, session_factory):
    outcome = await reconciler.process(_make_stripe_event("evt_x", "invoice.paid", {"id": "in_1"}))

    assert outcome.status == ReconcileStatus.IGNORED
    assert await _count(session_factory, ProcessedEvent) == 1


async def test_malformed_event_raises(reconciler):
    with pytest.raises(PaymentError) as exc_info:
        await reconciler.process({"type": "payment_method.attached"})
    assert exc_info.value.kind == ErrorKind.MALFORMED_EVENT


# ============================================================================
# Change feed
# ============================================================================


async def test_committed_changes_are_published(reconciler, redis, customer_mapping):
    pubsub = redis.pubsub()
    await pubsub.subscribe("payments:U1:changes")

    await reconciler.process(_attached("evt_1", "pm_1"))

    message = None
    for _ in range(10):
        message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=0.1)
        if message:
            break
    await pubsub.unsubscribe()
    await pubsub.aclose()

    assert message is not None
    body = json.loads(message["data"])
    assert body == {"owner_id": "U1", "table": "payment_methods", "operation": "insert", "key": "pm_1"}
