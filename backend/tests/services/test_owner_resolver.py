"""Tests for OwnerResolver lookup order."""

import pytest

from marketpay.core.exceptions import ErrorKind, PaymentError
from marketpay.db.models.billing_profile import BillingProfile
from marketpay.domain.events import CardDetails, PaymentMethodEvent
from marketpay.services.owner_resolver import OwnerResolver

pytestmark = pytest.mark.unit


def _event(customer_id: str | None, owner_hint: str | None = None) -> PaymentMethodEvent:
    return PaymentMethodEvent(
        event_id="evt_1",
        event_type="payment_method.attached",
        customer_id=customer_id,
        owner_hint=owner_hint,
        instrument_id="pm_1",
        card=CardDetails(),
    )


@pytest.fixture
def resolver(session_factory, provider):
    return OwnerResolver(session_factory, provider)


async def test_owner_hint_wins(resolver, provider):
    assert await resolver.resolve(_event("cus_1", owner_hint="U9")) == "U9"
    provider.retrieve_customer.assert_not_awaited()


async def test_local_mapping_before_provider(resolver, provider, session_factory):
    async with session_factory() as session:
        session.add(BillingProfile(owner_id="U1", provider_customer_id="cus_1"))
        await session.commit()

    assert await resolver.resolve(_event("cus_1")) == "U1"
    provider.retrieve_customer.assert_not_awaited()


async def test_provider_metadata_fallback(resolver, provider):
    provider.retrieve_customer.return_value = {"id": "cus_2", "metadata": {"user_id": "U2"}}
    assert await resolver.resolve(_event("cus_2")) == "U2"


async def test_customer_without_owner_metadata(resolver, provider):
    provider.retrieve_customer.return_value = {"id": "cus_3", "metadata": {}}
    assert await resolver.resolve(_event("cus_3")) is None


async def test_no_customer_reference(resolver, provider):
    assert await resolver.resolve(_event(None)) is None
    provider.retrieve_customer.assert_not_awaited()


async def test_without_provider_only_local_mapping_is_used(session_factory):
    resolver = OwnerResolver(session_factory, provider=None)
    assert await resolver.resolve(_event("cus_4")) is None


async def test_customer_unknown_to_provider_is_unresolved(resolver, provider):
    provider.retrieve_customer.side_effect = PaymentError(ErrorKind.UNRESOLVED_REFERENCE, "No such customer")
    assert await resolver.resolve(_event("cus_gone")) is None


async def test_transient_provider_failure_propagates(resolver, provider):
    provider.retrieve_customer.side_effect = PaymentError(ErrorKind.PROVIDER, "Payment provider request failed")
    with pytest.raises(PaymentError):
        await resolver.resolve(_event("cus_5"))
