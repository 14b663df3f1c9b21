"""Stripe integration: outbound calls to the payment provider.

Every call:
- uses the async SDK (``*_async`` methods)
- passes the API key per request instead of mutating ``stripe.api_key``
- is bounded by ``provider_timeout_seconds`` and never retried here
- translates SDK failures into PaymentError
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import stripe
import structlog

from marketpay.core.config import Settings, get_settings
from marketpay.core.exceptions import ErrorKind, PaymentError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class IntentHandle:
    """What the client needs after a payment intent is created."""

    intent_id: str
    status: str
    client_secret: str | None
    amount: int
    currency: str


class StripeProvider:
    """Thin async wrapper over the Stripe SDK."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()

    @property
    def owner_metadata_key(self) -> str:
        return self.settings.customer_owner_metadata_key

    def _api_key(self) -> str:
        if not self.settings.stripe_secret_key:
            raise PaymentError(ErrorKind.CONFIGURATION, "Payment provider is not configured")
        return self.settings.stripe_secret_key

    async def _call(self, operation: str, fn: Callable[[], Awaitable[T]]) -> T:
        """Run one SDK call with the configured timeout and error translation."""
        timeout = self.settings.provider_timeout_seconds
        try:
            return await asyncio.wait_for(fn(), timeout=timeout)
        except TimeoutError:
            logger.warning("stripe_call_timeout", operation=operation, timeout=timeout)
            raise PaymentError(ErrorKind.TIMEOUT, f"Payment provider did not respond within {timeout:g}s")
        except stripe.CardError as exc:
            logger.info("stripe_card_error", operation=operation, code=exc.code)
            raise PaymentError(ErrorKind.VALIDATION, exc.user_message or "Card was declined", field=exc.param)
        except stripe.InvalidRequestError as exc:
            if exc.code == "resource_missing":
                # The mapped customer or instrument no longer exists at the provider
                logger.warning("stripe_resource_missing", operation=operation, param=exc.param)
                raise PaymentError(
                    ErrorKind.UNRESOLVED_REFERENCE,
                    exc.user_message or "Referenced payment object does not exist",
                    field=exc.param,
                )
            logger.warning("stripe_invalid_request", operation=operation, param=exc.param, error=str(exc))
            raise PaymentError(ErrorKind.VALIDATION, exc.user_message or "Invalid payment request", field=exc.param)
        except stripe.StripeError as exc:
            logger.error("stripe_call_failed", operation=operation, error=str(exc), error_type=type(exc).__name__)
            raise PaymentError(ErrorKind.PROVIDER, "Payment provider request failed")

    # ── Customers ───────────────────────────────────────────────────

    async def create_customer(self, owner_id: str, email: str | None = None) -> str:
        """Create a Stripe customer carrying the owner id in metadata."""
        api_key = self._api_key()
        params: dict[str, Any] = {"metadata": {self.owner_metadata_key: owner_id}}
        if email:
            params["email"] = email
        customer = await self._call(
            "customer.create",
            lambda: stripe.Customer.create_async(api_key=api_key, **params),
        )
        return customer.id

    async def retrieve_customer(self, customer_id: str) -> dict | None:
        """Return the customer object, or None if it was deleted."""
        api_key = self._api_key()
        customer = await self._call(
            "customer.retrieve",
            lambda: stripe.Customer.retrieve_async(customer_id, api_key=api_key),
        )
        if customer.get("deleted"):
            return None
        return customer

    async def set_default_payment_method(self, customer_id: str, instrument_id: str) -> None:
        api_key = self._api_key()
        await self._call(
            "customer.modify",
            lambda: stripe.Customer.modify_async(
                customer_id,
                invoice_settings={"default_payment_method": instrument_id},
                api_key=api_key,
            ),
        )

    # ── Payment methods ─────────────────────────────────────────────

    async def attach_payment_method(self, instrument_id: str, customer_id: str) -> None:
        api_key = self._api_key()
        await self._call(
            "payment_method.attach",
            lambda: stripe.PaymentMethod.attach_async(instrument_id, customer=customer_id, api_key=api_key),
        )

    async def detach_payment_method(self, instrument_id: str) -> None:
        api_key = self._api_key()
        await self._call(
            "payment_method.detach",
            lambda: stripe.PaymentMethod.detach_async(instrument_id, api_key=api_key),
        )

    # ── Payment intents ─────────────────────────────────────────────

    async def create_payment_intent(
        self,
        *,
        amount: int,
        currency: str,
        customer_id: str,
        owner_id: str,
        description: str | None = None,
        instrument_id: str | None = None,
        metadata: dict[str, str] | None = None,
        idempotency_key: str | None = None,
    ) -> IntentHandle:
        """Create a payment intent; confirms immediately when an instrument is given."""
        api_key = self._api_key()
        params: dict[str, Any] = {
            "amount": amount,
            "currency": currency,
            "customer": customer_id,
            "metadata": {self.owner_metadata_key: owner_id, **(metadata or {})},
        }
        if description:
            params["description"] = description
        if instrument_id:
            params["payment_method"] = instrument_id
            params["confirm"] = True
            params["automatic_payment_methods"] = {"enabled": True, "allow_redirects": "never"}
        else:
            params["automatic_payment_methods"] = {"enabled": True}
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        intent = await self._call(
            "payment_intent.create",
            lambda: stripe.PaymentIntent.create_async(api_key=api_key, **params),
        )
        return IntentHandle(
            intent_id=intent.id,
            status=intent.status,
            client_secret=intent.get("client_secret"),
            amount=amount,
            currency=currency,
        )

    async def cancel_payment_intent(self, intent_id: str) -> None:
        """Cancel an unsettled intent; the canceled webhook releases what it paid for."""
        api_key = self._api_key()
        await self._call(
            "payment_intent.cancel",
            lambda: stripe.PaymentIntent.cancel_async(intent_id, api_key=api_key),
        )
