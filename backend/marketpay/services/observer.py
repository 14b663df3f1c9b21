"""PaymentStateObserver: live view of one owner's payment state.

Explicit lifecycle instead of implicit callbacks:

    async with sync_service.observe(owner_id) as observer:   # subscribe + load
        async for snapshot in observer.updates():
            ...
    # leaving the block unsubscribes and releases the Pub/Sub connection

Change notifications only trigger a reload; the snapshot read is the source
of truth. A periodic refresh covers notifications lost in transit.
"""

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable

import structlog
from redis.asyncio.client import PubSub

from marketpay.schemas.payments import PaymentSnapshot
from marketpay.services.change_feed import ChangeFeed

logger = structlog.get_logger(__name__)

SnapshotLoader = Callable[[str], Awaitable[PaymentSnapshot]]

# Upper bound for one blocking Pub/Sub poll so callers can interleave other checks
_POLL_INTERVAL_SECONDS = 1.0


class PaymentStateObserver:
    def __init__(
        self,
        owner_id: str,
        loader: SnapshotLoader,
        change_feed: ChangeFeed | None = None,
        refresh_seconds: float = 30.0,
    ):
        self.owner_id = owner_id
        self.refresh_seconds = refresh_seconds
        self.snapshot: PaymentSnapshot | None = None

        self._loader = loader
        self._change_feed = change_feed
        self._pubsub: PubSub | None = None
        # Monotonic load counter: a slower, older load never replaces a newer snapshot
        self._issued = 0
        self._applied = 0

    @property
    def subscribed(self) -> bool:
        return self._pubsub is not None

    async def __aenter__(self) -> "PaymentStateObserver":
        await self.subscribe()
        try:
            await self.load()
        except BaseException:
            await self.unsubscribe()
            raise
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.unsubscribe()

    async def load(self) -> PaymentSnapshot:
        """Read a fresh snapshot. Safe to call while updates are flowing."""
        self._issued += 1
        ticket = self._issued
        snapshot = await self._loader(self.owner_id)
        if ticket > self._applied:
            self._applied = ticket
            self.snapshot = snapshot
        return self.snapshot

    async def subscribe(self) -> None:
        if self._pubsub is not None or self._change_feed is None:
            return
        self._pubsub = await self._change_feed.subscribe(self.owner_id)
        logger.debug("payment_observer_subscribed", owner_id=self.owner_id)

    async def unsubscribe(self) -> None:
        """Stop listening. Calling it again, or before subscribe, is a no-op."""
        pubsub, self._pubsub = self._pubsub, None
        if pubsub is None:
            return
        try:
            await pubsub.unsubscribe()
        except Exception:
            logger.warning("payment_observer_unsubscribe_failed", owner_id=self.owner_id, exc_info=True)
        finally:
            await pubsub.aclose()
        logger.debug("payment_observer_unsubscribed", owner_id=self.owner_id)

    async def wait_for_change(self, timeout: float) -> bool:
        """Block up to ``timeout`` seconds for a change notification.

        Returns True when one arrived, False on timeout. Without a change feed
        this simply sleeps, leaving the caller to refresh on its own schedule.
        """
        if self._pubsub is None:
            await asyncio.sleep(timeout)
            return False

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return False
            message = await self._pubsub.get_message(
                ignore_subscribe_messages=True,
                timeout=min(remaining, _POLL_INTERVAL_SECONDS),
            )
            if ChangeFeed.decode(message) is not None:
                return True

    async def updates(self, include_current: bool = True) -> AsyncIterator[PaymentSnapshot]:
        """Yield the snapshot each time it changes.

        Reloads on every change notification and at least every
        ``refresh_seconds``; unchanged reloads are not yielded.
        """
        if self.snapshot is None:
            await self.load()
        if include_current:
            yield self.snapshot

        while True:
            await self.wait_for_change(self.refresh_seconds)
            previous = self.snapshot
            current = await self.load()
            if current != previous:
                yield current
