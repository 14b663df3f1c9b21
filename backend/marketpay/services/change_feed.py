"""ChangeFeed: Redis Pub/Sub notifications of committed payment-table changes.

Channel format: {prefix}:{owner_id}:changes

Messages are notifications, not state: subscribers re-read a snapshot when one
arrives. A lost message is therefore harmless as long as the subscriber also
refreshes periodically (see PaymentStateObserver).
"""

import json
from collections.abc import Iterable

import structlog
from redis.asyncio import Redis
from redis.asyncio.client import PubSub

from marketpay.services.payment_store import StoreChange

logger = structlog.get_logger(__name__)


class ChangeFeed:
    """Publishes and subscribes to per-owner change channels."""

    def __init__(self, redis: Redis, prefix: str = "payments"):
        self.redis = redis
        self.prefix = prefix

    def channel(self, owner_id: str) -> str:
        return f"{self.prefix}:{owner_id}:changes"

    async def publish(self, change: StoreChange) -> None:
        """Publish one change. Redis errors are logged, never raised.

        The database commit has already happened; failing the caller here would
        make the provider redeliver an event that is already applied.
        """
        try:
            await self.redis.publish(self.channel(change.owner_id), json.dumps(change.to_message()))
        except Exception:
            logger.warning(
                "change_feed_publish_failed",
                owner_id=change.owner_id,
                table=change.table,
                exc_info=True,
            )

    async def publish_many(self, changes: Iterable[StoreChange]) -> None:
        # Collapse duplicates so one event triggers one reload per owner/table
        seen: set[tuple[str, str]] = set()
        for change in changes:
            key = (change.owner_id, change.table)
            if key in seen:
                continue
            seen.add(key)
            await self.publish(change)

    async def subscribe(self, owner_id: str) -> PubSub:
        """Open a Pub/Sub handle subscribed to the owner's channel.

        The caller must ``unsubscribe`` and ``aclose`` it (PaymentStateObserver does).
        """
        pubsub = self.redis.pubsub()
        await pubsub.subscribe(self.channel(owner_id))
        return pubsub

    @staticmethod
    def decode(message: dict | None) -> dict | None:
        """Return the JSON body of a Pub/Sub data message, or None."""
        if not message or message.get("type") != "message":
            return None
        try:
            return json.loads(message["data"])
        except (json.JSONDecodeError, TypeError):
            return None
