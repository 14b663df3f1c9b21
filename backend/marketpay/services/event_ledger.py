"""EventLedger: write-once record of processed provider events."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketpay.db.base import dialect_insert
from marketpay.db.models.processed_event import ProcessedEvent


class EventLedger:
    """Idempotency gate for provider events.

    ``admit`` must run inside the same transaction as the event's effects: if
    applying the effects fails, the rollback also removes the admission and
    the provider's retry is processed again. Concurrent deliveries of the same
    event serialize on the primary key; the loser inserts nothing.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def admit(self, session: AsyncSession, event_id: str, event_type: str | None = None) -> bool:
        """Record event_id. Return True the first time it is seen, False on any repeat."""
        stmt = (
            dialect_insert(session, ProcessedEvent)
            .values(provider_event_id=event_id, event_type=event_type)
            .on_conflict_do_nothing(index_elements=["provider_event_id"])
        )
        result = await session.execute(stmt)
        return result.rowcount == 1

    async def is_processed(self, event_id: str) -> bool:
        """Cheap committed-state check used before any provider I/O."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(ProcessedEvent.provider_event_id).where(ProcessedEvent.provider_event_id == event_id)
            )
            return result.scalar_one_or_none() is not None
