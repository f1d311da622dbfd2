import logging

from msgspec import msgpack, structs

from common.clock import Clock, SYSTEM_CLOCK
from common.db.util import optimistic_transaction, retry_db_call
from stock.models import ProcessedEvent


def processed_key(event_id: str) -> str:
    return f"processed:{event_id}"


def publish_lease_key(event_id: str) -> str:
    return f"publishing:{event_id}"


class DeduplicationStore:
    """
    Remembers which event ids already produced their side effect.

    The entry also keeps the outcome event the processing produced, and
    whether that outcome reached the broker, so a redelivery after a crash
    between commit and publish can finish the job without redoing it.

    Only the holder of the publish lease sends a stored outcome. The delivery
    that commits the entry takes the lease in the same transaction; any other
    delivery may take it over only once it has expired or been released.
    """

    def __init__(self, db, clock: Clock = SYSTEM_CLOCK, retention_seconds: int = 7 * 24 * 3600, logger=logging,
                 publish_lease_seconds: int = 30):
        self.db = db
        self.clock = clock
        self.retention_seconds = retention_seconds
        self.logger = logger
        self.publish_lease_seconds = publish_lease_seconds

    async def has_processed(self, event_id: str) -> bool:
        return bool(await retry_db_call(self.db.exists, processed_key(event_id)))

    async def get(self, event_id: str) -> ProcessedEvent | None:
        raw = await retry_db_call(self.db.get, processed_key(event_id))
        return msgpack.decode(raw, type=ProcessedEvent) if raw else None

    async def mark_processed(self, event_id: str, outcome: bytes | None = None) -> bool:
        """Conditional insert; True only for the caller that recorded the event first."""
        entry = self._entry(event_id, outcome)
        recorded = bool(await retry_db_call(
            self.db.set, processed_key(event_id), msgpack.encode(entry), nx=True, ex=self.retention_seconds))
        if recorded and outcome is not None:
            await self.claim_publish(event_id)
        return recorded

    async def mark_published(self, event_id: str) -> None:
        key = processed_key(event_id)

        async def body(pipe):
            raw = await pipe.get(key)
            if not raw:
                return
            entry = msgpack.decode(raw, type=ProcessedEvent)
            if entry.published:
                return
            pipe.multi()
            pipe.set(key, msgpack.encode(structs.replace(entry, published=True)), keepttl=True)

        await optimistic_transaction(self.db, [key], body, logger=self.logger)

    async def claim_publish(self, event_id: str) -> bool:
        return bool(await retry_db_call(
            self.db.set, publish_lease_key(event_id), 1, nx=True, ex=self.publish_lease_seconds))

    async def release_publish(self, event_id: str) -> None:
        await retry_db_call(self.db.delete, publish_lease_key(event_id))

    # In-transaction variants: the caller WATCHes processed_key(event_id).

    @staticmethod
    async def read(pipe, event_id: str) -> ProcessedEvent | None:
        raw = await pipe.get(processed_key(event_id))
        return msgpack.decode(raw, type=ProcessedEvent) if raw else None

    def stage_mark(self, pipe, event_id: str, outcome: bytes | None = None) -> None:
        pipe.set(processed_key(event_id), msgpack.encode(self._entry(event_id, outcome)), ex=self.retention_seconds)
        if outcome is not None:
            pipe.set(publish_lease_key(event_id), 1, ex=self.publish_lease_seconds)

    def _entry(self, event_id: str, outcome: bytes | None) -> ProcessedEvent:
        # Nothing to publish means nothing can be left unpublished.
        return ProcessedEvent(
            event_id=event_id,
            processed_at=self.clock.now(),
            outcome=outcome,
            published=outcome is None,
        )
