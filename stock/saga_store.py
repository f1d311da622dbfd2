import logging
from datetime import datetime

from msgspec import msgpack, structs

from common.clock import Clock, SYSTEM_CLOCK
from common.db.util import optimistic_transaction, retry_db_call
from common.saga.saga import SagaState, ensure_transition, is_closed
from stock.models import SagaRecord

DEADLINES_KEY = "saga:deadlines"


def saga_key(saga_id: str) -> str:
    return f"saga:{saga_id}"


class SagaStore:
    """
    Local view of every saga this participant has seen, plus their deadlines.

    Open sagas are kept until they close; closed ones expire after
    ``retention_seconds``, which must match the dedup retention so a late
    order for a cancelled saga is still refused.
    """

    def __init__(self, db, clock: Clock = SYSTEM_CLOCK, logger=logging, retention_seconds: int = 7 * 24 * 3600):
        self.db = db
        self.clock = clock
        self.logger = logger
        self.retention_seconds = retention_seconds

    async def get(self, saga_id: str) -> SagaRecord | None:
        raw = await retry_db_call(self.db.get, saga_key(saga_id))
        return msgpack.decode(raw, type=SagaRecord) if raw else None

    async def open(self, saga_id: str, order_id: str, items, deadline: datetime) -> SagaRecord:
        """Record the saga as Pending with its deadline unless it is already known."""
        key = saga_key(saga_id)

        async def body(pipe):
            existing = await self.read(pipe, saga_id)
            if existing is not None:
                return existing
            record = SagaRecord(
                saga_id=saga_id,
                order_id=order_id,
                state=SagaState.PENDING,
                items=list(items),
                deadline=deadline,
                updated_at=self.clock.now(),
                version=1,
            )
            pipe.multi()
            self.stage_save(pipe, record)
            self.logger.info(f"[SAGA-ID: {saga_id}] Opened as Pending, deadline {deadline.isoformat()}")
            return record

        return await optimistic_transaction(self.db, [key], body, logger=self.logger)

    def advance(self, record: SagaRecord, target: SagaState, reason: str | None = None) -> SagaRecord:
        ensure_transition(record.saga_id, record.state, target)
        return structs.replace(
            record,
            state=target,
            reason=reason if reason is not None else record.reason,
            updated_at=self.clock.now(),
            version=record.version + 1,
        )

    def tombstone(self, saga_id: str, order_id: str, items, reason: str) -> SagaRecord:
        """A saga cancelled before this participant ever saw its order."""
        return SagaRecord(
            saga_id=saga_id,
            order_id=order_id,
            state=SagaState.FAILED,
            items=list(items),
            reason=reason,
            updated_at=self.clock.now(),
            version=1,
        )

    async def due(self, now: datetime, limit: int = 100) -> list[str]:
        members = await retry_db_call(
            self.db.zrangebyscore, DEADLINES_KEY, "-inf", now.timestamp(), start=0, num=limit)
        return [m.decode() if isinstance(m, bytes) else m for m in members]

    async def defer(self, saga_id: str, until: datetime) -> None:
        await retry_db_call(self.db.zadd, DEADLINES_KEY, {saga_id: until.timestamp()}, xx=True)

    async def forget_deadline(self, saga_id: str) -> None:
        await retry_db_call(self.db.zrem, DEADLINES_KEY, saga_id)

    # In-transaction variants: the caller WATCHes saga_key(saga_id).

    @staticmethod
    async def read(pipe, saga_id: str) -> SagaRecord | None:
        raw = await pipe.get(saga_key(saga_id))
        return msgpack.decode(raw, type=SagaRecord) if raw else None

    def stage_save(self, pipe, record: SagaRecord) -> None:
        if is_closed(record.state):
            # Closed records only need to outlive redeliveries of the saga's events.
            pipe.set(saga_key(record.saga_id), msgpack.encode(record), ex=self.retention_seconds)
            pipe.zrem(DEADLINES_KEY, record.saga_id)
            return
        pipe.set(saga_key(record.saga_id), msgpack.encode(record))
        if record.deadline is None:
            pipe.zrem(DEADLINES_KEY, record.saga_id)
        else:
            pipe.zadd(DEADLINES_KEY, {record.saga_id: record.deadline.timestamp()})
