from datetime import timedelta

from common.events.stock_events import (
    OrderCreated,
    SagaCompleted,
    StockLine,
    StockReservationFailed,
    StockReserved,
    encode_event,
)
from common.saga.saga import SagaState
from stock.dedup import processed_key
from stock.ledger import stock_key, summarize
from stock.models import SagaRecord
from stock.participant import Duplicate, SagaParticipant
from stock.saga_store import saga_key


def shortfall_reason(result) -> str:
    details = ", ".join(
        f"{s.product_id} requested {s.requested}, available {s.available}" for s in result.shortfalls
    )
    return f"Insufficient stock: {details}"


class StockReservationParticipant(SagaParticipant):
    """
    Reacts to OrderCreated by holding stock for every line of the order.

    Per saga: Pending -> Reserved | Failed. The dedup mark, the saga record
    and the stock rows are written in one MULTI/EXEC, so a crash can neither
    lose a decrement nor apply it twice.
    """

    def __init__(self, *args, saga_timeout_seconds: float = 300, **kwargs):
        super().__init__(*args, **kwargs)
        self.saga_timeout_seconds = saga_timeout_seconds

    async def handle_order_created(self, event: OrderCreated):
        event.validate()
        with self.instruments.span("stock.reserve", event):
            if await self._already_processed(event):
                return None

            demand = summarize(event.items)
            lines = [StockLine(product_id=pid, quantity=qty) for pid, qty in demand.items()]
            deadline = self.clock.now() + timedelta(seconds=self.saga_timeout_seconds)
            await self.sagas.open(event.saga_id, event.order_id, lines, deadline)

            async def body(pipe):
                processed = await self.dedup.read(pipe, event.event_id)
                if processed is not None:
                    return Duplicate(processed)

                saga = await self.sagas.read(pipe, event.saga_id)
                if saga is None:
                    # Record vanished between open() and now (e.g. manual cleanup).
                    saga = SagaRecord(saga_id=event.saga_id, order_id=event.order_id, state=SagaState.PENDING,
                                      items=lines, deadline=deadline, version=1)
                if saga.state != SagaState.PENDING:
                    self.logger.info(f"[SAGA-ID: {event.saga_id}] Saga already {saga.state}; "
                                     f"order {event.order_id} will not reserve stock")
                    pipe.multi()
                    self.dedup.stage_mark(pipe, event.event_id)
                    return None

                records = await self.ledger.read_many(pipe, demand)
                result, updated = self.ledger.plan_reserve(demand, records)
                if result.success:
                    saga = self.sagas.advance(saga, SagaState.RESERVED)
                    outcome = event.derive(StockReserved, self.service_name, self.clock, order_id=event.order_id)
                else:
                    reason = shortfall_reason(result)
                    saga = self.sagas.advance(saga, SagaState.FAILED, reason=reason)
                    outcome = event.derive(
                        StockReservationFailed,
                        self.service_name,
                        self.clock,
                        order_id=event.order_id,
                        product_id=result.insufficient_items[0],
                        product_ids=result.insufficient_items,
                        reason=reason,
                    )

                pipe.multi()
                self.ledger.stage_writes(pipe, updated)
                self.sagas.stage_save(pipe, saga)
                self.dedup.stage_mark(pipe, event.event_id, encode_event(outcome))
                return outcome

            keys = [processed_key(event.event_id), saga_key(event.saga_id)] + [stock_key(pid) for pid in demand]
            result = await self._transaction(keys, body)
            outcome = await self._settle(event, result)

        if isinstance(outcome, StockReserved):
            self.logger.info(f"[SAGA-ID: {event.saga_id}] Stock reserved for order {event.order_id}")
            self.instruments.reservations.add(1, {"outcome": "reserved"})
        elif isinstance(outcome, StockReservationFailed):
            self.logger.info(f"[SAGA-ID: {event.saga_id}] Reservation failed for order {event.order_id}: {outcome.reason}")
            self.instruments.reservations.add(1, {"outcome": "failed"})
        return outcome

    async def handle_saga_completed(self, event: SagaCompleted):
        with self.instruments.span("stock.complete", event):
            if await self._already_processed(event):
                return None

            async def body(pipe):
                processed = await self.dedup.read(pipe, event.event_id)
                if processed is not None:
                    return Duplicate(processed)
                saga = await self.sagas.read(pipe, event.saga_id)
                pipe.multi()
                if saga is not None and saga.state == SagaState.RESERVED:
                    self.sagas.stage_save(pipe, self.sagas.advance(saga, SagaState.COMPLETED))
                    self.logger.info(f"[SAGA-ID: {event.saga_id}] Completed; reservation is final")
                else:
                    state = saga.state if saga else "unknown"
                    self.logger.warning(f"[SAGA-ID: {event.saga_id}] Completion received while {state}; ignored")
                self.dedup.stage_mark(pipe, event.event_id)
                return None

            result = await self._transaction([processed_key(event.event_id), saga_key(event.saga_id)], body)
            return await self._settle(event, result)
