from common.events.envelope import Event
from common.events.stock_events import (
    SagaTimedOut,
    StockReleased,
    StockReleaseRequested,
    StockReservationFailed,
    encode_event,
)
from common.saga.saga import SagaState
from stock.dedup import processed_key
from stock.ledger import stock_key, summarize
from stock.participant import Duplicate, SagaParticipant
from stock.saga_store import saga_key

TIMEOUT_REASON = "saga timed out"


class CompensationHandler(SagaParticipant):
    """
    Gives reserved stock back when a later step fails or the saga times out.

    Every decision is taken from the saga record read inside the WATCHed
    transaction, so arrival order does not matter:

    - Reserved                         -> release, Compensated, emit StockReleased
    - Failed / Compensated / Completed -> acknowledged, nothing changes
    - Pending or unknown               -> recorded as Failed so a late
                                          reservation is refused
    """

    async def handle_release_requested(self, event: StockReleaseRequested):
        return await self._compensate(event, event.order_id, event.items, reason="release requested")

    async def handle_reservation_failed(self, event: StockReservationFailed):
        if event.source == self.service_name:
            # Our own failure announcement; nothing was reserved.
            return None
        reason = f"downstream failure from {event.source or 'unknown'}: {event.reason}".rstrip(": ")
        return await self._compensate(event, event.order_id, [], reason=reason)

    async def handle_timeout(self, event: SagaTimedOut):
        self.instruments.timeouts.add(1, {"stage": "handled"})
        return await self._compensate(event, event.order_id, [], reason=TIMEOUT_REASON, timed_out=True)

    async def _compensate(self, event: Event, order_id: str, requested_items, reason: str, timed_out=False):
        with self.instruments.span("stock.compensate", event):
            if await self._already_processed(event):
                return None

            async def body(pipe):
                processed = await self.dedup.read(pipe, event.event_id)
                if processed is not None:
                    return Duplicate(processed)

                saga = await self.sagas.read(pipe, event.saga_id)

                if saga is None:
                    self.logger.warning(f"[SAGA-ID: {event.saga_id}] Compensation before any reservation "
                                        f"({reason}); recording saga as cancelled")
                    pipe.multi()
                    self.sagas.stage_save(pipe, self.sagas.tombstone(
                        event.saga_id, order_id, requested_items, reason=f"cancelled: {reason}"))
                    self.dedup.stage_mark(pipe, event.event_id)
                    return None

                if saga.state == SagaState.PENDING:
                    outcome = None
                    if timed_out:
                        outcome = event.derive(StockReservationFailed, self.service_name, self.clock,
                                               order_id=saga.order_id, reason=TIMEOUT_REASON)
                    self.logger.info(f"[SAGA-ID: {event.saga_id}] Pending saga cancelled ({reason})")
                    pipe.multi()
                    self.sagas.stage_save(pipe, self.sagas.advance(saga, SagaState.FAILED, reason=reason))
                    self.dedup.stage_mark(pipe, event.event_id, encode_event(outcome) if outcome else None)
                    return outcome

                if saga.state != SagaState.RESERVED:
                    self.logger.info(f"[SAGA-ID: {event.saga_id}] Nothing to compensate, saga is {saga.state}")
                    pipe.multi()
                    self.dedup.stage_mark(pipe, event.event_id)
                    return None

                demand = summarize(saga.items)
                if requested_items and summarize(requested_items) != demand:
                    self.logger.warning(f"[SAGA-ID: {event.saga_id}] Release request items differ from the "
                                        f"reservation; releasing what was reserved")
                await pipe.watch(*[stock_key(pid) for pid in demand])
                records = await self.ledger.read_many(pipe, demand)
                updated = self.ledger.plan_release(demand, records)
                outcome = event.derive(StockReleased, self.service_name, self.clock, order_id=saga.order_id)

                pipe.multi()
                self.ledger.stage_writes(pipe, updated)
                self.sagas.stage_save(pipe, self.sagas.advance(saga, SagaState.COMPENSATED, reason=reason))
                self.dedup.stage_mark(pipe, event.event_id, encode_event(outcome))
                return outcome

            result = await self._transaction([processed_key(event.event_id), saga_key(event.saga_id)], body)
            outcome = await self._settle(event, result)

        if isinstance(outcome, StockReleased):
            self.logger.info(f"[SAGA-ID: {event.saga_id}] Stock released for order {outcome.order_id} ({reason})")
            self.instruments.compensations.add(1, {"outcome": "released"})
        else:
            self.instruments.compensations.add(1, {"outcome": "noop"})
        return outcome
