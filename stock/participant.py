import logging
from abc import ABC

from common.clock import Clock, SYSTEM_CLOCK
from common.db.util import optimistic_transaction
from common.events.envelope import Event
from common.events.stock_events import decode_event
from common.otlp_grcp_config import SagaInstruments
from stock.models import ProcessedEvent


class Duplicate:
    """Returned from a transaction body when the event was already processed."""

    def __init__(self, processed: ProcessedEvent):
        self.processed = processed


class SagaParticipant(ABC):
    """Plumbing shared by the handlers that react to saga events."""

    def __init__(self, db, ledger, dedup, sagas, producer, clock: Clock = SYSTEM_CLOCK, logger=logging,
                 instruments: SagaInstruments | None = None, service_name: str = "stock-service",
                 max_attempts: int = 5, backoff: float = 0.05):
        self.db = db
        self.ledger = ledger
        self.dedup = dedup
        self.sagas = sagas
        self.producer = producer
        self.clock = clock
        self.logger = logger
        self.instruments = instruments or SagaInstruments(service_name)
        self.service_name = service_name
        self.max_attempts = max_attempts
        self.backoff = backoff

    async def _transaction(self, keys, body):
        return await optimistic_transaction(
            self.db, keys, body, max_attempts=self.max_attempts, backoff=self.backoff, logger=self.logger)

    async def _already_processed(self, event: Event) -> bool:
        processed = await self.dedup.get(event.event_id)
        if processed is None:
            return False
        await self._settle_duplicate(event, processed)
        return True

    async def _settle_duplicate(self, event: Event, processed: ProcessedEvent) -> None:
        self.instruments.duplicates.add(1, {"event.type": event.event_type})
        if processed.published or not processed.outcome:
            self.logger.info(f"[SAGA-ID: {event.saga_id}] Event already processed [EVENT-ID: {event.event_id}]")
            return
        if not await self.dedup.claim_publish(event.event_id):
            # Another delivery committed it and is still publishing.
            self.logger.info(f"[SAGA-ID: {event.saga_id}] Outcome for [EVENT-ID: {event.event_id}] "
                             f"is being published by another delivery")
            return
        # Committed earlier but the outcome never made it to the broker.
        self.logger.info(f"[SAGA-ID: {event.saga_id}] Republishing stored outcome for [EVENT-ID: {event.event_id}]")
        await self._publish(event.event_id, decode_event(processed.outcome))

    async def _settle(self, event: Event, result):
        """Finish a committed transaction: publish its outcome, if any."""
        if isinstance(result, Duplicate):
            await self._settle_duplicate(event, result.processed)
            return None
        if result is not None:
            await self._publish(event.event_id, result)
        return result

    async def _publish(self, trigger_event_id: str, outcome: Event) -> None:
        """Send ``outcome`` while holding the publish lease of its trigger."""
        try:
            await self.producer.send_event(outcome)
        except Exception:
            # Hand the lease back so the redelivery can publish straight away.
            await self.dedup.release_publish(trigger_event_id)
            raise
        await self.dedup.mark_published(trigger_event_id)
