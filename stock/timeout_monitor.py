import asyncio
import logging
import uuid
from datetime import timedelta

from common.clock import Clock, SYSTEM_CLOCK
from common.events.stock_events import SagaTimedOut
from common.otlp_grcp_config import SagaInstruments
from common.saga.saga import is_closed

TIMEOUT_NAMESPACE = uuid.UUID("6f1c2a4e-3b7d-4c55-9a0e-2d9f8b1e7c31")


def timeout_event_id(saga_id: str) -> str:
    # Same id on every rescan, so repeated signals for one saga deduplicate.
    return str(uuid.uuid5(TIMEOUT_NAMESPACE, saga_id))


class SagaTimeoutMonitor:
    """
    Periodically looks for sagas past their deadline and emits SagaTimedOut.

    The signal goes through the broker like any other event, so the
    compensation handler processes it with the same dedup and state gating.
    A signalled saga is pushed back by ``retry_seconds`` and only signalled
    again if it is still open by then.
    """

    def __init__(self, sagas, producer, clock: Clock = SYSTEM_CLOCK, logger=logging,
                 interval: float = 5, retry_seconds: float = 60, batch_size: int = 100,
                 service_name: str = "stock-service", instruments: SagaInstruments | None = None):
        self.sagas = sagas
        self.producer = producer
        self.clock = clock
        self.logger = logger
        self.interval = interval
        self.retry_seconds = retry_seconds
        self.batch_size = batch_size
        self.service_name = service_name
        self.instruments = instruments or SagaInstruments(service_name)
        self._task = None

    async def scan_once(self) -> list[SagaTimedOut]:
        now = self.clock.now()
        signals = []
        for saga_id in await self.sagas.due(now, self.batch_size):
            record = await self.sagas.get(saga_id)
            if record is None or is_closed(record.state):
                await self.sagas.forget_deadline(saga_id)
                continue
            signal = SagaTimedOut(
                saga_id=saga_id,
                event_id=timeout_event_id(saga_id),
                occurred_at=now,
                source=self.service_name,
                order_id=record.order_id,
                deadline=record.deadline,
            )
            await self.producer.send_event(signal)
            await self.sagas.defer(saga_id, now + timedelta(seconds=self.retry_seconds))
            self.logger.warning(f"[SAGA-ID: {saga_id}] Deadline {record.deadline} passed while {record.state}; "
                                f"timeout signalled")
            self.instruments.timeouts.add(1, {"stage": "emitted"})
            signals.append(signal)
        return signals

    async def run(self):
        while True:
            try:
                await self.scan_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.error(f"Timeout scan failed: {type(e).__name__}: {e}")
            await asyncio.sleep(self.interval)

    def start(self):
        if self._task is None:
            self._task = asyncio.create_task(self.run())
            self.logger.info(f"Saga timeout monitor started (every {self.interval}s)")

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                self.logger.info("Saga timeout monitor stopped")
            self._task = None
