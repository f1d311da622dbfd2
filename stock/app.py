import logging

import redis.asyncio as redis
from redis.asyncio import Sentinel
from quart import Quart, jsonify, abort

from common.clock import SYSTEM_CLOCK, set_default_clock
from common.kafka.kafkaProducer import KafkaProducerSingleton
from common.otlp_grcp_config import SagaInstruments, configure_telemetry
from stock import config
from stock.compensation import CompensationHandler
from stock.dedup import DeduplicationStore
from stock.ledger import InventoryLedger
from stock.reservation import StockReservationParticipant
from stock.routing.kafka import Kafka
from stock.saga_store import SagaStore
from stock.timeout_monitor import SagaTimeoutMonitor

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[
        logging.StreamHandler()
    ]
)

app = Quart(config.SERVICE_NAME)

state = {}


def create_db():
    if config.REDIS_SENTINEL_HOSTS:
        sentinel = Sentinel(
            [
                (host.split(':')[0], int(host.split(':')[1]))
                for host in config.REDIS_SENTINEL_HOSTS.split(',')
            ],
            password=config.REDIS_PASSWORD
        )
        return sentinel.master_for(
            service_name=config.REDIS_SERVICE_NAME,
            password=config.REDIS_PASSWORD,
            db=config.REDIS_DB
        )
    return redis.from_url(config.REDIS_URL, password=config.REDIS_PASSWORD, db=config.REDIS_DB)


def build_participants(db, producer, logger, clock=SYSTEM_CLOCK):
    set_default_clock(clock)
    instruments = SagaInstruments(config.SERVICE_NAME)
    ledger = InventoryLedger(db, clock, logger, config.RESERVATION_MAX_ATTEMPTS, config.RESERVATION_BACKOFF_SECONDS)
    dedup = DeduplicationStore(db, clock, config.DEDUP_RETENTION_SECONDS, logger,
                               publish_lease_seconds=config.DEDUP_PUBLISH_LEASE_SECONDS)
    sagas = SagaStore(db, clock, logger, retention_seconds=config.DEDUP_RETENTION_SECONDS)
    shared = dict(
        clock=clock,
        logger=logger,
        instruments=instruments,
        service_name=config.SERVICE_NAME,
        max_attempts=config.RESERVATION_MAX_ATTEMPTS,
        backoff=config.RESERVATION_BACKOFF_SECONDS,
    )
    reservation = StockReservationParticipant(
        db, ledger, dedup, sagas, producer, saga_timeout_seconds=config.SAGA_TIMEOUT_SECONDS, **shared)
    compensation = CompensationHandler(db, ledger, dedup, sagas, producer, **shared)
    monitor = SagaTimeoutMonitor(
        sagas,
        producer,
        clock,
        logger,
        interval=config.TIMEOUT_SCAN_INTERVAL,
        retry_seconds=config.TIMEOUT_RETRY_SECONDS,
        service_name=config.SERVICE_NAME,
        instruments=instruments,
    )
    return ledger, reservation, compensation, monitor


@app.get('/health')
async def health():
    return jsonify({"service": config.SERVICE_NAME, "status": "ok"})


@app.get('/stock/<product_id>')
async def find_stock(product_id: str):
    record = await state["ledger"].get_stock(product_id)
    if record is None:
        abort(404, f"Stock for product: {product_id} not found!")
    return jsonify(
        {
            "product_id": record.product_id,
            "quantity": record.quantity,
            "version": record.version,
            "updated_at": record.updated_at.isoformat(),
        }
    )


@app.before_serving
async def startup():
    app.logger.info("Starting Stock Service")
    configure_telemetry(config.SERVICE_NAME, config.OTLP_ENDPOINT, enabled=config.TELEMETRY_ENABLED)
    db = create_db()
    ledger, reservation, compensation, monitor = build_participants(db, KafkaProducerSingleton, app.logger)
    kafka = Kafka(
        app.logger,
        reservation,
        compensation,
        config.KAFKA_BOOTSTRAP_SERVERS,
        group_id=config.CONSUMER_GROUP,
        workers=config.CONSUMER_WORKERS,
        max_retries=config.TRANSPORT_MAX_RETRIES,
        backoff_seconds=config.TRANSPORT_BACKOFF_SECONDS,
        backoff_cap=config.TRANSPORT_BACKOFF_CAP,
    )
    await kafka.init()
    monitor.start()
    state.update(db=db, ledger=ledger, kafka=kafka, monitor=monitor)


@app.after_serving
async def shutdown():
    app.logger.info("Stopping Stock Service")
    await state["monitor"].stop()
    await state["kafka"].close()
    await state["db"].aclose()


if __name__ == '__main__':
    app.run(host="0.0.0.0", port=8000, debug=True)
    app.logger.setLevel(logging.INFO)
else:
    hypercorn_logger = logging.getLogger('hypercorn.error')
    app.logger.handlers = hypercorn_logger.handlers
    app.logger.setLevel(hypercorn_logger.level)
