from common.events.stock_events import (
    OrderCreated,
    SagaCompleted,
    SagaTimedOut,
    StockReleaseRequested,
    StockReservationFailed,
    decode_event,
)
from common.kafka.dead_letter import DeadLetterPublisher
from common.kafka.kafkaConsumer import KafkaConsumerSingleton as KafkaConsumer
from common.kafka.kafkaProducer import KafkaProducerSingleton as KafkaProducer
from common.kafka.topics_config import STOCK_SUBSCRIPTIONS


class Kafka:
    def __init__(self, logger, reservation, compensation, bootstrap_servers, group_id="stock-group",
                 topics=None, workers=4, max_retries=5, backoff_seconds=0.5, backoff_cap=30.0) -> None:
        self.logger = logger
        self.bootstrap_servers = bootstrap_servers
        self.group_id = group_id
        self.topics = topics or STOCK_SUBSCRIPTIONS
        self.workers = workers
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self.backoff_cap = backoff_cap
        self.handlers = {
            OrderCreated: reservation.handle_order_created,
            SagaCompleted: reservation.handle_saga_completed,
            StockReleaseRequested: compensation.handle_release_requested,
            StockReservationFailed: compensation.handle_reservation_failed,
            SagaTimedOut: compensation.handle_timeout,
        }

    async def handle_event(self, raw):
        event = decode_event(raw)
        self.logger.info(f"Received {event.event_type} [SAGA-ID: {event.saga_id}] [EVENT-ID: {event.event_id}]")
        handler = self.handlers.get(type(event))
        if handler is None:
            self.logger.info(f"Event type not handled by stock: {event.event_type}")
            return None
        return await handler(event)

    async def init(self):
        self.logger.info("Initializing Kafka")
        KafkaProducer.configure_retries(self.max_retries, self.backoff_seconds, self.backoff_cap)
        await KafkaProducer.get_instance(self.bootstrap_servers)
        KafkaConsumer.configure(
            dead_letters=DeadLetterPublisher(KafkaProducer, self.logger),
            max_retries=self.max_retries,
            backoff_seconds=self.backoff_seconds,
            backoff_cap=self.backoff_cap,
        )
        await KafkaConsumer.get_instance(
            self.topics,
            self.bootstrap_servers,
            self.group_id,
            self.handle_event,
            workers=self.workers,
        )

    async def close(self):
        self.logger.info("Closing Kafka")
        await KafkaConsumer.close()
        await KafkaProducer.close()
