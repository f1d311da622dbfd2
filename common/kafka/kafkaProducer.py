from aiokafka import AIOKafkaProducer
from aiokafka.errors import KafkaError
import logging

from common.events.envelope import Event
from common.events.stock_events import encode_event
from common.kafka.backoff import retry_with_backoff
from common.kafka.topics_config import topic_for


class KafkaProducerSingleton:
    _instance = None
    _bootstrap_servers = None
    max_retries = 5
    backoff_seconds = 0.5
    backoff_cap = 30.0

    @classmethod
    async def get_instance(cls, bootstrap_servers):
        if cls._instance is None:
            cls._bootstrap_servers = bootstrap_servers
            cls._instance = AIOKafkaProducer(
                bootstrap_servers=bootstrap_servers,
                acks="all",
                enable_idempotence=True,
            )
            await cls._instance.start()
            logging.info("Kafka Producer started")
        return cls._instance

    @classmethod
    def configure_retries(cls, max_retries: int, backoff_seconds: float, backoff_cap: float):
        cls.max_retries = max_retries
        cls.backoff_seconds = backoff_seconds
        cls.backoff_cap = backoff_cap

    @classmethod
    async def send_raw(cls, topic: str, key: str | None, value: bytes, headers=None):
        producer = await cls.get_instance(cls._bootstrap_servers)
        await retry_with_backoff(
            producer.send_and_wait,
            topic,
            key=key.encode('utf-8') if key else None,
            value=value,
            headers=headers,
            retry_on=(KafkaError,),
            retries=cls.max_retries,
            base=cls.backoff_seconds,
            cap=cls.backoff_cap,
        )

    @classmethod
    async def send_event(cls, event: Event):
        # The saga id is the partition key so one saga's events tend to stay in order.
        topic = topic_for(event.event_type)
        await cls.send_raw(topic, event.saga_id, encode_event(event))
        logging.info(f"[SAGA-ID: {event.saga_id}] Published {event.event_type} [EVENT-ID: {event.event_id}] to {topic}")

    @classmethod
    async def close(cls):
        if cls._instance:
            await cls._instance.stop()
            logging.info("Kafka Producer stopped")
            cls._instance = None
