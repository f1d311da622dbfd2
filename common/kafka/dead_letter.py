import logging
from datetime import datetime

import msgspec
from msgspec import Struct

from common.clock import Clock, SYSTEM_CLOCK
from common.kafka.topics_config import dead_letter_topic


class DeadLetter(Struct, frozen=True, kw_only=True, rename="camel"):
    topic: str
    partition: int | None
    offset: int | None
    key: str | None
    payload: str
    error_type: str
    error: str
    failed_at: datetime


class DeadLetterPublisher:
    """Parks messages that exhausted validation or retry policy for manual inspection."""

    def __init__(self, producer, logger=logging, clock: Clock = SYSTEM_CLOCK):
        self.producer = producer
        self.logger = logger
        self.clock = clock

    def build(self, message, error: BaseException) -> DeadLetter:
        key = message.key.decode('utf-8', errors='replace') if message.key else None
        return DeadLetter(
            topic=message.topic,
            partition=message.partition,
            offset=message.offset,
            key=key,
            payload=message.value.decode('utf-8', errors='replace') if message.value else "",
            error_type=type(error).__name__,
            error=str(error),
            failed_at=self.clock.now(),
        )

    async def publish(self, message, error: BaseException) -> DeadLetter:
        letter = self.build(message, error)
        topic = dead_letter_topic(message.topic)
        self.logger.error(
            f"Dead-lettering message {message.topic}[{message.partition}]@{message.offset} "
            f"to {topic}: {letter.error_type}: {letter.error}"
        )
        await self.producer.send_raw(topic, letter.key, msgspec.json.encode(letter))
        return letter
