from aiokafka import AIOKafkaConsumer, ConsumerRebalanceListener, TopicPartition
from aiokafka.errors import KafkaError
from redis.exceptions import ConnectionError, TimeoutError
from redis.sentinel import MasterNotFoundError
import asyncio
import logging

from common.errors import ConcurrencyExhaustedError, TransientTransportError, ValidationError
from common.kafka.backoff import backoff_delay

# Never retried: the message itself is bad, or contention is abnormal.
FATAL_ERRORS = (ValidationError, ConcurrencyExhaustedError)
# Retried with exponential backoff before the message is dead-lettered.
TRANSIENT_ERRORS = (TransientTransportError, KafkaError, ConnectionError, TimeoutError, MasterNotFoundError)


class KafkaConsumerSingleton:
    """
    Pulls messages for one participant and fans them out to a pool of workers.

    Each partition is pinned to one worker, so a message is handled by exactly
    one worker and a partition is processed in offset order. Offsets are
    committed per partition once the handler returns or the message has been
    dead-lettered; a crash before that means redelivery, never loss. When even
    the dead-letter publish fails the worker stalls on that message, and every
    partition pinned to it waits, until the publish goes through.
    """
    _instance = None
    _task = None
    _workers: list = []
    _queues: list = []
    _rebalance_lock = asyncio.Lock()
    _commit_lock = asyncio.Lock()

    dead_letters = None
    max_retries = 5
    backoff_seconds = 0.5
    backoff_cap = 30.0

    class SafeRebalanceListener(ConsumerRebalanceListener):
        def __init__(self, consumer):
            self.consumer = consumer

        async def on_partitions_revoked(self, revoked):
            logging.info(f"[REBALANCE] Revoking partitions: {revoked}")
            # Let in-flight messages finish and commit before ownership moves.
            async with KafkaConsumerSingleton._rebalance_lock:
                for queue in KafkaConsumerSingleton._queues:
                    await queue.join()

        async def on_partitions_assigned(self, assigned):
            logging.info(f"[REBALANCE] Assigned new partitions: {assigned}")

    @classmethod
    def configure(cls, dead_letters=None, max_retries=None, backoff_seconds=None, backoff_cap=None):
        if dead_letters is not None:
            cls.dead_letters = dead_letters
        if max_retries is not None:
            cls.max_retries = max_retries
        if backoff_seconds is not None:
            cls.backoff_seconds = backoff_seconds
        if backoff_cap is not None:
            cls.backoff_cap = backoff_cap

    @classmethod
    async def get_instance(cls, topics, bootstrap_servers, group_id, callback, workers=4):
        if cls._instance is None:
            cls._instance = AIOKafkaConsumer(
                bootstrap_servers=bootstrap_servers,
                group_id=group_id,
                enable_auto_commit=False,
                auto_offset_reset="earliest",
            )
            listener = cls.SafeRebalanceListener(cls._instance)
            cls._instance.subscribe(topics, listener=listener)
            await cls._instance.start()
            logging.info(f"Kafka Consumer Started on topics: {topics} with {workers} workers")
            cls._queues = [asyncio.Queue(maxsize=100) for _ in range(workers)]
            cls._workers = [asyncio.create_task(cls._work(queue, callback)) for queue in cls._queues]
            cls._task = asyncio.create_task(cls._consume_events())
        return cls._instance

    @classmethod
    def _queue_for(cls, message):
        return cls._queues[hash((message.topic, message.partition)) % len(cls._queues)]

    @classmethod
    async def _consume_events(cls):
        while True:
            try:
                async for message in cls._instance:
                    async with cls._rebalance_lock:
                        await cls._queue_for(message).put(message)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logging.error(f"Error during event consuming: {e}")
                await asyncio.sleep(1)
                continue

    @classmethod
    async def _work(cls, queue, callback):
        while True:
            message = await queue.get()
            try:
                await cls._settle(message, callback)
            finally:
                queue.task_done()

    @classmethod
    async def _settle(cls, message, callback):
        """
        Handle and commit one message, retrying until both succeed.

        The worker owns the partition, so while this loops no later offset of
        that partition can be committed past the unsettled one.
        """
        attempt = 0
        while True:
            try:
                await cls.handle_message(message, callback)
                await cls._commit(message)
                return
            except asyncio.CancelledError:
                raise
            except Exception as e:
                delay = backoff_delay(attempt, cls.backoff_seconds, cls.backoff_cap)
                logging.error(f"Unable to settle message {message.topic}[{message.partition}]@{message.offset}: "
                              f"{type(e).__name__}: {e}. Partition held, retrying in {delay:.2f}s")
                attempt += 1
                await asyncio.sleep(delay)

    @classmethod
    async def _commit(cls, message):
        tp = TopicPartition(message.topic, message.partition)
        async with cls._commit_lock:
            await cls._instance.commit({tp: message.offset + 1})

    @classmethod
    async def handle_message(cls, message, callback):
        """Run ``callback`` for one message applying the retry / dead-letter policy."""
        for attempt in range(cls.max_retries):
            try:
                await callback(message.value)
                return
            except FATAL_ERRORS as e:
                logging.error(f"Non-retryable failure on {message.topic}@{message.offset}: {type(e).__name__}: {e}")
                return await cls._dead_letter(message, e)
            except TRANSIENT_ERRORS as e:
                if attempt >= cls.max_retries - 1:
                    return await cls._dead_letter(message, e)
                delay = backoff_delay(attempt, cls.backoff_seconds, cls.backoff_cap)
                logging.warning(f"Transient failure on {message.topic}@{message.offset} "
                                f"(attempt {attempt + 1}/{cls.max_retries}): {e}. Retrying in {delay:.2f}s")
                await asyncio.sleep(delay)
            except Exception as e:
                logging.exception(f"Unexpected failure on {message.topic}@{message.offset}: {type(e).__name__}: {e}")
                return await cls._dead_letter(message, e)

    @classmethod
    async def _dead_letter(cls, message, error):
        if cls.dead_letters is None:
            raise error
        await cls.dead_letters.publish(message, error)

    @classmethod
    async def close(cls):
        if cls._instance:
            if cls._task:
                cls._task.cancel()
                try:
                    await cls._task
                except asyncio.CancelledError:
                    logging.info("Consumer task cancelled")
            for worker in cls._workers:
                worker.cancel()
            await asyncio.gather(*cls._workers, return_exceptions=True)
            await cls._instance.stop()
            logging.info("Kafka Consumer stopped")
            cls._instance = None
            cls._task = None
            cls._workers = []
            cls._queues = []
