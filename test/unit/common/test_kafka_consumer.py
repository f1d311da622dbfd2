import asyncio
import json
import unittest
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

from aiokafka import TopicPartition
from aiokafka.errors import KafkaConnectionError
from redis.exceptions import ResponseError

from common.clock import FixedClock
from common.errors import ConcurrencyExhaustedError, TransientTransportError, ValidationError
from common.kafka.backoff import backoff_delay, retry_with_backoff
from common.kafka.dead_letter import DeadLetterPublisher
from common.kafka.kafkaConsumer import KafkaConsumerSingleton


def message(value=b'{"type": "OrderCreated"}', topic="order.created", partition=1, offset=42, key=b"saga-1"):
    return SimpleNamespace(topic=topic, partition=partition, offset=offset, key=key, value=value)


class TestConsumerPolicy(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        saved = {name: getattr(KafkaConsumerSingleton, name)
                 for name in ("dead_letters", "max_retries", "backoff_seconds", "backoff_cap")}
        self.addCleanup(lambda: [setattr(KafkaConsumerSingleton, k, v) for k, v in saved.items()])

        self.dead_letters = AsyncMock()
        KafkaConsumerSingleton.configure(dead_letters=self.dead_letters, max_retries=3,
                                         backoff_seconds=0.5, backoff_cap=30.0)
        sleep_patcher = patch("common.kafka.kafkaConsumer.asyncio.sleep", new_callable=AsyncMock)
        self.sleep = sleep_patcher.start()
        self.addCleanup(sleep_patcher.stop)

    async def test_success_is_not_dead_lettered(self):
        callback = AsyncMock()
        msg = message()

        await KafkaConsumerSingleton.handle_message(msg, callback)

        callback.assert_called_once_with(msg.value)
        self.dead_letters.publish.assert_not_called()

    async def test_fatal_errors_go_straight_to_dead_letter(self):
        for error in (ValidationError("bad"), ConcurrencyExhaustedError(["stock:P1"], 5)):
            with self.subTest(error=type(error).__name__):
                self.dead_letters.reset_mock()
                callback = AsyncMock(side_effect=error)
                msg = message()

                await KafkaConsumerSingleton.handle_message(msg, callback)

                callback.assert_called_once()
                self.dead_letters.publish.assert_called_once_with(msg, error)

    async def test_transient_error_is_retried(self):
        callback = AsyncMock(side_effect=[TransientTransportError("redis down"), KafkaConnectionError(), None])

        await KafkaConsumerSingleton.handle_message(message(), callback)

        self.assertEqual(callback.call_count, 3)
        self.assertEqual([c.args[0] for c in self.sleep.call_args_list], [0.5, 1.0])
        self.dead_letters.publish.assert_not_called()

    async def test_transient_error_exhausts_to_dead_letter(self):
        error = TransientTransportError("redis down")
        callback = AsyncMock(side_effect=error)
        msg = message()

        await KafkaConsumerSingleton.handle_message(msg, callback)

        self.assertEqual(callback.call_count, 3)
        self.dead_letters.publish.assert_called_once_with(msg, error)

    async def test_without_dead_letter_publisher_error_escapes(self):
        KafkaConsumerSingleton.dead_letters = None

        with self.assertRaises(ValidationError):
            await KafkaConsumerSingleton.handle_message(message(), AsyncMock(side_effect=ValidationError("bad")))

    async def test_unexpected_errors_are_dead_lettered(self):
        error = ResponseError("WRONGTYPE Operation against a key holding the wrong kind of value")
        msg = message()

        await KafkaConsumerSingleton.handle_message(msg, AsyncMock(side_effect=error))

        self.dead_letters.publish.assert_called_once_with(msg, error)


class TestConsumerWorker(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        saved = {name: getattr(KafkaConsumerSingleton, name)
                 for name in ("_instance", "dead_letters", "max_retries", "backoff_seconds", "backoff_cap")}
        self.addCleanup(lambda: [setattr(KafkaConsumerSingleton, k, v) for k, v in saved.items()])

        self.client = AsyncMock()
        KafkaConsumerSingleton._instance = self.client
        self.dead_letters = AsyncMock()
        KafkaConsumerSingleton.configure(dead_letters=self.dead_letters, max_retries=2,
                                         backoff_seconds=0, backoff_cap=0)
        self.first = message(value=b"first", partition=0, offset=10)
        self.second = message(value=b"second", partition=0, offset=11)

    async def start_worker(self, callback):
        queue = asyncio.Queue()
        queue.put_nowait(self.first)
        queue.put_nowait(self.second)
        task = asyncio.create_task(KafkaConsumerSingleton._work(queue, callback))

        async def stop():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        self.addAsyncCleanup(stop)
        return queue

    async def test_later_offset_not_committed_while_message_unsettled(self):
        self.dead_letters.publish.side_effect = KafkaConnectionError()
        callback = AsyncMock(side_effect=TransientTransportError("redis down"))

        await self.start_worker(callback)
        for _ in range(50):
            await asyncio.sleep(0)

        self.client.commit.assert_not_called()
        self.assertGreater(self.dead_letters.publish.call_count, 1)
        self.assertEqual({c.args[0] for c in callback.call_args_list}, {b"first"})

    async def test_offsets_commit_in_order_once_dead_letter_recovers(self):
        self.dead_letters.publish.side_effect = [KafkaConnectionError(), None]

        async def callback(value):
            if value == b"first":
                raise ValidationError("bad payload")

        queue = await self.start_worker(callback)
        await asyncio.wait_for(queue.join(), timeout=1)

        tp = TopicPartition("order.created", 0)
        self.assertEqual([c.args[0] for c in self.client.commit.call_args_list], [{tp: 11}, {tp: 12}])
        self.assertEqual(self.dead_letters.publish.call_count, 2)
        self.assertIs(self.dead_letters.publish.call_args.args[0], self.first)


class TestDeadLetterPublisher(unittest.IsolatedAsyncioTestCase):

    async def test_publish_to_dead_letter_topic(self):
        producer = AsyncMock()
        clock = FixedClock()
        publisher = DeadLetterPublisher(producer, clock=clock)

        letter = await publisher.publish(message(), ValidationError("Event rejected"))

        self.assertEqual(letter.error_type, "ValidationError")
        self.assertEqual(letter.payload, '{"type": "OrderCreated"}')
        self.assertEqual(letter.failed_at, clock.now())
        topic, key, value = producer.send_raw.call_args.args
        self.assertEqual(topic, "order.created.dead-letter")
        self.assertEqual(key, "saga-1")
        body = json.loads(value)
        self.assertEqual(body["offset"], 42)
        self.assertEqual(body["errorType"], "ValidationError")

    def test_build_without_key_or_value(self):
        letter = DeadLetterPublisher(AsyncMock()).build(message(value=None, key=None), RuntimeError("x"))

        self.assertIsNone(letter.key)
        self.assertEqual(letter.payload, "")


class TestBackoff(unittest.IsolatedAsyncioTestCase):

    def test_delay_doubles_until_cap(self):
        self.assertEqual([backoff_delay(a, 0.5, 3.0) for a in range(5)], [0.5, 1.0, 2.0, 3.0, 3.0])

    async def test_retry_with_backoff_gives_up(self):
        func = AsyncMock(side_effect=KafkaConnectionError())

        with patch("common.kafka.backoff.asyncio.sleep", new_callable=AsyncMock):
            with self.assertRaises(TransientTransportError):
                await retry_with_backoff(func, retry_on=(KafkaConnectionError,), retries=3)

        self.assertEqual(func.call_count, 3)

    async def test_retry_with_backoff_returns_value(self):
        func = AsyncMock(side_effect=[KafkaConnectionError(), "sent"])

        with patch("common.kafka.backoff.asyncio.sleep", new_callable=AsyncMock):
            self.assertEqual(await retry_with_backoff(func, "a", retry_on=(KafkaConnectionError,)), "sent")

        func.assert_called_with("a")


if __name__ == '__main__':
    unittest.main()
