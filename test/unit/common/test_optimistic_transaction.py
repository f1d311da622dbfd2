import unittest
from unittest.mock import AsyncMock, patch

import fakeredis

from common.db.util import optimistic_transaction, retry_db_call
from common.errors import ConcurrencyExhaustedError, TransientTransportError
from redis.exceptions import ConnectionError


class TestOptimisticTransaction(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.db = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer())
        await self.db.set("counter", 0)

    async def asyncTearDown(self):
        await self.db.aclose()

    async def test_commits_body_writes(self):
        async def body(pipe):
            value = int(await pipe.get("counter"))
            pipe.multi()
            pipe.set("counter", value + 1)
            return value + 1

        self.assertEqual(await optimistic_transaction(self.db, ["counter"], body, backoff=0), 1)
        self.assertEqual(int(await self.db.get("counter")), 1)

    async def test_conflicting_write_reruns_body(self):
        attempts = []

        async def body(pipe):
            attempts.append(1)
            value = int(await pipe.get("counter"))
            if len(attempts) == 1:
                # Another writer sneaks in between our read and EXEC.
                await self.db.set("counter", 10)
            pipe.multi()
            pipe.set("counter", value + 1)
            return value + 1

        result = await optimistic_transaction(self.db, ["counter"], body, backoff=0)

        self.assertEqual(len(attempts), 2)
        self.assertEqual(result, 11)
        self.assertEqual(int(await self.db.get("counter")), 11)

    async def test_persistent_conflict_gives_up(self):
        async def body(pipe):
            value = int(await pipe.get("counter"))
            await self.db.incr("counter")
            pipe.multi()
            pipe.set("counter", -1)
            return value

        with self.assertRaises(ConcurrencyExhaustedError) as ctx:
            await optimistic_transaction(self.db, ["counter"], body, max_attempts=3, backoff=0)

        self.assertEqual(ctx.exception.attempts, 3)
        self.assertEqual(ctx.exception.keys, ["counter"])
        self.assertEqual(int(await self.db.get("counter")), 3)

    async def test_body_without_multi_writes_nothing(self):
        async def body(pipe):
            return await pipe.get("counter")

        self.assertEqual(await optimistic_transaction(self.db, ["counter"], body), b"0")

    async def test_body_errors_propagate(self):
        async def body(pipe):
            raise KeyError("boom")

        with self.assertRaises(KeyError):
            await optimistic_transaction(self.db, ["counter"], body)


class TestRetryDbCall(unittest.IsolatedAsyncioTestCase):

    async def test_gives_up_with_transient_error(self):
        calls = []

        async def flaky():
            calls.append(1)
            raise ConnectionError("down")

        with patch("common.db.util.asyncio.sleep", new=AsyncMock()) as sleep:
            with self.assertRaises(TransientTransportError):
                await retry_db_call(flaky)

        self.assertEqual(len(calls), 3)
        # Short inner waits; the consumer owns the long backoff.
        self.assertEqual([c.args[0] for c in sleep.call_args_list], [0.1, 0.2])

    async def test_returns_first_success(self):
        results = iter([ConnectionError("down"), "ok"])

        async def flaky():
            value = next(results)
            if isinstance(value, Exception):
                raise value
            return value

        with patch("common.db.util.asyncio.sleep", new=AsyncMock()):
            self.assertEqual(await retry_db_call(flaky), "ok")


if __name__ == '__main__':
    unittest.main()
