import asyncio
import logging
from redis.exceptions import ConnectionError, TimeoutError, WatchError
from redis.sentinel import MasterNotFoundError

from common.errors import ConcurrencyExhaustedError, TransientTransportError
from common.kafka.backoff import backoff_delay


async def retry_db_call(func, *args, retries=3, backoff=0.1, backoff_cap=1.0, **kwargs):
    # Kept short: the consumer retries the whole event on TransientTransportError.
    for attempt in range(retries):
        try:
            return await func(*args, **kwargs)
        except (MasterNotFoundError, ConnectionError, TimeoutError) as e:
            logging.info(f"Attempt {attempt + 1} failed: {e},  {type(e).__name__}:")
            if attempt < retries - 1:
                await asyncio.sleep(backoff_delay(attempt, backoff, backoff_cap))
                continue
            else:
                raise TransientTransportError(f"Redis unavailable: {e}") from e


async def optimistic_transaction(db, keys, body, max_attempts=5, backoff=0.05, backoff_cap=1.0, logger=logging):
    """
    Run ``body(pipe)`` under WATCH on ``keys`` and retry on conflicts.

    ``body`` reads in immediate mode, may WATCH further keys, then calls
    ``pipe.multi()`` and queues its writes; its return value is handed back
    once EXEC succeeds. If ``body`` returns without calling ``multi()``
    nothing is written. A WatchError means another writer touched a watched
    key between our read and EXEC: the whole body is re-run against fresh
    state, at most ``max_attempts`` times.
    """
    for attempt in range(max_attempts):
        try:
            async with db.pipeline(transaction=True) as pipe:
                if keys:
                    await pipe.watch(*keys)
                result = await body(pipe)
                if pipe.explicit_transaction:
                    await pipe.execute()
                return result
        except WatchError:
            delay = backoff_delay(attempt, backoff, backoff_cap)
            logger.warning(f"Concurrency conflict on {list(keys)} (attempt {attempt + 1}/{max_attempts}). "
                           f"Retrying in {delay:.3f}s")
            await asyncio.sleep(delay)
        except (MasterNotFoundError, ConnectionError, TimeoutError) as e:
            raise TransientTransportError(f"Redis unavailable: {e}") from e
    raise ConcurrencyExhaustedError(keys, max_attempts)
