import asyncio
import logging

from common.errors import TransientTransportError


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Delay before retry number ``attempt`` (0-based): base * 2^attempt, capped."""
    return min(cap, base * (2 ** attempt))


async def retry_with_backoff(func, *args, retry_on=(Exception,), retries=5, base=0.5, cap=30.0,
                             logger=logging, **kwargs):
    for attempt in range(retries):
        try:
            return await func(*args, **kwargs)
        except retry_on as e:
            if attempt >= retries - 1:
                raise TransientTransportError(f"Giving up after {retries} attempts: {e}") from e
            delay = backoff_delay(attempt, base, cap)
            logger.warning(f"Attempt {attempt + 1}/{retries} failed: {type(e).__name__}: {e}. Retrying in {delay:.2f}s")
            await asyncio.sleep(delay)
