"""Utility helpers: robust JSON handling, retry with backoff and paced batch processing."""
import asyncio
import json
import logging
import random
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Tuple, Type, TypeVar

from src.errors import RateLimitedError

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

RATE_LIMIT_MARKERS = ("rate", "429", "too many requests", "request rate limit reached")


def safe_load_json(value: Any):
    """Safely parse JSON-like values.

    - If `value` is already a dict or list, return it unchanged.
    - If `value` is a string, attempt `json.loads` and fall back to returning
      the original string on failure.
    - Otherwise return the value as-is.
    """
    if isinstance(value, (dict, list)):
        return value
    if isinstance(value, str):
        try:
            return json.loads(value)
        except Exception:
            return value
    return value


async def sleep_ms(milliseconds: float) -> None:
    await asyncio.sleep(max(milliseconds, 0) / 1000.0)


def is_rate_limit_error(error: BaseException) -> bool:
    if isinstance(error, RateLimitedError):
        return True
    message = str(error).lower()
    return any(marker in message for marker in RATE_LIMIT_MARKERS)


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    base_delay_ms: float = 1000,
    should_retry: Callable[[BaseException], bool] = is_rate_limit_error,
    jitter_ms: float = 1000,
) -> T:
    """Run ``operation`` and retry it with exponential backoff.

    Only errors accepted by ``should_retry`` are retried (rate limiting by
    default); anything else, or the last failed attempt, is re-raised.
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except Exception as error:
            if attempt >= max_retries or not should_retry(error):
                raise
            delay = base_delay_ms * (2 ** attempt) + random.random() * jitter_ms
            logger.info(
                "Rate limit hit, retrying in %.0fms (attempt %d/%d)",
                delay, attempt + 1, max_retries + 1
            )
            await sleep_ms(delay)
            attempt += 1


async def process_batch(
    items: Sequence[T],
    processor: Callable[[T, int], Awaitable[R]],
    batch_size: int = 5,
    delay_between_batches_ms: float = 1000,
    pause_every: Optional[int] = None,
    pause_ms: float = 0,
    stop_on: Tuple[Type[BaseException], ...] = (),
) -> List[R]:
    """Process ``items`` in groups of ``batch_size`` with a delay between groups.

    Items inside a group run concurrently; with ``batch_size=1`` processing is
    strictly sequential. After every ``pause_every`` items the delay is
    replaced by ``pause_ms``. Failed items are logged and left out of the
    result, except exceptions listed in ``stop_on`` which abort the run.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")

    results: List[R] = []
    for start in range(0, len(items), batch_size):
        group = items[start:start + batch_size]
        settled = await asyncio.gather(
            *(processor(item, start + offset) for offset, item in enumerate(group)),
            return_exceptions=True
        )

        for offset, outcome in enumerate(settled):
            if isinstance(outcome, BaseException):
                if stop_on and isinstance(outcome, stop_on):
                    raise outcome
                logger.error("Error processing item %d: %s", start + offset, outcome)
            else:
                results.append(outcome)

        processed = start + len(group)
        if processed < len(items):
            if pause_every and processed % pause_every == 0 and pause_ms:
                await sleep_ms(pause_ms)
            else:
                await sleep_ms(delay_between_batches_ms)

    return results
