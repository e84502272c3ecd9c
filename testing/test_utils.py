import asyncio

import pytest

from src.errors import RateLimitedError
from src.utils import is_rate_limit_error, process_batch, retry_with_backoff, safe_load_json


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    delays = []

    async def fake_sleep(ms):
        delays.append(ms)

    monkeypatch.setattr("src.utils.sleep_ms", fake_sleep)
    return delays


def test_safe_load_json():
    assert safe_load_json('{"a": 1}') == {"a": 1}
    assert safe_load_json("not json") == "not json"
    assert safe_load_json([1]) == [1]
    assert safe_load_json(None) is None


def test_is_rate_limit_error():
    assert is_rate_limit_error(RateLimitedError("slow down"))
    assert is_rate_limit_error(Exception("HTTP 429"))
    assert is_rate_limit_error(Exception("Too Many Requests"))
    assert not is_rate_limit_error(Exception("boom"))


def test_retry_with_backoff_retries_rate_limits(no_sleep):
    attempts = []

    async def operation():
        attempts.append(1)
        if len(attempts) < 3:
            raise RateLimitedError("rate limit")
        return "ok"

    assert asyncio.run(retry_with_backoff(operation, max_retries=3, base_delay_ms=100, jitter_ms=0)) == "ok"
    assert len(attempts) == 3
    assert no_sleep == [100, 200]


def test_retry_with_backoff_does_not_retry_other_errors(no_sleep):
    attempts = []

    async def operation():
        attempts.append(1)
        raise ValueError("bad input")

    with pytest.raises(ValueError):
        asyncio.run(retry_with_backoff(operation))
    assert len(attempts) == 1
    assert no_sleep == []


def test_retry_with_backoff_gives_up(no_sleep):
    async def operation():
        raise RateLimitedError("rate limit")

    with pytest.raises(RateLimitedError):
        asyncio.run(retry_with_backoff(operation, max_retries=2, jitter_ms=0))
    assert len(no_sleep) == 2


def test_process_batch_sequential_with_pauses(no_sleep):
    order = []

    async def processor(item, index):
        order.append((item, index))
        return item * 2

    results = asyncio.run(process_batch(
        [1, 2, 3, 4, 5], processor, batch_size=1, delay_between_batches_ms=10, pause_every=2, pause_ms=99
    ))

    assert results == [2, 4, 6, 8, 10]
    assert order == [(1, 0), (2, 1), (3, 2), (4, 3), (5, 4)]
    # no delay after the last item; the longer pause after every second item
    assert no_sleep == [10, 99, 10, 99]


def test_process_batch_skips_failures_but_stops_on_listed_errors():
    async def processor(item, index):
        if item == "bad":
            raise ValueError("bad item")
        if item == "stop":
            raise KeyError("stop")
        return item

    assert asyncio.run(process_batch(["a", "bad", "b"], processor, batch_size=2)) == ["a", "b"]

    with pytest.raises(KeyError):
        asyncio.run(process_batch(["a", "stop", "b"], processor, batch_size=1, stop_on=(KeyError,)))


def test_process_batch_rejects_zero_batch_size():
    async def processor(item, index):
        return item

    with pytest.raises(ValueError):
        asyncio.run(process_batch([1], processor, batch_size=0))
