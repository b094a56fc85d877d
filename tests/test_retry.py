import asyncio
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from kiter.retry import NO_RETRY, RetryPolicy, call_with_retry
from kiter.shutdown import Stopped


def test_backoff_doubles_up_to_cap():
    policy = RetryPolicy(max_retries=5, backoff_seconds=0.5, max_backoff_seconds=3.0)
    assert [policy.backoff(n) for n in range(5)] == [0.5, 1.0, 2.0, 3.0, 3.0]


def test_can_retry_bounds():
    policy = RetryPolicy(max_retries=2, backoff_seconds=1.0, max_backoff_seconds=1.0)
    assert policy.can_retry(0)
    assert policy.can_retry(1)
    assert not policy.can_retry(2)
    assert not NO_RETRY.can_retry(0)


def test_negative_backoff_clamped():
    policy = RetryPolicy(max_retries=1, backoff_seconds=-1.0, max_backoff_seconds=5.0)
    assert policy.backoff(3) == 0.0


@pytest.mark.asyncio
async def test_call_runs_on_given_executor():
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="fetch-test")
    try:
        name = await call_with_retry(
            lambda: threading.current_thread().name,
            retry_policy=NO_RETRY,
            stop_event=asyncio.Event(),
            label="thread name",
            executor=executor,
        )
    finally:
        executor.shutdown(wait=True)
    assert name.startswith("fetch-test")


@pytest.mark.asyncio
async def test_call_not_started_once_stopped():
    calls = []
    stop_event = asyncio.Event()
    stop_event.set()
    with pytest.raises(Stopped):
        await call_with_retry(
            calls.append,
            1,
            retry_policy=NO_RETRY,
            stop_event=stop_event,
            label="append",
        )
    assert calls == []
