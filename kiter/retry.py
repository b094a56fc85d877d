from __future__ import annotations

import asyncio
import functools
import logging
from concurrent.futures import Executor
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

from .errors import TransportError
from .shutdown import Stopped, race_stop, sleep_or_stop

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int
    backoff_seconds: float
    max_backoff_seconds: float

    def can_retry(self, retries: int) -> bool:
        if self.max_retries <= 0:
            return False
        return retries < self.max_retries

    def backoff(self, retries: int) -> float:
        base = max(0.0, self.backoff_seconds)
        ceiling = max(0.0, self.max_backoff_seconds)
        return min(ceiling, base * (2 ** max(0, retries)))


NO_RETRY = RetryPolicy(max_retries=0, backoff_seconds=0.0, max_backoff_seconds=0.0)


async def call_with_retry(
    func: Callable[..., T],
    *args: Any,
    retry_policy: RetryPolicy,
    stop_event: asyncio.Event,
    label: str,
    on_retry: Callable[[TransportError, float], None] | None = None,
    executor: Executor | None = None,
) -> T:
    """Run a blocking transport call off-loop, retrying retryable failures.

    The call runs on ``executor`` when one is given, else on the loop's
    default executor.

    Raises ``Stopped`` if the stop signal fires during the call or a backoff
    wait; the last ``TransportError`` once retries are exhausted.
    """
    loop = asyncio.get_running_loop()
    retries = 0
    while True:
        if stop_event.is_set():
            raise Stopped()
        try:
            return await race_stop(
                loop.run_in_executor(executor, functools.partial(func, *args)),
                stop_event,
            )
        except TransportError as exc:
            if not exc.retryable or not retry_policy.can_retry(retries):
                raise
            delay = retry_policy.backoff(retries)
            retries += 1
            logger.warning(
                "retrying: call=%s attempt=%d delay_seconds=%.3f error=%s",
                label,
                retries,
                delay,
                exc,
            )
            if on_retry is not None:
                on_retry(exc, delay)
            if await sleep_or_stop(delay, stop_event):
                raise Stopped() from exc
