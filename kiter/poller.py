from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from concurrent.futures import Executor
from dataclasses import dataclass
from typing import AsyncIterator, Callable

from .kinesis import StreamClient
from .models import RecordBatch, Shard, StartPolicy
from .resolver import resolve_position_token
from .retry import NO_RETRY, RetryPolicy, call_with_retry
from .shutdown import Stopped, sleep_or_stop

logger = logging.getLogger(__name__)

STATE_NEED_TOKEN = "need_token"
STATE_HAVE_TOKEN = "have_token"

OUTCOME_RUNNING = "running"
OUTCOME_CLOSED = "closed"
OUTCOME_STOPPED = "stopped"
OUTCOME_FAILED = "failed"

DEFAULT_POLL_INTERVAL_SECONDS = 1.0


@dataclass(slots=True)
class PollerStats:
    shard_id: str
    batches: int = 0
    records: int = 0
    empty_batches: int = 0
    retries: int = 0
    outcome: str = OUTCOME_RUNNING
    error: str | None = None


class ShardPoller:
    def __init__(
        self,
        *,
        client: StreamClient,
        stream_name: str,
        shard: Shard,
        start_policy: StartPolicy,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        retry_policy: RetryPolicy = NO_RETRY,
        monotonic: Callable[[], float] | None = None,
        executor: Executor | None = None,
    ) -> None:
        self._client = client
        self._stream_name = stream_name
        self._shard = shard
        self._start_policy = start_policy
        self._poll_interval_seconds = max(0.0, poll_interval_seconds)
        self._retry_policy = retry_policy
        self._monotonic = monotonic or time.monotonic
        self._executor = executor
        self._token: str | None = None
        self._started = False
        self._stats = PollerStats(shard_id=shard.shard_id)

    @property
    def shard(self) -> Shard:
        return self._shard

    @property
    def stats(self) -> PollerStats:
        return self._stats

    @property
    def state(self) -> str:
        return STATE_NEED_TOKEN if self._token is None else STATE_HAVE_TOKEN

    def _count_retry(self) -> None:
        self._stats.retries += 1

    async def batches(self, stop_event: asyncio.Event) -> AsyncIterator[RecordBatch]:
        """Yield one batch per tick until the shard closes or a stop is requested.

        Each poller runs once: its token lives and dies inside this generator.
        Errors from resolution or fetching propagate to the caller.
        """
        if self._started:
            raise RuntimeError(f"shard poller for {self._shard.shard_id} already started")
        self._started = True
        try:
            async with contextlib.aclosing(self._poll(stop_event)) as batches:
                async for batch in batches:
                    yield batch
        except Stopped:
            self._stats.outcome = OUTCOME_STOPPED
        except Exception as exc:
            self._stats.outcome = OUTCOME_FAILED
            self._stats.error = str(exc) or type(exc).__name__
            raise
        finally:
            self._token = None
            if self._stats.outcome == OUTCOME_RUNNING:
                self._stats.outcome = OUTCOME_STOPPED

    async def _poll(self, stop_event: asyncio.Event) -> AsyncIterator[RecordBatch]:
        shard_id = self._shard.shard_id
        next_tick_at = self._monotonic()
        while not stop_event.is_set():
            if self._token is None:
                self._token = await resolve_position_token(
                    self._client,
                    self._stream_name,
                    self._shard,
                    self._start_policy,
                    stop_event=stop_event,
                    retry_policy=self._retry_policy,
                    on_retry=lambda _exc, _delay: self._count_retry(),
                    executor=self._executor,
                )
                next_tick_at = self._monotonic()

            wait_seconds = next_tick_at - self._monotonic()
            if await sleep_or_stop(wait_seconds, stop_event):
                return
            next_tick_at = max(next_tick_at + self._poll_interval_seconds, self._monotonic())

            batch = await call_with_retry(
                self._client.get_records,
                self._token,
                retry_policy=self._retry_policy,
                stop_event=stop_event,
                label=f"GetRecords shard_id={shard_id}",
                on_retry=lambda _exc, _delay: self._count_retry(),
                executor=self._executor,
            )
            self._token = batch.next_token
            self._stats.batches += 1
            self._stats.records += len(batch.records)
            if batch.is_empty:
                self._stats.empty_batches += 1
            logger.debug(
                "fetched: shard_id=%s records=%d millis_behind_latest=%s",
                shard_id,
                len(batch.records),
                batch.millis_behind_latest,
            )
            if batch.is_final:
                self._stats.outcome = OUTCOME_CLOSED
                logger.info("shard closed: shard_id=%s batches=%d", shard_id, self._stats.batches)
            yield batch
            if batch.is_final:
                return
