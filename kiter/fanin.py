from __future__ import annotations

import asyncio
import contextlib
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Iterable, Sequence

from .errors import KiterError
from .kinesis import StreamClient
from .models import Record, Shard, ShardBatch, StartPolicy
from .poller import DEFAULT_POLL_INTERVAL_SECONDS, OUTCOME_FAILED, PollerStats, ShardPoller
from .retry import NO_RETRY, RetryPolicy
from .shutdown import Stopped, race_stop

logger = logging.getLogger(__name__)

DEFAULT_BATCHES_PER_SHARD = 4

_CLOSED = object()


def queue_capacity(shard_count: int, batches_per_shard: int) -> int:
    return max(1, shard_count) * max(1, batches_per_shard)


@dataclass(slots=True)
class FanInStats:
    shards: dict[str, PollerStats] = field(default_factory=dict)
    batches_delivered: int = 0
    batches_dropped_empty: int = 0
    records_delivered: int = 0

    @property
    def failed_shards(self) -> list[str]:
        return [
            shard_id for shard_id, stats in self.shards.items() if stats.outcome == OUTCOME_FAILED
        ]

    @property
    def retries(self) -> int:
        return sum(stats.retries for stats in self.shards.values())


class FanInAggregator:
    """Runs one poller per shard and merges their batches into one bounded queue.

    Batches from different shards interleave in arrival order; within a
    shard they keep fetch order. A failing poller is logged and leaves the
    others running.

    Blocking fetches run on a pool with one worker per shard, so a stalled
    shard never holds up another shard's fetch.
    """

    def __init__(
        self,
        *,
        client: StreamClient,
        stream_name: str,
        shards: Sequence[Shard],
        start_policy: StartPolicy,
        stop_event: asyncio.Event,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        batches_per_shard: int = DEFAULT_BATCHES_PER_SHARD,
        retry_policy: RetryPolicy = NO_RETRY,
        poller_factory: Callable[..., ShardPoller] = ShardPoller,
    ) -> None:
        self._stop_event = stop_event
        self._capacity = queue_capacity(len(shards), batches_per_shard)
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, len(shards)),
            thread_name_prefix="kiter-fetch",
        )
        self._pollers = [
            poller_factory(
                client=client,
                stream_name=stream_name,
                shard=shard,
                start_policy=start_policy,
                poll_interval_seconds=poll_interval_seconds,
                retry_policy=retry_policy,
                executor=self._executor,
            )
            for shard in shards
        ]
        self._stats = FanInStats(shards={p.shard.shard_id: p.stats for p in self._pollers})
        self._started = False

    @property
    def stats(self) -> FanInStats:
        return self._stats

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def pollers(self) -> tuple[ShardPoller, ...]:
        return tuple(self._pollers)

    async def stream(self) -> AsyncIterator[ShardBatch]:
        if self._started:
            raise RuntimeError("fan-in aggregator already started")
        self._started = True
        queue: asyncio.Queue[object] = asyncio.Queue(maxsize=self._capacity)
        tasks = [asyncio.create_task(self._run_shard(poller, queue)) for poller in self._pollers]
        closer = asyncio.create_task(self._close_when_done(tasks, queue))
        try:
            while True:
                if self._stop_event.is_set():
                    for item in _drain_nowait(queue):
                        yield item
                    return
                try:
                    item = await race_stop(queue.get(), self._stop_event)
                except Stopped:
                    continue
                if item is _CLOSED:
                    return
                yield item
        finally:
            closer.cancel()
            if not self._stop_event.is_set():
                for task in tasks:
                    task.cancel()
            await asyncio.gather(closer, *tasks, return_exceptions=True)
            # Abandoned fetches finish on their own threads.
            self._executor.shutdown(wait=False, cancel_futures=True)

    async def drain(self, sink: Callable[[Sequence[Record]], None]) -> FanInStats:
        async with contextlib.aclosing(self.stream()) as batches:
            async for item in batches:
                if item.batch.is_empty:
                    self._stats.batches_dropped_empty += 1
                    continue
                sink(item.batch.records)
                self._stats.batches_delivered += 1
                self._stats.records_delivered += len(item.batch.records)
        return self._stats

    async def _run_shard(self, poller: ShardPoller, queue: asyncio.Queue[object]) -> None:
        shard_id = poller.shard.shard_id
        try:
            async with contextlib.aclosing(poller.batches(self._stop_event)) as batches:
                async for batch in batches:
                    try:
                        await race_stop(queue.put(ShardBatch(shard_id, batch)), self._stop_event)
                    except Stopped:
                        return
        except asyncio.CancelledError:
            raise
        except KiterError as exc:
            logger.error("shard poller failed: shard_id=%s error=%s", shard_id, exc)
        except Exception:
            logger.exception("shard poller crashed: shard_id=%s", shard_id)

    async def _close_when_done(
        self,
        tasks: Iterable[asyncio.Task[None]],
        queue: asyncio.Queue[object],
    ) -> None:
        await asyncio.gather(*tasks, return_exceptions=True)
        await queue.put(_CLOSED)


def _drain_nowait(queue: asyncio.Queue[object]) -> list[ShardBatch]:
    items: list[ShardBatch] = []
    while True:
        try:
            item = queue.get_nowait()
        except asyncio.QueueEmpty:
            return items
        if item is _CLOSED:
            return items
        items.append(item)  # type: ignore[arg-type]
