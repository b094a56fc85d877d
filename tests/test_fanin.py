import asyncio
import contextlib

import pytest

from fake_stream import FakeStreamClient, Final, rec
from kiter.errors import TransportError
from kiter.fanin import FanInAggregator, queue_capacity
from kiter.models import Shard, StartPolicy
from kiter.poller import OUTCOME_CLOSED, OUTCOME_FAILED, OUTCOME_STOPPED

SHARD_A = "shardId-000000000000"
SHARD_B = "shardId-000000000001"


def _aggregator(client, stop_event, *, interval=0.0, batches_per_shard=4, shards=None):
    return FanInAggregator(
        client=client,
        stream_name="events",
        shards=shards if shards is not None else client.shards,
        start_policy=StartPolicy.latest(),
        stop_event=stop_event,
        poll_interval_seconds=interval,
        batches_per_shard=batches_per_shard,
    )


def test_queue_capacity_scales_with_shards():
    assert queue_capacity(3, 4) == 12
    assert queue_capacity(0, 4) == 4
    assert queue_capacity(2, 0) == 2


@pytest.mark.asyncio
async def test_one_poller_per_shard_and_per_shard_order():
    client = FakeStreamClient(
        {
            SHARD_A: [[rec("a1")], [rec("a2")], Final([rec("a3")])],
            SHARD_B: [[rec("b1")], Final([rec("b2")])],
        }
    )
    stop_event = asyncio.Event()
    agg = _aggregator(client, stop_event)
    items = []
    async with contextlib.aclosing(agg.stream()) as stream:
        async for item in stream:
            items.append(item)
    by_shard = {}
    for item in items:
        by_shard.setdefault(item.shard_id, []).extend(r.sequence_number for r in item.batch.records)
    assert by_shard == {SHARD_A: ["a1", "a2", "a3"], SHARD_B: ["b1", "b2"]}
    assert sorted(call[1] for call in client.iterator_calls) == [SHARD_A, SHARD_B]
    assert not stop_event.is_set()


@pytest.mark.asyncio
async def test_drain_drops_empty_batches():
    client = FakeStreamClient({SHARD_A: [[], [rec(1)], [], Final([])]})
    agg = _aggregator(client, asyncio.Event())
    rendered = []
    stats = await agg.drain(lambda records: rendered.append([r.sequence_number for r in records]))
    assert rendered == [["1"]]
    assert stats.batches_delivered == 1
    assert stats.batches_dropped_empty == 3
    assert stats.records_delivered == 1
    assert stats.shards[SHARD_A].outcome == OUTCOME_CLOSED


@pytest.mark.asyncio
async def test_failed_poller_does_not_stop_others():
    client = FakeStreamClient(
        {SHARD_A: [], SHARD_B: [[rec(1)], [rec(2)], Final([rec(3)])]},
        iterator_errors={
            SHARD_A: [TransportError("denied", operation="GetShardIterator", code="AccessDenied")]
        },
    )
    agg = _aggregator(client, asyncio.Event())
    rendered = []
    stats = await agg.drain(lambda records: rendered.extend(r.sequence_number for r in records))
    assert rendered == ["1", "2", "3"]
    assert stats.failed_shards == [SHARD_A]
    assert stats.shards[SHARD_A].outcome == OUTCOME_FAILED
    assert "AccessDenied" in stats.shards[SHARD_A].error
    assert stats.shards[SHARD_B].outcome == OUTCOME_CLOSED


@pytest.mark.asyncio
async def test_blocked_shard_does_not_block_other_shard():
    client = FakeStreamClient({SHARD_A: [], SHARD_B: []}, block_shards={SHARD_A})
    stop_event = asyncio.Event()
    agg = _aggregator(client, stop_event, interval=0.01)
    seen_b = 0
    try:
        async with contextlib.aclosing(agg.stream()) as stream:
            async for item in stream:
                if item.shard_id == SHARD_B:
                    seen_b += 1
                if seen_b >= 3:
                    stop_event.set()
        calls_a = client.calls_for(SHARD_A)
    finally:
        client.release.set()
    assert seen_b >= 3
    assert calls_a == []


@pytest.mark.asyncio
async def test_many_stalled_shards_do_not_starve_a_live_shard():
    stalled = [f"shardId-stalled-{i:03d}" for i in range(64)]
    live = "shardId-live"
    client = FakeStreamClient(
        {**{shard_id: [] for shard_id in stalled}, live: []},
        block_shards=set(stalled),
    )
    stop_event = asyncio.Event()
    agg = _aggregator(client, stop_event, interval=0.01)
    seen_live = 0
    try:
        async with contextlib.aclosing(agg.stream()) as stream:
            async with asyncio.timeout(2.0):
                async for item in stream:
                    if item.shard_id == live:
                        seen_live += 1
                    if seen_live >= 3:
                        stop_event.set()
    finally:
        client.release.set()
    assert seen_live >= 3


@pytest.mark.asyncio
async def test_full_queue_delays_producers_without_error():
    script_a = [[rec(f"a{i}")] for i in range(5)] + [Final([])]
    script_b = [[rec(f"b{i}")] for i in range(5)] + [Final([])]
    client = FakeStreamClient({SHARD_A: script_a, SHARD_B: script_b})
    agg = _aggregator(client, asyncio.Event(), batches_per_shard=1)
    assert agg.capacity == 2
    async with contextlib.aclosing(agg.stream()) as stream:
        first = await stream.__anext__()
        await asyncio.sleep(0.1)
        # one delivered, two buffered, at most one blocked put per shard
        assert len(client.records_calls) <= 5
        rest = [item async for item in stream]
    items = [first, *rest]
    assert len(items) == 12
    for shard_id, prefix in ((SHARD_A, "a"), (SHARD_B, "b")):
        seqs = [
            r.sequence_number for item in items if item.shard_id == shard_id for r in item.batch.records
        ]
        assert seqs == [f"{prefix}{i}" for i in range(5)]
    assert all(stats.outcome == OUTCOME_CLOSED for stats in agg.stats.shards.values())


@pytest.mark.asyncio
async def test_stop_delivers_buffered_batches_then_ends():
    script_a = [[rec(f"a{i}")] for i in range(3)]
    script_b = [[rec(f"b{i}")] for i in range(3)]
    client = FakeStreamClient({SHARD_A: script_a, SHARD_B: script_b})
    stop_event = asyncio.Event()
    agg = _aggregator(client, stop_event, interval=0.01, batches_per_shard=100)
    async with contextlib.aclosing(agg.stream()) as stream:
        first = await stream.__anext__()
        await asyncio.sleep(0.1)
        stop_event.set()
        rest = await asyncio.wait_for(_collect_rest(stream), timeout=1.0)
    delivered = [
        r.sequence_number for item in [first, *rest] for r in item.batch.records
    ]
    assert sorted(delivered) == ["a0", "a1", "a2", "b0", "b1", "b2"]
    assert all(stats.outcome == OUTCOME_STOPPED for stats in agg.stats.shards.values())


@pytest.mark.asyncio
async def test_stop_ends_all_pollers_within_one_tick():
    client = FakeStreamClient({SHARD_A: [], SHARD_B: []})
    stop_event = asyncio.Event()
    agg = _aggregator(client, stop_event, interval=0.2)
    task = asyncio.create_task(agg.drain(lambda records: None))
    await asyncio.sleep(0.05)
    stop_event.set()
    stats = await asyncio.wait_for(task, timeout=0.2)
    assert [s.outcome for s in stats.shards.values()] == [OUTCOME_STOPPED, OUTCOME_STOPPED]
    assert stats.batches_dropped_empty == 2


@pytest.mark.asyncio
async def test_stream_is_single_use():
    client = FakeStreamClient({SHARD_A: [Final([])]})
    agg = _aggregator(client, asyncio.Event())
    await agg.drain(lambda records: None)
    with pytest.raises(RuntimeError):
        await agg.drain(lambda records: None)


async def _collect_rest(stream):
    return [item async for item in stream]
