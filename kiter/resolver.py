from __future__ import annotations

import asyncio
import logging
from concurrent.futures import Executor
from typing import Callable, Iterable

from .errors import ProtocolError, TransportError
from .kinesis import StreamClient
from .models import Shard, StartPolicy
from .retry import NO_RETRY, RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)


async def resolve_position_token(
    client: StreamClient,
    stream_name: str,
    shard: Shard,
    start_policy: StartPolicy,
    *,
    stop_event: asyncio.Event,
    retry_policy: RetryPolicy = NO_RETRY,
    on_retry: Callable[[TransportError, float], None] | None = None,
    executor: Executor | None = None,
) -> str:
    token = await call_with_retry(
        client.get_shard_iterator,
        stream_name,
        shard.shard_id,
        start_policy,
        retry_policy=retry_policy,
        stop_event=stop_event,
        label=f"GetShardIterator shard_id={shard.shard_id}",
        on_retry=on_retry,
        executor=executor,
    )
    if not token:
        raise ProtocolError(f"no iterator token for shard {shard.shard_id}")
    logger.info(
        "position token resolved: shard_id=%s policy=%s",
        shard.shard_id,
        start_policy.describe(),
    )
    return token


def _dedupe_shards(shards: Iterable[Shard]) -> list[Shard]:
    seen: set[str] = set()
    unique: list[Shard] = []
    for shard in shards:
        if shard.shard_id in seen:
            continue
        seen.add(shard.shard_id)
        unique.append(shard)
    return unique


async def resolve_shards(
    client: StreamClient,
    stream_name: str,
    shard_ids: Iterable[str] = (),
    *,
    stop_event: asyncio.Event,
    retry_policy: RetryPolicy = NO_RETRY,
) -> list[Shard]:
    explicit = [Shard(shard_id=str(shard_id)) for shard_id in shard_ids if str(shard_id)]
    if explicit:
        return _dedupe_shards(explicit)
    shards = await call_with_retry(
        client.list_shards,
        stream_name,
        retry_policy=retry_policy,
        stop_event=stop_event,
        label=f"ListShards stream={stream_name}",
    )
    return _dedupe_shards(shards)
