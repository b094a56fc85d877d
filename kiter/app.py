from __future__ import annotations

import asyncio
import logging
import os
import sys
from typing import Sequence, TextIO

from .config import Config
from .errors import ProtocolError, TransportError
from .fanin import FanInAggregator, FanInStats
from .kinesis import DEFAULT_MAX_POOL_CONNECTIONS, KinesisClient, StreamClient
from .models import Record
from .render import build_renderer
from .resolver import resolve_shards
from .shutdown import ShutdownCoordinator, Stopped

logger = logging.getLogger(__name__)


def build_client(
    config: Config,
    *,
    max_pool_connections: int = DEFAULT_MAX_POOL_CONNECTIONS,
) -> KinesisClient:
    return KinesisClient(
        region=config.region,
        endpoint_url=config.endpoint_url,
        get_records_limit=config.get_records_limit,
        max_pool_connections=max_pool_connections,
    )


def _detach_stdout(out: TextIO) -> None:
    # Later flushes of a closed stdout, including the one at interpreter exit, go nowhere.
    if out is not sys.stdout:
        return
    devnull = os.open(os.devnull, os.O_WRONLY)
    os.dup2(devnull, sys.stdout.fileno())


def _log_stop_summary(stats: FanInStats, reason: str) -> None:
    logger.info(
        "tail stop: reason=%s batches_delivered=%d batches_dropped_empty=%d records=%d retries=%d failed_shards=%s",
        reason,
        stats.batches_delivered,
        stats.batches_dropped_empty,
        stats.records_delivered,
        stats.retries,
        ",".join(stats.failed_shards) or "<none>",
    )


async def run_tail_async(
    config: Config,
    *,
    client: StreamClient | None = None,
    out: TextIO | None = None,
    shutdown: ShutdownCoordinator | None = None,
    install_signals: bool = True,
) -> int:
    start_policy = config.validate()
    renderer = build_renderer(config.data_format, config.verbose)
    out = out if out is not None else sys.stdout
    owns_client = client is None
    if client is None:
        client = build_client(config)
    shutdown = shutdown if shutdown is not None else ShutdownCoordinator()
    if install_signals:
        shutdown.install()
    stream_name = str(config.stream_name)
    retry_policy = config.retry_policy()

    try:
        try:
            shards = await resolve_shards(
                client,
                stream_name,
                config.shard_id_list(),
                stop_event=shutdown.stop_event,
                retry_policy=retry_policy,
            )
        except Stopped:
            return 0
        except (TransportError, ProtocolError) as exc:
            logger.error("shard enumeration failed: stream=%s error=%s", stream_name, exc)
            return 1
        if not shards:
            logger.warning("no shards to poll: stream=%s", stream_name)
            return 0
        if owns_client and len(shards) > DEFAULT_MAX_POOL_CONNECTIONS:
            # One pooled connection per concurrently fetching shard.
            client = build_client(config, max_pool_connections=len(shards))

        logger.info(
            "tail start: stream=%s shards=%d policy=%s poll_interval_seconds=%s",
            stream_name,
            len(shards),
            start_policy.describe(),
            config.poll_interval_seconds,
        )
        aggregator = FanInAggregator(
            client=client,
            stream_name=stream_name,
            shards=shards,
            start_policy=start_policy,
            stop_event=shutdown.stop_event,
            poll_interval_seconds=config.poll_interval_seconds,
            batches_per_shard=config.queue_batches_per_shard,
            retry_policy=retry_policy,
        )

        out_closed = False

        def _write(records: Sequence[Record]) -> None:
            nonlocal out_closed
            text = renderer(records)
            if out_closed or not text:
                return
            try:
                out.write(text)
                out.write("\n")
                out.flush()
            except BrokenPipeError:
                out_closed = True
                _detach_stdout(out)
                shutdown.request_stop("stdout closed")

        stats = await aggregator.drain(_write)
    finally:
        if install_signals:
            shutdown.uninstall()

    if shutdown.stopping:
        _log_stop_summary(stats, shutdown.stop_reason or "signal")
        return 0
    _log_stop_summary(stats, "exhausted")
    return 1 if stats.failed_shards else 0


def run_tail(config: Config, *, client: StreamClient | None = None) -> int:
    try:
        return asyncio.run(run_tail_async(config, client=client))
    except KeyboardInterrupt:
        return 0
