from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Protocol

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    HTTPClientError,
    ReadTimeoutError,
)

from .errors import ConfigError, ProtocolError, TransportError
from .models import (
    ITERATOR_AT_TIMESTAMP,
    SEQUENCE_ITERATOR_TYPES,
    Record,
    RecordBatch,
    Shard,
    StartPolicy,
)

logger = logging.getLogger(__name__)

OP_LIST_SHARDS = "ListShards"
OP_GET_SHARD_ITERATOR = "GetShardIterator"
OP_GET_RECORDS = "GetRecords"

RETRYABLE_ERROR_CODES = frozenset(
    {
        "ProvisionedThroughputExceededException",
        "LimitExceededException",
        "ThrottlingException",
        "Throttling",
        "RequestLimitExceeded",
        "InternalFailure",
        "InternalFailureException",
        "ServiceUnavailable",
        "ServiceUnavailableException",
        "KMSThrottlingException",
    }
)

# Failures below the HTTP response layer: DNS, refused or reset connections, timeouts.
RETRYABLE_BOTOCORE_ERRORS = (
    EndpointConnectionError,
    ConnectTimeoutError,
    ConnectionClosedError,
    ReadTimeoutError,
    HTTPClientError,
)

DEFAULT_MAX_POOL_CONNECTIONS = 10


class StreamClient(Protocol):
    def list_shards(self, stream_name: str) -> list[Shard]:
        ...

    def get_shard_iterator(
        self,
        stream_name: str,
        shard_id: str,
        start_policy: StartPolicy,
    ) -> str:
        ...

    def get_records(self, token: str) -> RecordBatch:
        ...


def shard_iterator_params(
    stream_name: str,
    shard_id: str,
    start_policy: StartPolicy,
) -> dict[str, Any]:
    params: dict[str, Any] = {
        "StreamName": stream_name,
        "ShardId": shard_id,
        "ShardIteratorType": start_policy.iterator_type,
    }
    if start_policy.iterator_type in SEQUENCE_ITERATOR_TYPES:
        params["StartingSequenceNumber"] = start_policy.sequence_number
    elif start_policy.iterator_type == ITERATOR_AT_TIMESTAMP:
        params["Timestamp"] = datetime.fromtimestamp(
            float(start_policy.timestamp or 0.0), tz=timezone.utc
        )
    return params


def _epoch_seconds(value: Any) -> float | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.timestamp()
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    return None


def parse_shard(raw: Any) -> Shard:
    if not isinstance(raw, dict) or not raw.get("ShardId"):
        raise ProtocolError(f"{OP_LIST_SHARDS} returned a shard without ShardId")
    return Shard(
        shard_id=str(raw["ShardId"]),
        parent_shard_id=raw.get("ParentShardId"),
        adjacent_parent_shard_id=raw.get("AdjacentParentShardId"),
    )


def parse_record(raw: Any) -> Record:
    if not isinstance(raw, dict):
        raise ProtocolError(f"{OP_GET_RECORDS} returned a malformed record")
    sequence_number = raw.get("SequenceNumber")
    if not sequence_number:
        raise ProtocolError(f"{OP_GET_RECORDS} returned a record without SequenceNumber")
    data = raw.get("Data", b"")
    if isinstance(data, str):
        data = data.encode("utf-8")
    return Record(
        partition_key=str(raw.get("PartitionKey", "")),
        sequence_number=str(sequence_number),
        data=bytes(data),
        approximate_arrival_timestamp=_epoch_seconds(raw.get("ApproximateArrivalTimestamp")),
        encryption_type=raw.get("EncryptionType"),
    )


def parse_records_response(response: Any) -> RecordBatch:
    if not isinstance(response, dict):
        raise ProtocolError(f"{OP_GET_RECORDS} returned a malformed response")
    raw_records = response.get("Records") or []
    if not isinstance(raw_records, list):
        raise ProtocolError(f"{OP_GET_RECORDS} returned a malformed Records field")
    millis = response.get("MillisBehindLatest")
    return RecordBatch(
        records=tuple(parse_record(item) for item in raw_records),
        next_token=response.get("NextShardIterator") or None,
        millis_behind_latest=int(millis) if isinstance(millis, int) else None,
    )


def _transport_error(operation: str, exc: Exception) -> TransportError:
    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {}) if isinstance(exc.response, dict) else {}
        code = str(error.get("Code") or "") or None
        message = str(error.get("Message") or exc)
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        retryable = code in RETRYABLE_ERROR_CODES or (
            isinstance(status, int) and status >= 500
        )
        return TransportError(message, operation=operation, code=code, retryable=retryable)
    return TransportError(
        f"{type(exc).__name__}: {exc}",
        operation=operation,
        code=type(exc).__name__,
        retryable=isinstance(exc, RETRYABLE_BOTOCORE_ERRORS),
    )


class KinesisClient:
    def __init__(
        self,
        *,
        region: str | None = None,
        endpoint_url: str | None = None,
        get_records_limit: int | None = None,
        max_pool_connections: int = DEFAULT_MAX_POOL_CONNECTIONS,
        client: Any = None,
    ) -> None:
        if client is None:
            boto_config = BotoConfig(
                # Retries happen in the pollers.
                retries={"max_attempts": 1, "mode": "standard"},
                max_pool_connections=max(1, max_pool_connections),
            )
            try:
                client = boto3.client(
                    "kinesis",
                    region_name=region,
                    endpoint_url=endpoint_url,
                    config=boto_config,
                )
            except BotoCoreError as exc:
                raise ConfigError(f"cannot create Kinesis client: {exc}") from exc
        self._client = client
        self._get_records_limit = get_records_limit

    def list_shards(self, stream_name: str) -> list[Shard]:
        shards: list[Shard] = []
        params: dict[str, Any] = {"StreamName": stream_name}
        while True:
            try:
                response = self._client.list_shards(**params)
            except (ClientError, BotoCoreError) as exc:
                raise _transport_error(OP_LIST_SHARDS, exc) from exc
            raw_shards = response.get("Shards") if isinstance(response, dict) else None
            if not isinstance(raw_shards, list):
                raise ProtocolError(f"{OP_LIST_SHARDS} response has no Shards list")
            shards.extend(parse_shard(item) for item in raw_shards)
            next_token = response.get("NextToken")
            if not next_token:
                break
            # StreamName must not be combined with NextToken.
            params = {"NextToken": next_token}
        logger.debug("listed shards: stream=%s count=%d", stream_name, len(shards))
        return shards

    def get_shard_iterator(
        self,
        stream_name: str,
        shard_id: str,
        start_policy: StartPolicy,
    ) -> str:
        params = shard_iterator_params(stream_name, shard_id, start_policy)
        try:
            response = self._client.get_shard_iterator(**params)
        except (ClientError, BotoCoreError) as exc:
            raise _transport_error(OP_GET_SHARD_ITERATOR, exc) from exc
        token = response.get("ShardIterator") if isinstance(response, dict) else None
        if not token:
            raise ProtocolError(
                f"{OP_GET_SHARD_ITERATOR} returned no iterator token for shard {shard_id}"
            )
        return str(token)

    def get_records(self, token: str) -> RecordBatch:
        params: dict[str, Any] = {"ShardIterator": token}
        if self._get_records_limit is not None:
            params["Limit"] = self._get_records_limit
        try:
            response = self._client.get_records(**params)
        except (ClientError, BotoCoreError) as exc:
            raise _transport_error(OP_GET_RECORDS, exc) from exc
        return parse_records_response(response)
