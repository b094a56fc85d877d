from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone

from .errors import ConfigError

ITERATOR_LATEST = "LATEST"
ITERATOR_TRIM_HORIZON = "TRIM_HORIZON"
ITERATOR_AT_SEQUENCE_NUMBER = "AT_SEQUENCE_NUMBER"
ITERATOR_AFTER_SEQUENCE_NUMBER = "AFTER_SEQUENCE_NUMBER"
ITERATOR_AT_TIMESTAMP = "AT_TIMESTAMP"

ITERATOR_TYPES = (
    ITERATOR_LATEST,
    ITERATOR_AT_SEQUENCE_NUMBER,
    ITERATOR_AFTER_SEQUENCE_NUMBER,
    ITERATOR_AT_TIMESTAMP,
    ITERATOR_TRIM_HORIZON,
)
SEQUENCE_ITERATOR_TYPES = (ITERATOR_AT_SEQUENCE_NUMBER, ITERATOR_AFTER_SEQUENCE_NUMBER)


@dataclass(frozen=True, slots=True)
class Shard:
    shard_id: str
    parent_shard_id: str | None = None
    adjacent_parent_shard_id: str | None = None


@dataclass(frozen=True, slots=True)
class Record:
    partition_key: str
    sequence_number: str
    data: bytes
    approximate_arrival_timestamp: float | None = None
    encryption_type: str | None = None


@dataclass(frozen=True, slots=True)
class RecordBatch:
    records: tuple[Record, ...]
    next_token: str | None
    millis_behind_latest: int | None = None

    @property
    def is_empty(self) -> bool:
        return not self.records

    @property
    def is_final(self) -> bool:
        return self.next_token is None


@dataclass(frozen=True, slots=True)
class ShardBatch:
    shard_id: str
    batch: RecordBatch


@dataclass(frozen=True, slots=True)
class StartPolicy:
    """Where every polled shard starts reading.

    Validated on construction so an unusable policy never reaches a poller.
    """

    iterator_type: str
    sequence_number: str | None = None
    timestamp: float | None = None

    def __post_init__(self) -> None:
        if self.iterator_type not in ITERATOR_TYPES:
            raise ConfigError(
                f"unknown iterator type {self.iterator_type!r}; "
                f"expected one of {', '.join(ITERATOR_TYPES)}"
            )
        if self.iterator_type in SEQUENCE_ITERATOR_TYPES:
            if not self.sequence_number:
                raise ConfigError(
                    f"iterator type {self.iterator_type} requires a sequence number"
                )
        if self.iterator_type == ITERATOR_AT_TIMESTAMP:
            if self.timestamp is None:
                raise ConfigError(f"iterator type {ITERATOR_AT_TIMESTAMP} requires a timestamp")
            if isinstance(self.timestamp, bool) or not isinstance(self.timestamp, (int, float)):
                raise ConfigError(
                    f"timestamp must be a numeric epoch value, got {self.timestamp!r}"
                )
            _check_epoch_range(self.timestamp)

    @classmethod
    def latest(cls) -> "StartPolicy":
        return cls(ITERATOR_LATEST)

    @classmethod
    def trim_horizon(cls) -> "StartPolicy":
        return cls(ITERATOR_TRIM_HORIZON)

    @classmethod
    def at_sequence_number(cls, sequence_number: str) -> "StartPolicy":
        return cls(ITERATOR_AT_SEQUENCE_NUMBER, sequence_number=sequence_number)

    @classmethod
    def after_sequence_number(cls, sequence_number: str) -> "StartPolicy":
        return cls(ITERATOR_AFTER_SEQUENCE_NUMBER, sequence_number=sequence_number)

    @classmethod
    def at_timestamp(cls, timestamp: float) -> "StartPolicy":
        return cls(ITERATOR_AT_TIMESTAMP, timestamp=timestamp)

    def describe(self) -> str:
        if self.iterator_type in SEQUENCE_ITERATOR_TYPES:
            return f"{self.iterator_type}({self.sequence_number})"
        if self.iterator_type == ITERATOR_AT_TIMESTAMP:
            return f"{self.iterator_type}({self.timestamp})"
        return self.iterator_type


def _check_epoch_range(timestamp: float) -> None:
    if not math.isfinite(timestamp):
        raise ConfigError(f"timestamp must be a finite epoch value, got {timestamp!r}")
    try:
        datetime.fromtimestamp(timestamp, tz=timezone.utc)
    except (OverflowError, ValueError, OSError) as exc:
        raise ConfigError(f"timestamp {timestamp!r} is out of range") from exc


def _parse_timestamp(value: float | str | None) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ConfigError(f"timestamp must be a numeric epoch value, got {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    if text == "":
        return None
    try:
        return float(text)
    except ValueError as exc:
        raise ConfigError(f"timestamp must be a numeric epoch value, got {value!r}") from exc


def build_start_policy(
    iterator_type: str,
    *,
    sequence_number: str | None = None,
    timestamp: float | str | None = None,
) -> StartPolicy:
    kind = str(iterator_type or "").strip().upper()
    seq = sequence_number.strip() if isinstance(sequence_number, str) else sequence_number
    ts = _parse_timestamp(timestamp)
    # Parameters that do not belong to the chosen policy are ignored.
    if kind in SEQUENCE_ITERATOR_TYPES:
        return StartPolicy(kind, sequence_number=seq or None)
    if kind == ITERATOR_AT_TIMESTAMP:
        return StartPolicy(kind, timestamp=ts)
    return StartPolicy(kind)
