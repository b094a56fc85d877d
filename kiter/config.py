from __future__ import annotations

from dataclasses import dataclass, fields
import types
import typing
from typing import Any, get_args, get_origin

from .errors import ConfigError
from .models import StartPolicy, build_start_policy
from .render import DATA_FORMATS
from .retry import RetryPolicy

ENV_PREFIX = "KITER_"


def _parse_bool(value: str) -> bool:
    val = str(value).strip().lower()
    if val in {"1", "true", "yes", "y", "on"}:
        return True
    if val in {"0", "false", "no", "n", "off"}:
        return False
    raise ValueError(f"invalid bool: {value}")


def _parse_number(value: str, target_type: type) -> Any:
    if target_type is int:
        return int(value)
    if target_type is float:
        return float(value)
    return value


def _unwrap_optional(field_type: Any) -> tuple[Any, bool]:
    origin = get_origin(field_type)
    union_type = getattr(types, "UnionType", None)
    if origin not in (typing.Union, union_type):
        return field_type, False
    args = get_args(field_type)
    if args and type(None) in args and len(args) == 2:
        base = args[0] if args[1] is type(None) else args[1]
        return base, True
    return field_type, False


def _resolve_field_type(field_type: Any) -> Any:
    # Annotations are strings under postponed evaluation.
    if isinstance(field_type, str):
        return _STRING_TYPES.get(field_type.replace(" ", ""), field_type)
    return field_type


_STRING_TYPES: dict[str, Any] = {
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "str|None": typing.Optional[str],
    "int|None": typing.Optional[int],
    "float|None": typing.Optional[float],
}


def field_base_type(field_type: Any) -> tuple[Any, bool]:
    return _unwrap_optional(_resolve_field_type(field_type))


def _parse_optional(raw: str, target_type: type) -> Any:
    text = str(raw).strip()
    if text == "":
        return None
    lower = text.lower()
    if lower in {"none", "null"}:
        return None
    if target_type is bool:
        return _parse_bool(text)
    return _parse_number(text, target_type)


def coerce_field_value(field_type: Any, raw: Any) -> Any:
    base_type, is_optional = field_base_type(field_type)
    if not isinstance(raw, str):
        return raw
    if is_optional:
        return _parse_optional(raw, base_type)
    if base_type is bool:
        return _parse_bool(raw)
    if base_type in (int, float):
        return _parse_number(raw, base_type)
    return raw


@dataclass
class Config:
    stream_name: str | None = None
    region: str | None = None
    endpoint_url: str | None = None
    shard_ids: str = ""
    iterator_type: str = "LATEST"
    sequence_number: str | None = None
    timestamp: float | None = None
    verbose: bool = False
    data_format: str = "UTF8_STRING"
    poll_interval_seconds: float = 1.0
    get_records_limit: int | None = None
    queue_batches_per_shard: int = 4
    retry_max: int = 5
    retry_backoff_seconds: float = 0.5
    retry_backoff_max_seconds: float = 10.0
    log_level: str = "WARNING"

    def apply_overrides(self, overrides: dict[str, Any]) -> "Config":
        for field in fields(self):
            name = field.name
            if name in overrides:
                value = overrides[name]
                if value is None:
                    _base_type, is_optional = field_base_type(field.type)
                    if is_optional:
                        setattr(self, name, None)
                    continue
                setattr(self, name, value)
        return self

    @classmethod
    def from_env_and_cli(cls, cli_overrides: dict[str, Any], env: dict[str, str]) -> "Config":
        cfg = cls().apply_overrides(cli_overrides)
        for field in fields(cfg):
            env_key = ENV_PREFIX + field.name.upper()
            if env_key not in env:
                continue
            raw = env[env_key]
            try:
                value = coerce_field_value(field.type, raw)
            except ValueError as exc:
                raise ConfigError(f"invalid value for {env_key}: {raw!r}") from exc
            setattr(cfg, field.name, value)
        return cfg

    def shard_id_list(self) -> list[str]:
        seen: set[str] = set()
        shard_ids: list[str] = []
        for item in str(self.shard_ids or "").split(","):
            shard_id = item.strip()
            if not shard_id or shard_id in seen:
                continue
            seen.add(shard_id)
            shard_ids.append(shard_id)
        return shard_ids

    def start_policy(self) -> StartPolicy:
        return build_start_policy(
            self.iterator_type,
            sequence_number=self.sequence_number,
            timestamp=self.timestamp,
        )

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.retry_max,
            backoff_seconds=self.retry_backoff_seconds,
            max_backoff_seconds=self.retry_backoff_max_seconds,
        )

    def validate(self) -> StartPolicy:
        if not self.stream_name:
            raise ConfigError("stream name is required")
        if self.data_format not in DATA_FORMATS:
            raise ConfigError(
                f"unknown data format {self.data_format!r}; "
                f"expected one of {', '.join(DATA_FORMATS)}"
            )
        if self.poll_interval_seconds < 0:
            raise ConfigError("poll interval must be >= 0")
        if self.queue_batches_per_shard < 1:
            raise ConfigError("queue batches per shard must be >= 1")
        if self.get_records_limit is not None and self.get_records_limit < 1:
            raise ConfigError("get records limit must be >= 1")
        if self.retry_max < 0:
            raise ConfigError("retry max must be >= 0")
        return self.start_policy()
