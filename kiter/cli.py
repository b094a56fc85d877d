from __future__ import annotations

import argparse
import logging
import os
import sys
from dataclasses import fields
from typing import Any

from . import __version__
from .app import run_tail
from .config import Config, coerce_field_value, field_base_type
from .errors import ConfigError
from .models import ITERATOR_TYPES
from .render import DATA_FORMATS

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
DEFAULT_LOG_LEVEL = logging.WARNING

_OPERATOR_FIELDS = {
    "stream_name",
    "region",
    "endpoint_url",
    "shard_ids",
    "iterator_type",
    "sequence_number",
    "timestamp",
    "verbose",
    "data_format",
    "log_level",
}


def _add_operator_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-n", "--stream-name", dest="stream_name", metavar="NAME", help="Stream name.")
    parser.add_argument("-r", "--region", dest="region", metavar="NAME", help="AWS region name.")
    parser.add_argument(
        "--endpoint-url",
        dest="endpoint_url",
        metavar="URL",
        help="Custom service endpoint, e.g. a local emulator.",
    )
    parser.add_argument(
        "-s",
        "--shard-id",
        dest="shard_ids",
        action="append",
        metavar="ID",
        help="Shard id to poll; repeatable. All shards are polled when omitted.",
    )
    parser.add_argument(
        "-t",
        "--iterator-type",
        dest="iterator_type",
        choices=ITERATOR_TYPES,
        metavar="TYPE",
        help=f"Where to start reading: {', '.join(ITERATOR_TYPES)}. Default LATEST.",
    )
    parser.add_argument(
        "--sequence-number",
        dest="sequence_number",
        metavar="NUM",
        help="Sequence number for AT_SEQUENCE_NUMBER or AFTER_SEQUENCE_NUMBER.",
    )
    parser.add_argument(
        "--timestamp",
        dest="timestamp",
        metavar="TIMESTAMP",
        help="UNIX epoch seconds (fractions allowed) for AT_TIMESTAMP.",
    )
    parser.add_argument(
        "--verbose",
        dest="verbose",
        action="store_true",
        default=None,
        help="Print partition key, sequence number and metadata with each record.",
    )
    parser.add_argument(
        "--data-format",
        dest="data_format",
        choices=DATA_FORMATS,
        metavar="TYPE",
        help=f"Payload output format: {', '.join(DATA_FORMATS)}. Default UTF8_STRING.",
    )
    parser.add_argument(
        "--log-level",
        dest="log_level",
        metavar="LEVEL",
        help="Log level (DEBUG/INFO/WARNING/ERROR). Defaults to env KITER_LOG_LEVEL or WARNING.",
    )


def _add_config_args(parser: argparse.ArgumentParser) -> None:
    for field in fields(Config):
        if field.name in _OPERATOR_FIELDS:
            continue
        name = field.name.replace("_", "-")
        base_type, _is_optional = field_base_type(field.type)
        if base_type is bool:
            group = parser.add_mutually_exclusive_group()
            group.add_argument(f"--{name}", dest=field.name, action="store_true")
            group.add_argument(f"--no-{name}", dest=field.name, action="store_false")
            parser.set_defaults(**{field.name: None})
        else:
            parser.add_argument(f"--{name}", dest=field.name, default=None)


def _cli_overrides(ns: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for field in fields(Config):
        value = getattr(ns, field.name, None)
        if value is None:
            continue
        if field.name == "shard_ids":
            value = ",".join(value)
        try:
            overrides[field.name] = coerce_field_value(field.type, value)
        except ValueError as exc:
            option = "--" + field.name.replace("_", "-")
            raise ConfigError(f"invalid value for {option}: {value!r}") from exc
    return overrides


def _resolve_log_level(value: str | None) -> int:
    v = (value or "").strip().upper()
    if not v:
        return DEFAULT_LOG_LEVEL
    level = logging.getLevelName(v)
    if isinstance(level, int):
        return level
    return DEFAULT_LOG_LEVEL


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kiter",
        description="Kinesis stream subscriber: tails every shard and prints new records.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    _add_operator_args(parser)
    _add_config_args(parser)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_arg_parser().parse_args(argv)
    try:
        overrides = _cli_overrides(args)
        config = Config.from_env_and_cli(overrides, dict(os.environ))
        logging.basicConfig(
            level=_resolve_log_level(config.log_level),
            format=LOG_FORMAT,
            datefmt="%Y-%m-%d %H:%M:%S",
            stream=sys.stderr,
        )
        config.validate()
        return run_tail(config)
    except ConfigError as exc:
        print(f"kiter: configuration error: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
