from __future__ import annotations

from typing import Any, Callable, Sequence

import orjson

from .models import Record

FORMAT_RAW_BYTES = "RAW_BYTES"
FORMAT_RAW_STRING = "RAW_STRING"
FORMAT_UTF8_STRING = "UTF8_STRING"

DATA_FORMATS = (FORMAT_RAW_BYTES, FORMAT_RAW_STRING, FORMAT_UTF8_STRING)

Renderer = Callable[[Sequence[Record]], str]


def _raw_bytes_text(data: bytes) -> str:
    return "[" + ", ".join(str(value) for value in data) + "]"


def _raw_string_text(data: bytes) -> str:
    return data.hex()


def _utf8_text(data: bytes) -> str | None:
    # A record whose payload is not valid UTF-8 is skipped whole.
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return None


def _raw_bytes_value(data: bytes) -> list[int]:
    return list(data)


_DATA_ONLY: dict[str, Callable[[bytes], str | None]] = {
    FORMAT_RAW_BYTES: _raw_bytes_text,
    FORMAT_RAW_STRING: _raw_string_text,
    FORMAT_UTF8_STRING: _utf8_text,
}

_VERBOSE_DATA: dict[str, Callable[[bytes], Any]] = {
    FORMAT_RAW_BYTES: _raw_bytes_value,
    FORMAT_RAW_STRING: _raw_string_text,
    FORMAT_UTF8_STRING: _utf8_text,
}


def record_payload(record: Record, data: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    if record.approximate_arrival_timestamp is not None:
        payload["ApproximateArrivalTimestamp"] = record.approximate_arrival_timestamp
    payload["Data"] = data
    if record.encryption_type is not None:
        payload["EncryptionType"] = record.encryption_type
    payload["PartitionKey"] = record.partition_key
    payload["SequenceNumber"] = record.sequence_number
    return payload


def _data_only_renderer(convert: Callable[[bytes], str | None]) -> Renderer:
    def render(records: Sequence[Record]) -> str:
        texts = (convert(record.data) for record in records)
        return "\n".join(text for text in texts if text is not None)

    return render


def _verbose_renderer(convert: Callable[[bytes], Any]) -> Renderer:
    def render(records: Sequence[Record]) -> str:
        lines = []
        for record in records:
            data = convert(record.data)
            if data is None:
                continue
            lines.append(orjson.dumps(record_payload(record, data)).decode("utf-8"))
        return "\n".join(lines)

    return render


def build_renderer(data_format: str, verbose: bool) -> Renderer:
    if data_format not in DATA_FORMATS:
        raise ValueError(f"unknown data format: {data_format}")
    if verbose:
        return _verbose_renderer(_VERBOSE_DATA[data_format])
    return _data_only_renderer(_DATA_ONLY[data_format])


def render(records: Sequence[Record], verbose: bool, data_format: str) -> str:
    return build_renderer(data_format, verbose)(records)
