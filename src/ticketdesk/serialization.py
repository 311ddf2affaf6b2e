from __future__ import annotations

import datetime as dt
from typing import Any

import msgspec
from msgspec import structs

_encoder = msgspec.json.Encoder()
_decoder = msgspec.json.Decoder()


def _sanitize_for_json(value: Any) -> Any:
    from .orm import Model as ORMModel

    if isinstance(value, ORMModel):
        info = getattr(type(value), "__model_info__", None)
        redacted = info.redacted_fields if info is not None else frozenset()
        payload = structs.asdict(value)
        return {key: _sanitize_for_json(val) for key, val in payload.items() if key not in redacted}
    if isinstance(value, dict):
        return {key: _sanitize_for_json(val) for key, val in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_sanitize_for_json(item) for item in value]
    return value


def json_encode(value: Any) -> bytes:
    """Serialize ``value`` to JSON bytes, dropping redacted model fields."""

    return _encoder.encode(_sanitize_for_json(value))


def json_decode(data: bytes | str) -> Any:
    """Deserialize JSON ``data`` into native Python values."""

    return _decoder.decode(data)


def to_row(value: msgspec.Struct) -> dict[str, Any]:
    """Flatten ``value`` into a storable row.

    Nested structs become dicts and enums their values; datetimes stay native so
    that stores can compare and order them.
    """

    return msgspec.to_builtins(value, builtin_types=(dt.datetime, dt.date))
