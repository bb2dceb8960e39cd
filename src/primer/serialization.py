"""JSON helpers that never leak redacted model fields."""

from __future__ import annotations

from typing import Any

import msgspec
from msgspec import structs

_encoder = msgspec.json.Encoder()
_decoder = msgspec.json.Decoder()


def _public(value: Any) -> Any:
    from .orm import table_of

    if isinstance(value, msgspec.Struct):
        table = table_of(value)
        hidden = table.redacted if table is not None else frozenset()
        return {name: _public(item) for name, item in structs.asdict(value).items() if name not in hidden}
    if isinstance(value, dict):
        return {key: _public(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_public(item) for item in value]
    return value


def json_encode(value: Any) -> bytes:
    return _encoder.encode(_public(value))


def json_decode(data: bytes | str) -> Any:
    return _decoder.decode(data)


__all__ = ["json_decode", "json_encode"]
