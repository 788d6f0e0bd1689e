"""msgspec backed JSON helpers and base64 text codecs."""

from __future__ import annotations

import base64
from typing import Any

import msgspec

_encoder = msgspec.json.Encoder()
_decoder = msgspec.json.Decoder()


def json_encode(value: Any) -> bytes:
    """Serialize ``value`` to JSON bytes using msgspec."""

    return _encoder.encode(value)


def json_decode(data: bytes | str) -> Any:
    """Deserialize JSON ``data`` into native Python values."""

    return _decoder.decode(data)


def b64encode_text(data: bytes | str) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return base64.b64encode(data).decode("ascii")


def b64decode_text(data: str | bytes) -> bytes:
    """Decode standard base64, tolerating missing padding and surrounding whitespace."""

    if isinstance(data, bytes):
        data = data.decode("ascii")
    cleaned = "".join(data.split())
    cleaned += "=" * ((4 - len(cleaned) % 4) % 4)
    return base64.b64decode(cleaned)
