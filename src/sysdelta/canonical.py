"""Canonical serialization and integrity checksums.

The canonical form is a compact JSON dialect that any implementation can
reproduce byte for byte:

* objects: keys sorted by Unicode code point, no whitespace, ``,`` and ``:``
  as separators
* strings: JSON-escaped with control characters, DEL and every non-ASCII
  character written as ``\\uXXXX`` (surrogate pairs above the BMP)
* ``true`` / ``false`` / ``null`` for booleans and None
* numbers by value alone, so ints and floats agree: rounded to six
  decimals, then trailing zeros and a bare point dropped (``10.0`` -> ``10``,
  ``10.5`` -> ``10.5``, ``1e-7`` -> ``0``); NaN and infinities are rejected

The SHA-256 of the UTF-8 encoded canonical text is the snapshot checksum.
It always covers every top-level field except ``integrity``.
"""

import hashlib
import math
from collections.abc import Mapping
from typing import Any

FLOAT_PRECISION = 6

_ESCAPES = {
    '"': '\\"',
    "\\": "\\\\",
    "\b": "\\b",
    "\f": "\\f",
    "\n": "\\n",
    "\r": "\\r",
    "\t": "\\t",
}


def canonicalize(value: Any) -> str:
    """Return the canonical text of a JSON-compatible value."""
    parts: list[str] = []
    _encode(value, parts)
    return "".join(parts)


def compute_checksum(payload: Mapping[str, Any]) -> str:
    """
    Compute the hex SHA-256 checksum of a snapshot payload.

    Args:
        payload: Snapshot in its dict shape. A top-level ``integrity`` key is
            ignored so signed and unsigned payloads hash identically.
    """
    unsigned = {k: v for k, v in payload.items() if k != "integrity"}
    return hashlib.sha256(canonicalize(unsigned).encode("utf-8")).hexdigest()


def verify_snapshot(snapshot: Any) -> bool:
    """
    Check a snapshot's stored checksum against its content.

    Args:
        snapshot: A Snapshot or its dict shape.
    """
    payload = snapshot.to_dict() if hasattr(snapshot, "to_dict") else snapshot
    integrity = payload.get("integrity")
    if not isinstance(integrity, Mapping):
        return False
    expected = integrity.get("sha256_checksum")
    if not expected:
        return False
    try:
        actual = compute_checksum(payload)
    except (TypeError, ValueError):
        # NaN, infinities or non-JSON values were never signed
        return False
    return actual == expected


def _encode(value: Any, out: list[str]) -> None:
    if value is None:
        out.append("null")
    elif value is True:
        out.append("true")
    elif value is False:
        out.append("false")
    elif isinstance(value, int):
        out.append(str(value))
    elif isinstance(value, float):
        out.append(_format_number(value))
    elif isinstance(value, str):
        out.append(_encode_string(value))
    elif isinstance(value, Mapping):
        out.append("{")
        for i, key in enumerate(sorted(value)):
            if not isinstance(key, str):
                raise TypeError(f"Object keys must be strings, got {type(key).__name__}")
            if i:
                out.append(",")
            out.append(_encode_string(key))
            out.append(":")
            _encode(value[key], out)
        out.append("}")
    elif isinstance(value, (list, tuple)):
        out.append("[")
        for i, item in enumerate(value):
            if i:
                out.append(",")
            _encode(item, out)
        out.append("]")
    else:
        raise TypeError(f"Cannot canonicalize value of type {type(value).__name__}")


def _format_number(value: float) -> str:
    """Render a float so that it matches the int of equal value (``2.0`` -> ``2``)."""
    if not math.isfinite(value):
        raise ValueError(f"Cannot canonicalize non-finite float: {value!r}")
    text = f"{value:.{FLOAT_PRECISION}f}".rstrip("0").rstrip(".")
    # -0.0 and values that round to zero must hash like 0
    if text == "-0":
        return "0"
    return text


def _encode_string(text: str) -> str:
    chars = ['"']
    for ch in text:
        code = ord(ch)
        if ch in _ESCAPES:
            chars.append(_ESCAPES[ch])
        elif code < 0x20 or 0x7F <= code < 0x10000:
            chars.append(f"\\u{code:04x}")
        elif code >= 0x10000:
            code -= 0x10000
            chars.append(f"\\u{0xD800 + (code >> 10):04x}\\u{0xDC00 + (code & 0x3FF):04x}")
        else:
            chars.append(ch)
    chars.append('"')
    return "".join(chars)
