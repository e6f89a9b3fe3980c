"""
Canonical JSON Serialization

Turns a parsed JSON document tree into one unique byte sequence.
Same logical value → same bytes. Always. On every platform.

This is SACRED GROUND. Hashes, signatures, Merkle roots and on-chain
anchors are all computed over these bytes. If two implementations
disagree by a single byte, cross-verification breaks for every match.

CANONICAL SERIALIZATION RULES:
1. Objects: keys sorted by raw code-point order, at every nesting level
2. Objects: keys must be strings
3. Arrays: element order preserved exactly (order is meaningful)
4. Whitespace: none inserted anywhere
5. Integers: plain decimal digits
6. Non-integers: shortest round-trip decimal, positional notation only,
   trailing zeros stripped ("1.50" → "1.5", "1.0" → "1", "1e10" → "10000000000")
7. Negative zero: "0"
8. NaN / Infinity: rejected
9. Strings: `"` and `\\` escaped, U+0000-U+001F and U+007F-U+009F escaped
   as \\u00XX (uppercase hex), everything else emitted raw as UTF-8
10. null / true / false: literal tokens
11. Output: UTF-8 bytes

Conveniences for Python values that have one obvious JSON form:
- UUID → lowercase string
- timezone-aware datetime → "YYYY-MM-DDTHH:MM:SS.mmmZ" (UTC)
- date → "YYYY-MM-DD"
- Enum → its value
- pydantic models → their document (to_document() or model_dump)

Sets, bytes, naive datetimes and unknown types fail loudly.
"""

import math
from collections.abc import Mapping
from datetime import date, datetime, timezone
from decimal import Context, Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ValidationError

from ..schemas.match import MatchRecord
from ..errors import CanonicalizationError


def _escape_string(value: str, path: str) -> str:
    try:
        value.encode("utf-8")
    except UnicodeEncodeError as e:
        raise CanonicalizationError(
            f"String at {path or '<root>'} is not valid Unicode "
            f"(lone surrogate at position {e.start})."
        ) from e

    out = ['"']
    for ch in value:
        code = ord(ch)
        if ch == '"':
            out.append('\\"')
        elif ch == "\\":
            out.append("\\\\")
        elif code <= 0x1F or 0x7F <= code <= 0x9F:
            out.append(f"\\u{code:04X}")
        else:
            out.append(ch)
    out.append('"')
    return "".join(out)


def _format_decimal(value: Decimal, path: str) -> str:
    if not value.is_finite():
        raise CanonicalizationError(
            f"Cannot serialize non-finite number at {path or '<root>'}."
        )
    if value == 0:
        return "0"

    # normalize() rounds to the context precision, so give it enough digits
    digits = len(value.as_tuple().digits)
    normalized = value.normalize(Context(prec=max(28, digits)))
    return format(normalized, "f")


def _format_number(value: Any, path: str) -> str:
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if not math.isfinite(value):
            raise CanonicalizationError(
                f"Cannot serialize non-finite number {value!r} at {path or '<root>'}."
            )
        # repr() is the shortest string that round-trips to the same double
        return _format_decimal(Decimal(repr(value)), path)
    return _format_decimal(value, path)


def _serialize_datetime(dt: datetime, path: str) -> str:
    if dt.tzinfo is None:
        raise CanonicalizationError(
            f"Datetime at {path or '<root>'} is timezone-naive. "
            "Attach a timezone before serializing."
        )
    utc_dt = dt.astimezone(timezone.utc)
    return utc_dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc_dt.microsecond // 1000:03d}Z"


def utc_now_iso() -> str:
    """Current time in the canonical timestamp form."""
    return _serialize_datetime(datetime.now(timezone.utc), "")


def _model_document(model: BaseModel) -> Any:
    if hasattr(model, "to_document"):
        return model.to_document()
    return model.model_dump(mode="python", exclude_none=True)


def _write(value: Any, path: str, out: list[str]) -> None:
    if value is None:
        out.append("null")
    elif value is True:
        out.append("true")
    elif value is False:
        out.append("false")
    elif isinstance(value, Enum):
        _write(value.value, path, out)
    elif isinstance(value, str):
        out.append(_escape_string(value, path))
    elif isinstance(value, (int, float, Decimal)):
        out.append(_format_number(value, path))
    elif isinstance(value, UUID):
        out.append(_escape_string(str(value).lower(), path))
    elif isinstance(value, datetime):
        out.append(_escape_string(_serialize_datetime(value, path), path))
    elif isinstance(value, date):
        out.append(_escape_string(value.strftime("%Y-%m-%d"), path))
    elif isinstance(value, Mapping):
        _write_object(value, path, out)
    elif isinstance(value, (list, tuple)):
        out.append("[")
        for i, item in enumerate(value):
            if i:
                out.append(",")
            _write(item, f"{path}[{i}]", out)
        out.append("]")
    elif isinstance(value, BaseModel):
        _write(_model_document(value), path, out)
    elif isinstance(value, (bytes, bytearray)):
        raise CanonicalizationError(
            f"Cannot serialize bytes at {path or '<root>'}. Encode as hex first."
        )
    elif isinstance(value, (set, frozenset)):
        raise CanonicalizationError(
            f"Cannot serialize set at {path or '<root>'}. "
            "Sets have no stable ordering. Convert to a list first."
        )
    else:
        raise CanonicalizationError(
            f"Cannot serialize {type(value).__name__} at {path or '<root>'}. "
            "Only JSON-compatible types are allowed."
        )


def _write_object(value: Mapping, path: str, out: list[str]) -> None:
    for key in value:
        if not isinstance(key, str):
            raise CanonicalizationError(
                f"Object key at {path or '<root>'} must be a string, "
                f"got {type(key).__name__}"
            )
    out.append("{")
    for i, key in enumerate(sorted(value)):
        if i:
            out.append(",")
        out.append(_escape_string(key, path))
        out.append(":")
        _write(value[key], f"{path}.{key}" if path else key, out)
    out.append("}")


def canonicalize_to_str(value: Any) -> str:
    """
    Canonical JSON text for any JSON-like value.

    Raises:
        CanonicalizationError: If the value has no canonical form
    """
    out: list[str] = []
    _write(value, "", out)
    return "".join(out)


def canonicalize(value: Any) -> bytes:
    """
    Canonical UTF-8 bytes for any JSON-like value.

    This is THE function. Hashing and signing consume nothing else.
    """
    return canonicalize_to_str(value).encode("utf-8")


def canonicalize_match_record(record: Any) -> bytes:
    """
    Canonical bytes of a match record.

    Accepts a MatchRecord or a mapping that validates as one. The record
    is normalized through the schema first, so e.g. an upper-case
    match_id hashes the same as its lower-case form.
    """
    if not isinstance(record, MatchRecord):
        if not isinstance(record, Mapping):
            raise CanonicalizationError(
                f"Match record must be an object, got {type(record).__name__}"
            )
        try:
            record = MatchRecord.model_validate(dict(record))
        except ValidationError as e:
            raise CanonicalizationError(f"Invalid match record: {e}") from e
    return canonicalize(record.to_document())
