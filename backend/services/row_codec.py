"""JSON encoding of table rows with tagged scalar values.

Rows travel as JSON objects mapping column name to value. JSON-native scalars
(str, int, float, bool, None) are sent as-is; everything else is wrapped as
``{"$type": <tag>, "value": <str>}`` so the destination can rebuild the
Python value its column type expects.
"""

from __future__ import annotations

import base64
import datetime as dt
from collections.abc import Mapping
from decimal import Decimal
from typing import Any

TYPE_KEY = "$type"
VALUE_KEY = "value"


def encode_value(value: Any) -> Any:
    """Encode one column value for JSON transport."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, (bytes, bytearray, memoryview)):
        return _tag("bytes", base64.b64encode(bytes(value)).decode("ascii"))
    # datetime is a subclass of date: check it first
    if isinstance(value, dt.datetime):
        return _tag("datetime", value.isoformat())
    if isinstance(value, dt.date):
        return _tag("date", value.isoformat())
    if isinstance(value, dt.time):
        return _tag("time", value.isoformat())
    if isinstance(value, dt.timedelta):
        return _tag("timedelta", str(value.total_seconds()))
    if isinstance(value, Decimal):
        return _tag("decimal", str(value))
    raise TypeError(f"Cannot encode column value of type {type(value).__name__}")


def decode_value(value: Any) -> Any:
    """Decode one column value produced by ``encode_value``."""
    if not isinstance(value, Mapping) or TYPE_KEY not in value:
        return value
    tag = value[TYPE_KEY]
    raw = value.get(VALUE_KEY)
    if not isinstance(raw, str):
        raise ValueError(f"Tagged value {tag!r} must carry a string payload")
    if tag == "bytes":
        return base64.b64decode(raw)
    if tag == "datetime":
        return dt.datetime.fromisoformat(raw)
    if tag == "date":
        return dt.date.fromisoformat(raw)
    if tag == "time":
        return dt.time.fromisoformat(raw)
    if tag == "timedelta":
        return dt.timedelta(seconds=float(raw))
    if tag == "decimal":
        return Decimal(raw)
    raise ValueError(f"Unknown value tag: {tag!r}")


def encode_row(row: Mapping[str, Any]) -> dict[str, Any]:
    """Encode a row mapping, preserving column order."""
    return {str(column): encode_value(value) for column, value in row.items()}


def decode_row(row: Mapping[str, Any]) -> dict[str, Any]:
    """Decode a row mapping received from a peer."""
    return {column: decode_value(value) for column, value in row.items()}


def _tag(tag: str, payload: str) -> dict[str, str]:
    return {TYPE_KEY: tag, VALUE_KEY: payload}
