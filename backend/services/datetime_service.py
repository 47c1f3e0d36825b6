"""Timestamp helpers: lax input from peers -> timezone-aware datetimes."""

from __future__ import annotations

from datetime import datetime, timezone

import pendulum
from pendulum.parsing.exceptions import ParserError


def parse_timestamp(value: str | float | datetime | None) -> datetime | None:
    """Parse a timestamp sent by a peer into a UTC-aware datetime.

    Accepts:
    - Unix epoch seconds as int/float or a numeric string (file mtimes)
    - ISO 8601 strings, with or without timezone (naive values are UTC)
    - datetime objects (naive values are UTC)
    - None or an empty string, returned as None

    Raises ValueError on unparseable strings and out-of-range epoch values.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    if isinstance(value, (int, float)):
        return _from_epoch(float(value))

    value_str = value.strip()
    if not value_str:
        return None
    try:
        seconds = float(value_str)
    except ValueError:
        pass
    else:
        return _from_epoch(seconds)

    try:
        parsed = pendulum.parse(value_str, tz="UTC", strict=False)
    except ParserError as exc:
        raise ValueError(f"Invalid timestamp: {value_str!r}") from exc
    if not isinstance(parsed, pendulum.DateTime):
        # pendulum.parse returns Date for date-only strings
        parsed = pendulum.datetime(
            parsed.year, parsed.month, parsed.day, tz="UTC"  # type: ignore[union-attr]
        )
    return parsed  # type: ignore[return-value]


def _from_epoch(seconds: float) -> datetime:
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (ValueError, OverflowError, OSError) as exc:
        raise ValueError(f"Timestamp out of range: {seconds!r}") from exc


def now_utc() -> datetime:
    """Return the current UTC datetime."""
    return datetime.now(timezone.utc)


def format_iso(dt: datetime) -> str:
    """Format datetime as ISO 8601 for JSON serialization."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()
