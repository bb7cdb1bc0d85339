"""Timestamp normalisation.

Stored messages carry timestamps in several shapes depending on which client
or export wrote them.  Everything is converted to a timezone-aware UTC
``datetime`` here, once, at ingestion; nothing downstream inspects raw
timestamp values.

Precedence when a value could be read more than one way:

1. native ``datetime`` (naive values are taken as UTC)
2. an object with ``seconds``/``nanoseconds`` (or ``_seconds``/``_nanoseconds``)
3. a number, read as epoch milliseconds
4. an ISO-8601 string
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class TimestampError(ValueError):
    """Raised when a value cannot be read as a timestamp."""


def _from_seconds_object(value: Any) -> datetime | None:
    if isinstance(value, dict):
        seconds = value.get("seconds", value.get("_seconds"))
        nanos = value.get("nanoseconds", value.get("_nanoseconds", 0))
    else:
        seconds = getattr(value, "seconds", None)
        nanos = getattr(value, "nanoseconds", 0)
    if seconds is None or isinstance(seconds, bool):
        return None
    try:
        total = float(seconds) + float(nanos or 0) / 1_000_000_000
    except (TypeError, ValueError):
        return None
    return datetime.fromtimestamp(total, tz=timezone.utc)


def to_datetime(value: Any) -> datetime:
    """Return ``value`` as an aware UTC datetime or raise :class:`TimestampError`."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    if value is not None and not isinstance(value, (str, int, float, bool)):
        converted = _from_seconds_object(value)
        if converted is not None:
            return converted

    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as exc:
            raise TimestampError(f"numeric timestamp out of range: {value!r}") from exc

    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return to_datetime(datetime.fromisoformat(text))
        except ValueError as exc:
            raise TimestampError(f"unparseable timestamp string: {value!r}") from exc

    raise TimestampError(f"unsupported timestamp value: {value!r}")


def to_epoch_millis(value: datetime) -> int:
    return int(round((value - EPOCH).total_seconds() * 1000))


def isoformat(value: datetime) -> str:
    """Serialise an aware datetime the way documents store it."""
    return to_datetime(value).isoformat()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
