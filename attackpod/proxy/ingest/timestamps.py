"""
ingest/timestamps.py

Parses the attack_timestamp strings sensors send.

Two layouts are accepted, tried in this order:
  1. RFC 3339 with a zone designator, e.g. "2024-01-01T10:00:00Z" or
     "2024-01-01T12:00:00.123456789+02:00"
  2. The naive layout Python's datetime.isoformat() produces on sensors that
     do not attach a zone, e.g. "2024-01-01T10:00:00.123456". Interpreted in
     the proxy's local timezone.

Fractions longer than six digits are truncated to microseconds.
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone

_RFC3339 = re.compile(
    r"^(\d{4})-(\d{2})-(\d{2})[Tt](\d{2}):(\d{2}):(\d{2})"
    r"(?:\.(\d{1,9}))?"
    r"(?:(?P<utc>[Zz])|(?P<sign>[+-])(?P<oh>\d{2}):(?P<om>\d{2}))$"
)
_NAIVE = re.compile(
    r"^(\d{4})-(\d{2})-(\d{2})T(\d{2}):(\d{2}):(\d{2})(?:\.(\d{1,9}))?$"
)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ONE_MS = timedelta(milliseconds=1)


class TimestampError(ValueError):
    """Raised when a timestamp matches none of the accepted layouts."""


def _fields(match: re.Match) -> tuple[int, ...]:
    year, month, day, hour, minute, second, frac = match.groups()[:7]
    micro = int((frac or "0")[:6].ljust(6, "0"))
    return (
        int(year), int(month), int(day),
        int(hour), int(minute), int(second), micro,
    )


def _parse_rfc3339(value: str) -> datetime | None:
    match = _RFC3339.match(value)
    if match is None:
        return None
    if match.group("utc"):
        tz = timezone.utc
    else:
        offset = timedelta(hours=int(match.group("oh")), minutes=int(match.group("om")))
        if offset >= timedelta(hours=24):
            return None
        tz = timezone(-offset if match.group("sign") == "-" else offset)
    try:
        return datetime(*_fields(match), tzinfo=tz)
    except (ValueError, OverflowError):
        return None


def _parse_naive_local(value: str) -> datetime | None:
    match = _NAIVE.match(value)
    if match is None:
        return None
    try:
        naive = datetime(*_fields(match))
    except ValueError:
        return None
    # astimezone() on a naive datetime assumes the system's local zone;
    # values at the edge of the datetime range cannot be converted
    try:
        return naive.astimezone()
    except (OverflowError, OSError):
        return None


def parse_attack_timestamp(value: str | None) -> datetime | None:
    """Return an aware datetime for *value*, or None when value is None."""
    if value is None:
        return None
    if not isinstance(value, str):
        raise TimestampError(f"attack timestamp must be a string, got {type(value).__name__}")

    parsed = _parse_rfc3339(value)
    if parsed is None:
        parsed = _parse_naive_local(value)
    if parsed is None:
        raise TimestampError(f"failed to parse time {value!r} with any known layout")
    return parsed


def to_epoch_millis(moment: datetime) -> int:
    """Whole milliseconds since the Unix epoch (floored)."""
    if moment.tzinfo is None:
        moment = moment.astimezone()
    return (moment - _EPOCH) // _ONE_MS
