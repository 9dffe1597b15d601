"""Timestamps for manifest records: lax input, UTC output."""

from __future__ import annotations

from datetime import UTC, datetime

import pendulum


def parse_timestamp(value: str | datetime) -> datetime:
    """Parse a possibly hand-edited timestamp into an aware UTC datetime.

    Accepts ISO 8601 as written by the engine as well as looser forms such as
    ``2026-02-02 22:21`` or a bare date. Naive values are taken as UTC.
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    parsed = pendulum.parse(value.strip(), tz="UTC", strict=False)
    if not isinstance(parsed, pendulum.DateTime):
        if not isinstance(parsed, pendulum.Date):
            raise ValueError(f"Not a date or datetime: {value!r}")
        # Date-only strings parse to pendulum.Date
        parsed = pendulum.datetime(parsed.year, parsed.month, parsed.day, tz="UTC")
    utc = parsed.in_timezone("UTC")
    return datetime(
        utc.year, utc.month, utc.day, utc.hour, utc.minute, utc.second, utc.microsecond, tzinfo=UTC
    )


def now_utc() -> datetime:
    """Return the current UTC datetime."""
    return datetime.now(UTC)
