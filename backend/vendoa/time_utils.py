# Overview: Timestamp helpers; the database stores naive UTC datetimes.

from __future__ import annotations

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_iso_datetime(value: str | None) -> datetime | None:
    """
    Parse a query-string timestamp into naive UTC.

    Blank values give None. A trailing "Z" or an explicit offset is
    converted to UTC; a value without one is taken as UTC already.
    Raises ValueError on malformed input.
    """
    if not value or not value.strip():
        return None
    parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def to_utc_z(dt: datetime | None) -> str | None:
    """Render a stored (naive UTC) datetime as ISO-8601 with a trailing Z."""
    if dt is None:
        return None
    return dt.replace(microsecond=0).isoformat() + "Z"


def receipt_date_stamp(now: datetime | None = None) -> str:
    """YYMMDD stamp used in receipt numbers (store-local date)."""
    return (now or datetime.now()).strftime("%y%m%d")
