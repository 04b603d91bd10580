"""Timestamp helpers shared by the record store, session and statistics."""

from __future__ import annotations

import os
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Optional
from zoneinfo import ZoneInfo


def parse_timestamp(value: str | datetime) -> datetime:
    """Parse an ISO-8601 timestamp into an aware datetime.

    Naive values are taken to be UTC. Raises ``ValueError`` on garbage.
    """

    if isinstance(value, datetime):
        dt = value
    else:
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def to_iso(value: datetime) -> str:
    """Render ``value`` as ``YYYY-MM-DDTHH:MM:SS.mmmZ`` in UTC."""

    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    utc = value.astimezone(timezone.utc)
    return utc.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def get_local_timezone() -> Optional[tzinfo]:
    """Zone used for local-time statistics; ``None`` means the host zone."""

    name = os.getenv("BLACKBOX_TZ")
    return ZoneInfo(name) if name else None


def to_local(value: datetime, tz: Optional[tzinfo] = None) -> datetime:
    return value.astimezone(tz) if tz is not None else value.astimezone()


def _local_midnight(day: date, tz: Optional[tzinfo]) -> datetime:
    if tz is not None:
        return datetime(day.year, day.month, day.day, tzinfo=tz)
    # naive astimezone() applies the host's DST rules for that date
    return datetime(day.year, day.month, day.day).astimezone()


def local_day_bounds(now: datetime, tz: Optional[tzinfo] = None) -> tuple[datetime, datetime]:
    """Start of the local day containing ``now`` and start of the next one."""

    today = to_local(now, tz).date()
    return _local_midnight(today, tz), _local_midnight(today + timedelta(days=1), tz)


def local_month_bounds(now: datetime, tz: Optional[tzinfo] = None) -> tuple[datetime, datetime]:
    """Start of the local calendar month containing ``now`` and of the next."""

    first = to_local(now, tz).date().replace(day=1)
    if first.month == 12:
        following = first.replace(year=first.year + 1, month=1)
    else:
        following = first.replace(month=first.month + 1)
    return _local_midnight(first, tz), _local_midnight(following, tz)


def same_local_month(value: datetime, now: datetime, tz: Optional[tzinfo] = None) -> bool:
    """True when ``value`` falls in ``now``'s local calendar month."""

    local_value = to_local(value, tz)
    local_now = to_local(now, tz)
    return (local_value.year, local_value.month) == (local_now.year, local_now.month)


def format_duration(start: datetime | None, end: datetime) -> str:
    """Format the span between two instants as ``HH:MM:SS``."""

    if start is None:
        return "00:00:00"
    seconds = max(0, int((end - start).total_seconds()))
    hours, rest = divmod(seconds, 3600)
    minutes, seconds = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"
