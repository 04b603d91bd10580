"""Aggregation engine behind the radar screen.

Every function here is pure: it takes a sequence of records (ORM rows or
anything exposing the same attribute names) and returns a derived value
without touching its input. An empty sequence yields zeroed results.

Hour-of-day, day-of-week and calendar-month figures use local time. ``tz``
selects the zone explicitly; ``None`` means the host's local zone.

A record with a malformed timestamp or location is skipped for the metric
that needs the broken field and still counts everywhere else.
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timezone, tzinfo
from typing import Any, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from . import service
from .location import decode_address, is_plain_text
from .models import LandingType
from .schemas import LandingStats, LocationCount, RadarStats
from .timeutils import get_local_timezone, parse_timestamp, same_local_month, to_local

logger = logging.getLogger("blackbox.stats")

RECENT_EXPERIENCE_WINDOW = 10
TOP_LOCATIONS_LIMIT = 5
# precedence for deriving a place name from a structured address
_NAME_FIELDS = ("city", "district", "name", "address")


def _takeoff(record: Any) -> Optional[datetime]:
    try:
        return parse_timestamp(record.takeoff_time)
    except (TypeError, ValueError, AttributeError):
        logger.warning("Record %s has an unreadable takeoff time", getattr(record, "id", "?"))
        return None


def flight_seconds(record: Any) -> float:
    """Duration of one flight; unreadable or negative spans count as zero."""

    try:
        start = parse_timestamp(record.takeoff_time)
        end = parse_timestamp(record.landing_time)
    except (TypeError, ValueError, AttributeError):
        logger.warning("Record %s has unreadable flight times", getattr(record, "id", "?"))
        return 0.0
    return max(0.0, (end - start).total_seconds())


def total_missions(records: Sequence[Any]) -> int:
    return len(records)


def total_flight_hours(records: Iterable[Any]) -> float:
    return sum(flight_seconds(r) for r in records) / 3600


def avg_duration_minutes(records: Sequence[Any]) -> float:
    if not records:
        return 0.0
    return total_flight_hours(records) * 60 / len(records)


def monthly_sorties(
    records: Iterable[Any], now: Optional[datetime] = None, tz: Optional[tzinfo] = None
) -> int:
    """Records taking off in the current local calendar month."""

    now = now or datetime.now(timezone.utc)
    count = 0
    for record in records:
        takeoff = _takeoff(record)
        if takeoff is not None and same_local_month(takeoff, now, tz):
            count += 1
    return count


def hourly_distribution(records: Iterable[Any], tz: Optional[tzinfo] = None) -> List[int]:
    buckets = [0] * 24
    for record in records:
        takeoff = _takeoff(record)
        if takeoff is not None:
            buckets[to_local(takeoff, tz).hour] += 1
    return buckets


def weekly_distribution(records: Iterable[Any], tz: Optional[tzinfo] = None) -> List[int]:
    """Seven buckets, Sunday first."""

    buckets = [0] * 7
    for record in records:
        takeoff = _takeoff(record)
        if takeoff is not None:
            # isoweekday(): Monday=1 .. Sunday=7
            buckets[to_local(takeoff, tz).isoweekday() % 7] += 1
    return buckets


def _by_takeoff_desc(records: Iterable[Any]) -> List[Any]:
    dated: List[Tuple[datetime, Any]] = []
    for record in records:
        takeoff = _takeoff(record)
        if takeoff is not None:
            dated.append((takeoff, record))
    dated.sort(key=lambda pair: pair[0], reverse=True)
    return [record for _, record in dated]


def recent_experience(records: Iterable[Any], window: int = RECENT_EXPERIENCE_WINDOW) -> List[int]:
    """Ratings of the ``window`` most recent flights, oldest first.

    The window is taken before unrated flights are dropped, so fewer than
    ``window`` points come back when recent flights lack a rating.
    """

    recent = _by_takeoff_desc(records)[:window]
    rated = [r.flight_experience for r in recent if r.flight_experience is not None]
    rated.reverse()
    return rated


def landing_stats(records: Iterable[Any]) -> LandingStats:
    counts = Counter(_landing_value(r.landing_type) for r in records)
    normal = counts[LandingType.NORMAL.value]
    forced = counts[LandingType.FORCED.value]
    total = normal + forced
    return LandingStats(normal=normal, forced=forced, forced_rate=forced / total if total else 0.0)


def _landing_value(value: Any) -> Any:
    return value.value if isinstance(value, LandingType) else value


def avg_experience(records: Iterable[Any]) -> float:
    ratings = [r.flight_experience for r in records if r.flight_experience is not None]
    if not ratings:
        return 0.0
    return sum(ratings) / len(ratings)


def location_name(raw: Optional[str]) -> Optional[str]:
    """Place name used for geographic ranking.

    Structured addresses yield city, then district, then name, then address.
    Text that is not JSON at all is used verbatim. No normalisation happens,
    so ``{"city": "Beijing"}`` and ``"Beijing Airport"`` are different places.
    """

    if not raw:
        return None
    decoded = decode_address(raw)
    if is_plain_text(decoded):
        return raw.strip() or None
    if not isinstance(decoded, dict):
        return None
    for field in _NAME_FIELDS:
        value = decoded.get(field)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def location_ranking(
    records: Iterable[Any], limit: int = TOP_LOCATIONS_LIMIT
) -> Tuple[List[LocationCount], int]:
    """Top takeoff places and the number of distinct places overall.

    Only takeoff places are counted for the ranking; landing places add to
    the distinct-place total but not to any count. Ties keep the order in
    which places were first seen.
    """

    counts: Counter[str] = Counter()
    seen: set[str] = set()
    for record in records:
        takeoff_name = location_name(record.takeoff_location)
        landing_name = location_name(record.landing_location)
        if takeoff_name:
            counts[takeoff_name] += 1
            seen.add(takeoff_name)
        if landing_name:
            seen.add(landing_name)

    # sorted() is stable and Counter keeps insertion order
    ranked = sorted(counts.items(), key=lambda item: item[1], reverse=True)[:limit]
    return [LocationCount(name=name, count=count) for name, count in ranked], len(seen)


def compute_radar_stats(
    records: Sequence[Any], now: Optional[datetime] = None, tz: Optional[tzinfo] = None
) -> RadarStats:
    records = list(records)
    top_locations, geo_diversity = location_ranking(records)
    return RadarStats(
        total_flight_hours=total_flight_hours(records),
        total_missions=total_missions(records),
        monthly_sorties=monthly_sorties(records, now, tz),
        avg_duration_minutes=avg_duration_minutes(records),
        hourly_distribution=hourly_distribution(records, tz),
        weekly_distribution=weekly_distribution(records, tz),
        recent_experience=recent_experience(records),
        landing_stats=landing_stats(records),
        avg_experience=avg_experience(records),
        top_locations=top_locations,
        geo_diversity=geo_diversity,
    )


async def get_radar_stats(db: AsyncSession, now: Optional[datetime] = None) -> RadarStats:
    """Recompute the radar statistics from the full record store."""

    records = await service.list_tracks(db)
    return compute_radar_stats(records, now=now, tz=get_local_timezone())
