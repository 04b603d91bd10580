"""Domain services for storing and querying flight records."""

from __future__ import annotations

import logging
from datetime import datetime, timezone, tzinfo
from typing import Any, Optional, Sequence

from pydantic import ValidationError
from sqlalchemy import and_, delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .location import encode_address, format_short_place
from .models import FlightTrack
from .schemas import (
    CockpitStats,
    FlightRecordCreate,
    FlightRecordOut,
    FlightRecordUpdate,
    ImportResult,
    LastFlight,
)
from .timeutils import (
    format_duration,
    local_day_bounds,
    local_month_bounds,
    parse_timestamp,
    to_iso,
)

logger = logging.getLogger("blackbox.service")

_LOCATION_FIELDS = ("takeoff_location", "landing_location")
_TIME_FIELDS = ("takeoff_time", "landing_time")


class InvalidFlightRecord(ValueError):
    """A write would leave a record violating its invariants."""


def _track_from_payload(payload: FlightRecordCreate) -> FlightTrack:
    return FlightTrack(
        takeoff_time=to_iso(payload.takeoff_time),
        landing_time=to_iso(payload.landing_time),
        takeoff_lat=payload.takeoff_lat,
        takeoff_long=payload.takeoff_long,
        takeoff_location=encode_address(payload.takeoff_location),
        landing_lat=payload.landing_lat,
        landing_long=payload.landing_long,
        landing_location=encode_address(payload.landing_location),
        landing_type=payload.landing_type.value,
        note=payload.note,
        flight_experience=payload.flight_experience,
    )


async def add_track(db: AsyncSession, payload: FlightRecordCreate) -> FlightTrack:
    """Insert a completed flight and return it with its assigned id."""

    track = _track_from_payload(payload)
    db.add(track)
    await db.commit()
    await db.refresh(track)
    logger.info("Flight %s recorded (%s)", track.id, track.landing_type)
    return track


async def get_track(db: AsyncSession, track_id: int) -> Optional[FlightTrack]:
    return await db.get(FlightTrack, track_id)


async def list_tracks(db: AsyncSession) -> list[FlightTrack]:
    """All records, most recent takeoff first."""

    stmt = select(FlightTrack).order_by(FlightTrack.takeoff_time.desc(), FlightTrack.id.desc())
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def get_last_flight(db: AsyncSession) -> Optional[FlightTrack]:
    stmt = select(FlightTrack).order_by(FlightTrack.takeoff_time.desc(), FlightTrack.id.desc()).limit(1)
    result = await db.execute(stmt)
    return result.scalars().first()


def _check_invariants(track: FlightTrack) -> None:
    for side in ("takeoff", "landing"):
        lat = getattr(track, f"{side}_lat")
        long = getattr(track, f"{side}_long")
        if (lat is None) != (long is None):
            raise InvalidFlightRecord(f"{side} latitude and longitude must be set together")
    if parse_timestamp(track.landing_time) <= parse_timestamp(track.takeoff_time):
        raise InvalidFlightRecord("landing time must be after takeoff time")


async def update_track(
    db: AsyncSession, track_id: int, payload: FlightRecordUpdate
) -> Optional[FlightTrack]:
    """Apply the fields present in ``payload``; returns None for unknown ids."""

    track = await get_track(db, track_id)
    if track is None:
        return None

    changes: dict[str, Any] = {
        field: getattr(payload, field) for field in payload.model_fields_set
    }
    if not changes:
        return track

    for field, value in changes.items():
        if field in _TIME_FIELDS:
            if value is None:
                raise InvalidFlightRecord(f"{field} cannot be cleared")
            value = to_iso(value)
        elif field in _LOCATION_FIELDS:
            value = encode_address(value)
        elif field == "landing_type":
            if value is None:
                raise InvalidFlightRecord("landing_type cannot be cleared")
            value = value.value
        setattr(track, field, value)

    try:
        _check_invariants(track)
    except InvalidFlightRecord:
        await db.rollback()
        raise

    await db.commit()
    await db.refresh(track)
    logger.info("Flight %s updated: %s", track_id, ", ".join(sorted(changes)))
    return track


async def delete_track(db: AsyncSession, track_id: int) -> bool:
    result = await db.execute(delete(FlightTrack).where(FlightTrack.id == track_id))
    await db.commit()
    return result.rowcount > 0


async def clear_tracks(db: AsyncSession) -> int:
    result = await db.execute(delete(FlightTrack))
    await db.commit()
    logger.info("Cleared %s flight records", result.rowcount)
    return result.rowcount


async def count_tracks_between(db: AsyncSession, start: datetime, end: datetime) -> int:
    """Count records whose takeoff falls in ``[start, end)``.

    Stored timestamps are normalised UTC text, so comparing against the
    bounds rendered the same way is a chronological comparison.
    """

    stmt = select(func.count()).select_from(FlightTrack).where(
        and_(
            FlightTrack.takeoff_time >= to_iso(start),
            FlightTrack.takeoff_time < to_iso(end),
        )
    )
    result = await db.execute(stmt)
    return int(result.scalar_one())


async def get_cockpit_stats(
    db: AsyncSession, now: Optional[datetime] = None, tz: Optional[tzinfo] = None
) -> CockpitStats:
    """Today's and this month's sortie counts plus the most recent flight."""

    now = now or datetime.now(timezone.utc)
    today = await count_tracks_between(db, *local_day_bounds(now, tz))
    month = await count_tracks_between(db, *local_month_bounds(now, tz))

    last_flight = None
    track = await get_last_flight(db)
    if track is not None:
        last_flight = LastFlight(
            record=FlightRecordOut.model_validate(track),
            takeoff_place=format_short_place(track.takeoff_location),
            landing_place=format_short_place(track.landing_location),
            duration=format_duration(
                parse_timestamp(track.takeoff_time), parse_timestamp(track.landing_time)
            ),
        )
    return CockpitStats(today=today, month=month, last_flight=last_flight)


# --- Bulk transfer -----------------------------------------------------------

async def export_tracks(db: AsyncSession) -> list[dict[str, Any]]:
    """Every record as a camelCase dict, newest first."""

    tracks = await list_tracks(db)
    return [FlightRecordOut.model_validate(t).model_dump(mode="json", by_alias=True) for t in tracks]


async def import_tracks(db: AsyncSession, items: Sequence[Any]) -> ImportResult:
    """Add exported records to the store, ignoring their ids.

    Exports are newest first, so items are inserted in reverse to keep ids
    ascending with takeoff time. Invalid items are counted and skipped.
    """

    imported = 0
    failed = 0
    for index, item in enumerate(reversed(list(items))):
        if not isinstance(item, dict):
            failed += 1
            continue
        data = {key: value for key, value in item.items() if key != "id"}
        try:
            payload = FlightRecordCreate.model_validate(data)
        except ValidationError as exc:
            logger.warning("Skipping invalid import item #%s: %s", index, exc.errors()[0]["msg"])
            failed += 1
            continue
        db.add(_track_from_payload(payload))
        imported += 1

    await db.commit()
    logger.info("Imported %s flight records (%s failed)", imported, failed)
    return ImportResult(imported=imported, failed=failed)

