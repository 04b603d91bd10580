from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

SERVICE_ROOT = Path(__file__).resolve().parents[1]
if str(SERVICE_ROOT) not in sys.path:
    sys.path.append(str(SERVICE_ROOT))

from blackbox.db import Base  # noqa: E402
from blackbox.models import FlightTrack  # noqa: E402


@pytest_asyncio.fixture()
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'flight-log.sqlite'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    await engine.dispose()


@pytest.fixture()
def make_track():
    """Build an unsaved FlightTrack from a takeoff instant and a duration."""

    counter = iter(range(1, 10_000))

    def _make(
        takeoff: str,
        minutes: float = 60,
        landing_type: str = "NORMAL",
        experience: int | None = None,
        takeoff_location: str | None = None,
        landing_location: str | None = None,
    ) -> FlightTrack:
        start = datetime.fromisoformat(takeoff.replace("Z", "+00:00"))
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        end = start + timedelta(minutes=minutes)
        return FlightTrack(
            id=next(counter),
            takeoff_time=start.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            landing_time=end.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            landing_type=landing_type,
            flight_experience=experience,
            takeoff_location=takeoff_location,
            landing_location=landing_location,
        )

    return _make
