"""SQLAlchemy models for the flight-log service."""

from __future__ import annotations

from enum import Enum

from sqlalchemy import Float, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .db import Base


class LandingType(str, Enum):  # type: ignore[misc]
    """Outcome of a landing."""

    NORMAL = "NORMAL"
    FORCED = "FORCED"


class FlightTrack(Base):
    """One completed flight, from takeoff to landing."""

    __tablename__ = "flight_tracks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # ISO-8601 UTC text, normalised on write so lexical order is chronological
    takeoff_time: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    landing_time: Mapped[str] = mapped_column(String(32), nullable=False)

    takeoff_lat: Mapped[float | None] = mapped_column(Float)
    takeoff_long: Mapped[float | None] = mapped_column(Float)
    takeoff_location: Mapped[str | None] = mapped_column(Text)

    landing_lat: Mapped[float | None] = mapped_column(Float)
    landing_long: Mapped[float | None] = mapped_column(Float)
    landing_location: Mapped[str | None] = mapped_column(Text)

    landing_type: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    note: Mapped[str | None] = mapped_column(Text)
    flight_experience: Mapped[int | None] = mapped_column(Integer)

    def __repr__(self) -> str:
        return f"<FlightTrack {self.id} {self.takeoff_time} {self.landing_type}>"


class KeyValueEntry(Base):
    """Durable JSON value stored under a string key."""

    __tablename__ = "kv_entries"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
