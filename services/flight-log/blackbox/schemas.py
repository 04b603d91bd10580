"""Pydantic schemas for the flight-log service."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .models import LandingType
from .timeutils import parse_timestamp


class LocationAddress(BaseModel):
    """Reverse-geocoded address as produced by the device."""

    model_config = ConfigDict(extra="allow")

    country: Optional[str] = None
    province: Optional[str] = None
    city: Optional[str] = None
    district: Optional[str] = None
    street: Optional[str] = None
    name: Optional[str] = None
    address: Optional[str] = None


LocationValue = Union[str, LocationAddress]


class RecordModel(BaseModel):
    """Record-shaped payloads use the camelCase keys of the app backups."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _check_pair(lat: Optional[float], long: Optional[float], side: str) -> None:
    if (lat is None) != (long is None):
        raise ValueError(f"{side} latitude and longitude must be set together")


class FlightRecordCreate(RecordModel):
    takeoff_time: datetime = Field(..., description="Takeoff instant (ISO-8601)")
    landing_time: datetime = Field(..., description="Landing instant (ISO-8601)")
    takeoff_lat: Optional[float] = Field(None, ge=-90, le=90)
    takeoff_long: Optional[float] = Field(None, ge=-180, le=180)
    takeoff_location: Optional[LocationValue] = None
    landing_lat: Optional[float] = Field(None, ge=-90, le=90)
    landing_long: Optional[float] = Field(None, ge=-180, le=180)
    landing_location: Optional[LocationValue] = None
    landing_type: LandingType = Field(..., description="NORMAL or FORCED")
    note: Optional[str] = None
    flight_experience: Optional[int] = Field(
        None, ge=0, le=10, description="Rating on a 0-10 scale (2x half stars)"
    )

    @field_validator("takeoff_time", "landing_time")
    @classmethod
    def ensure_timezone(cls, value: datetime) -> datetime:
        return parse_timestamp(value)

    @model_validator(mode="after")
    def check_consistency(self) -> "FlightRecordCreate":
        _check_pair(self.takeoff_lat, self.takeoff_long, "takeoff")
        _check_pair(self.landing_lat, self.landing_long, "landing")
        if self.landing_time <= self.takeoff_time:
            raise ValueError("landing time must be after takeoff time")
        return self


class FlightRecordUpdate(RecordModel):
    """Partial update; only fields present in the payload are applied."""

    takeoff_time: Optional[datetime] = None
    landing_time: Optional[datetime] = None
    takeoff_lat: Optional[float] = Field(None, ge=-90, le=90)
    takeoff_long: Optional[float] = Field(None, ge=-180, le=180)
    takeoff_location: Optional[LocationValue] = None
    landing_lat: Optional[float] = Field(None, ge=-90, le=90)
    landing_long: Optional[float] = Field(None, ge=-180, le=180)
    landing_location: Optional[LocationValue] = None
    landing_type: Optional[LandingType] = None
    note: Optional[str] = None
    flight_experience: Optional[int] = Field(None, ge=0, le=10)

    @field_validator("takeoff_time", "landing_time")
    @classmethod
    def ensure_timezone(cls, value: Optional[datetime]) -> Optional[datetime]:
        return parse_timestamp(value) if value is not None else None


class FlightRecordOut(RecordModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True
    )

    id: int
    takeoff_time: str
    landing_time: str
    takeoff_lat: Optional[float] = None
    takeoff_long: Optional[float] = None
    takeoff_location: Optional[str] = None
    landing_lat: Optional[float] = None
    landing_long: Optional[float] = None
    landing_location: Optional[str] = None
    landing_type: LandingType
    note: Optional[str] = None
    flight_experience: Optional[int] = None


class FlightRecordDetail(FlightRecordOut):
    """A single record with its addresses spelled out for display."""

    takeoff_address: str
    landing_address: str


class ImportResult(BaseModel):
    imported: int
    failed: int


class FlightSessionDraft(BaseModel):
    """In-progress flight as persisted in the key-value store."""

    is_flying: bool = True
    takeoff_time: str
    takeoff_lat: Optional[float] = None
    takeoff_long: Optional[float] = None
    takeoff_location: Optional[str] = None


class LocationReport(BaseModel):
    """A fix reported by the client device."""

    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    address: Optional[LocationValue] = None


class StartFlightRequest(BaseModel):
    location: Optional[LocationReport] = None


class EndFlightRequest(BaseModel):
    landing_type: LandingType = LandingType.NORMAL
    location: Optional[LocationReport] = None


class SessionStatus(BaseModel):
    state: str
    is_flying: bool
    is_loading: bool
    loading_message: Optional[str] = None
    last_warning: Optional[str] = None
    takeoff_time: Optional[str] = None
    takeoff_lat: Optional[float] = None
    takeoff_long: Optional[float] = None
    takeoff_location: Optional[str] = None
    takeoff_place: Optional[str] = None
    elapsed: str = "00:00:00"


class EndFlightResponse(BaseModel):
    record_id: int
    warning: Optional[str] = None
    session: SessionStatus


class LandingStats(BaseModel):
    normal: int = 0
    forced: int = 0
    forced_rate: float = 0.0


class LocationCount(BaseModel):
    name: str
    count: int


class RadarStats(BaseModel):
    total_flight_hours: float = 0.0
    total_missions: int = 0
    monthly_sorties: int = 0
    avg_duration_minutes: float = 0.0
    hourly_distribution: List[int] = Field(default_factory=lambda: [0] * 24)
    weekly_distribution: List[int] = Field(default_factory=lambda: [0] * 7)
    recent_experience: List[int] = Field(default_factory=list)
    landing_stats: LandingStats = Field(default_factory=LandingStats)
    avg_experience: float = 0.0
    top_locations: List[LocationCount] = Field(default_factory=list)
    geo_diversity: int = 0


class LastFlight(BaseModel):
    record: FlightRecordOut
    takeoff_place: str
    landing_place: str
    duration: str


class CockpitStats(BaseModel):
    today: int = 0
    month: int = 0
    last_flight: Optional[LastFlight] = None
