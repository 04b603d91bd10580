"""FastAPI application exposing the flight-log API."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import Body, Depends, FastAPI, HTTPException, Request, Response

from . import service
from .db import SessionLocal, init_db
from .location import LocationFix, StaticLocationProvider, format_full_address
from .schemas import (
    CockpitStats,
    EndFlightRequest,
    EndFlightResponse,
    FlightRecordCreate,
    FlightRecordDetail,
    FlightRecordOut,
    FlightRecordUpdate,
    ImportResult,
    LocationReport,
    RadarStats,
    SessionStatus,
    StartFlightRequest,
)
from .session import FlightPersistenceError, FlightSession, InvalidFlightDraft, InvalidFlightDuration
from .stats import get_radar_stats
from .storage import KeyValueStore
from .timeutils import get_local_timezone

logger = logging.getLogger("blackbox.api")
logging.basicConfig(level=logging.INFO)

app = FastAPI(title="Blackbox Flight Log", version="0.1.0")


async def get_db():
    async with SessionLocal() as session:
        yield session


def get_flight_session(request: Request) -> FlightSession:
    return request.app.state.flight_session


@app.on_event("startup")
async def on_startup() -> None:
    await init_db()
    flight_session = FlightSession(SessionLocal, KeyValueStore(SessionLocal))
    state = await flight_session.restore_state()
    logger.info("Flight session ready in state %s", state.value)
    app.state.flight_session = flight_session


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


def _provider_for(report: Optional[LocationReport]) -> Optional[StaticLocationProvider]:
    if report is None:
        return None
    return StaticLocationProvider(
        LocationFix(latitude=report.latitude, longitude=report.longitude, address=report.address)
    )


def _to_detail(track) -> FlightRecordDetail:
    record = FlightRecordOut.model_validate(track)
    return FlightRecordDetail(
        **record.model_dump(),
        takeoff_address=format_full_address(track.takeoff_location),
        landing_address=format_full_address(track.landing_location),
    )


def _persistence_error(exc: FlightPersistenceError) -> HTTPException:
    """Storage failures are reported as 503 so the client can retry."""
    return HTTPException(status_code=503, detail=str(exc))


def _not_flying() -> HTTPException:
    return HTTPException(status_code=409, detail="No flight in progress")


def _not_found() -> HTTPException:
    return HTTPException(status_code=404, detail="Flight not found")


# --- Session ------------------------------------------------------------------

@app.get("/session", response_model=SessionStatus)
async def get_session_status(flight_session: FlightSession = Depends(get_flight_session)) -> SessionStatus:
    return flight_session.snapshot()


@app.post("/session/start", response_model=SessionStatus)
async def start_flight(
    payload: Optional[StartFlightRequest] = None,
    flight_session: FlightSession = Depends(get_flight_session),
) -> SessionStatus:
    provider = _provider_for(payload.location if payload else None)
    try:
        draft = await flight_session.start_flight(provider)
    except FlightPersistenceError as exc:
        raise _persistence_error(exc) from exc
    if draft is None:
        raise HTTPException(status_code=409, detail="A flight is already in progress")
    return flight_session.snapshot()


@app.post("/session/end", response_model=EndFlightResponse)
async def end_flight(
    payload: Optional[EndFlightRequest] = None,
    flight_session: FlightSession = Depends(get_flight_session),
) -> EndFlightResponse:
    payload = payload or EndFlightRequest()
    try:
        record_id = await flight_session.end_flight(
            payload.landing_type, _provider_for(payload.location)
        )
    except (InvalidFlightDuration, InvalidFlightDraft) as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except FlightPersistenceError as exc:
        raise _persistence_error(exc) from exc
    if record_id is None:
        raise _not_flying()
    warning = flight_session.last_warning
    return EndFlightResponse(
        record_id=record_id,
        warning=warning.value if warning else None,
        session=flight_session.snapshot(),
    )


@app.post("/session/discard", response_model=SessionStatus)
async def discard_flight(flight_session: FlightSession = Depends(get_flight_session)) -> SessionStatus:
    try:
        draft = await flight_session.discard_flight()
    except FlightPersistenceError as exc:
        raise _persistence_error(exc) from exc
    if draft is None:
        raise _not_flying()
    return flight_session.snapshot()


# --- Records ------------------------------------------------------------------

@app.get("/flights", response_model=List[FlightRecordOut])
async def list_flights(db=Depends(get_db)) -> List[FlightRecordOut]:
    tracks = await service.list_tracks(db)
    return [FlightRecordOut.model_validate(t) for t in tracks]


@app.get("/flights/export")
async def export_flights(db=Depends(get_db)) -> List[Dict[str, Any]]:
    return await service.export_tracks(db)


@app.post("/flights/import", response_model=ImportResult)
async def import_flights(items: List[Any] = Body(...), db=Depends(get_db)) -> ImportResult:
    return await service.import_tracks(db, items)


@app.get("/flights/{track_id}", response_model=FlightRecordDetail)
async def get_flight(track_id: int, db=Depends(get_db)) -> FlightRecordDetail:
    track = await service.get_track(db, track_id)
    if track is None:
        raise _not_found()
    return _to_detail(track)


@app.post("/flights", response_model=FlightRecordOut, status_code=201)
async def create_flight(payload: FlightRecordCreate, db=Depends(get_db)) -> FlightRecordOut:
    track = await service.add_track(db, payload)
    return FlightRecordOut.model_validate(track)


@app.patch("/flights/{track_id}", response_model=FlightRecordOut)
async def update_flight(track_id: int, payload: FlightRecordUpdate, db=Depends(get_db)) -> FlightRecordOut:
    try:
        track = await service.update_track(db, track_id, payload)
    except service.InvalidFlightRecord as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    if track is None:
        raise _not_found()
    return FlightRecordOut.model_validate(track)


@app.delete("/flights/{track_id}", status_code=204)
async def delete_flight(track_id: int, db=Depends(get_db)) -> Response:
    if not await service.delete_track(db, track_id):
        raise _not_found()
    return Response(status_code=204)


@app.delete("/flights")
async def clear_flights(db=Depends(get_db)) -> dict[str, int]:
    deleted = await service.clear_tracks(db)
    return {"deleted": deleted}


# --- Statistics -----------------------------------------------------------------

@app.get("/stats/radar", response_model=RadarStats)
async def radar_stats(db=Depends(get_db)) -> RadarStats:
    return await get_radar_stats(db)


@app.get("/stats/cockpit", response_model=CockpitStats)
async def cockpit_stats(db=Depends(get_db)) -> CockpitStats:
    return await service.get_cockpit_stats(db, tz=get_local_timezone())
