"""Lifecycle of the single in-progress flight.

One :class:`FlightSession` is built per process and handed to whoever
drives it (the HTTP app keeps it on ``app.state``). The draft of a flight
is written to the key-value store before the session reports FLYING, and
removed only after the completed record has been stored, so a restart at
any point either resumes the flight or finds it recorded.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import service
from .location import (
    LocationFix,
    LocationProvider,
    LocationWarning,
    NullLocationProvider,
    acquire_location,
    encode_address,
    format_short_place,
)
from .models import LandingType
from .schemas import FlightRecordCreate, FlightSessionDraft, SessionStatus
from .storage import KeyValueStore
from .timeutils import format_duration, parse_timestamp, to_iso

logger = logging.getLogger("blackbox.session")

DRAFT_KEY = "flight_state"
DEFAULT_LOCATION_TIMEOUT_SECONDS = 5.0

_PERSISTENCE_ERRORS = (SQLAlchemyError, OSError)


def get_location_timeout() -> float:
    return float(os.getenv("LOCATION_TIMEOUT_SECONDS", DEFAULT_LOCATION_TIMEOUT_SECONDS))


class SessionState(str, Enum):
    IDLE = "IDLE"
    PREPARING = "PREPARING"
    FLYING = "FLYING"
    ENDING = "ENDING"
    DISCARDING = "DISCARDING"


ALLOWED_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    # IDLE -> FLYING only when a persisted draft is restored
    SessionState.IDLE: {SessionState.PREPARING, SessionState.FLYING},
    SessionState.PREPARING: {SessionState.FLYING, SessionState.IDLE},
    SessionState.FLYING: {SessionState.ENDING, SessionState.DISCARDING},
    SessionState.ENDING: {SessionState.IDLE, SessionState.FLYING},
    SessionState.DISCARDING: {SessionState.IDLE, SessionState.FLYING},
}


class InvalidSessionTransition(Exception):
    def __init__(self, current: SessionState, new: SessionState) -> None:
        self.current = current
        self.new = new
        super().__init__(f"Cannot transition session from {current.value} to {new.value}")


class FlightPersistenceError(Exception):
    """The draft or the completed record could not be stored."""


class InvalidFlightDraft(Exception):
    """The in-progress flight cannot be turned into a valid record."""


class InvalidFlightDuration(Exception):
    def __init__(self, takeoff_time: datetime, landing_time: datetime) -> None:
        self.takeoff_time = takeoff_time
        self.landing_time = landing_time
        super().__init__(
            f"Landing at {to_iso(landing_time)} is not after takeoff at {to_iso(takeoff_time)}"
        )


class FlightSession:
    """State machine for starting, ending and discarding a flight.

    Public operations called in the wrong state are no-ops returning
    ``None``; this absorbs double taps and overlapping requests. Location
    problems never fail an operation, they are reported via
    ``last_warning``. Storage problems raise :class:`FlightPersistenceError`;
    any failure leaves the session in the state it was in before the call.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        kv_store: KeyValueStore,
        location_provider: Optional[LocationProvider] = None,
        *,
        location_timeout: Optional[float] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._session_factory = session_factory
        self._kv = kv_store
        self._location_provider = location_provider or NullLocationProvider()
        self._location_timeout = (
            location_timeout if location_timeout is not None else get_location_timeout()
        )
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._state = SessionState.IDLE
        self._draft: Optional[FlightSessionDraft] = None
        # stays set until restore_state() has run
        self.is_loading = True
        self.loading_message: Optional[str] = None
        self.last_warning: Optional[LocationWarning] = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def draft(self) -> Optional[FlightSessionDraft]:
        return self._draft

    @property
    def is_flying(self) -> bool:
        return self._state is SessionState.FLYING

    def _transition(self, new: SessionState) -> None:
        if new not in ALLOWED_TRANSITIONS[self._state]:
            raise InvalidSessionTransition(self._state, new)
        logger.info("Session %s -> %s", self._state.value, new.value)
        self._state = new

    def _progress(self, message: str) -> None:
        self.is_loading = True
        self.loading_message = message

    def _done(self) -> None:
        self.is_loading = False
        self.loading_message = None

    async def _locate(
        self, provider: Optional[LocationProvider]
    ) -> tuple[Optional[LocationFix], Optional[LocationWarning]]:
        self._progress("Acquiring current location...")
        return await acquire_location(provider or self._location_provider, self._location_timeout)

    # --- Operations ----------------------------------------------------------

    async def start_flight(
        self, provider: Optional[LocationProvider] = None
    ) -> Optional[FlightSessionDraft]:
        """Begin a flight and return its draft, or ``None`` if not idle."""

        if self._state is not SessionState.IDLE:
            logger.info("start_flight ignored in state %s", self._state.value)
            return None

        self._transition(SessionState.PREPARING)
        self.last_warning = None
        self._progress("Preparing for takeoff...")
        try:
            fix, self.last_warning = await self._locate(provider)
            draft = FlightSessionDraft(
                is_flying=True,
                takeoff_time=to_iso(self._clock()),
                takeoff_lat=fix.latitude if fix else None,
                takeoff_long=fix.longitude if fix else None,
                takeoff_location=encode_address(fix.address) if fix else None,
            )
            try:
                await self._kv.set(DRAFT_KEY, draft.model_dump(mode="json"))
            except _PERSISTENCE_ERRORS as exc:
                logger.exception("Failed to persist flight draft")
                raise FlightPersistenceError("Failed to start flight recording") from exc

            self._draft = draft
            self._transition(SessionState.FLYING)
            return draft
        finally:
            if self._state is SessionState.PREPARING:
                self._transition(SessionState.IDLE)
            self._done()

    async def end_flight(
        self,
        landing_type: LandingType = LandingType.NORMAL,
        provider: Optional[LocationProvider] = None,
    ) -> Optional[int]:
        """Land the current flight and return the stored record's id.

        Returns ``None`` when no flight is in progress. On failure the
        session goes back to FLYING with the draft intact, so the call can
        be retried.
        """

        if self._state is not SessionState.FLYING or self._draft is None:
            logger.info("end_flight ignored in state %s", self._state.value)
            return None

        draft = self._draft
        self._transition(SessionState.ENDING)
        self.last_warning = None
        self._progress("Recording landing data...")
        try:
            fix, self.last_warning = await self._locate(provider)
            takeoff_time = parse_timestamp(draft.takeoff_time)
            landing_time = self._clock()
            if landing_time <= takeoff_time:
                raise InvalidFlightDuration(takeoff_time, landing_time)

            self._progress("Saving flight record...")
            try:
                payload = FlightRecordCreate(
                    takeoff_time=takeoff_time,
                    landing_time=landing_time,
                    takeoff_lat=draft.takeoff_lat,
                    takeoff_long=draft.takeoff_long,
                    takeoff_location=draft.takeoff_location,
                    landing_lat=fix.latitude if fix else None,
                    landing_long=fix.longitude if fix else None,
                    landing_location=encode_address(fix.address) if fix else None,
                    landing_type=landing_type,
                )
            except ValidationError as exc:
                logger.error("Flight draft cannot form a valid record: %s", exc.errors()[0]["msg"])
                raise InvalidFlightDraft(str(exc)) from exc

            try:
                async with self._session_factory() as db:
                    track = await service.add_track(db, payload)
            except _PERSISTENCE_ERRORS as exc:
                logger.exception("Failed to save flight record")
                raise FlightPersistenceError("Failed to save flight record") from exc

            try:
                await self._kv.remove(DRAFT_KEY)
            except _PERSISTENCE_ERRORS:
                # the next start_flight overwrites the stale draft
                logger.exception("Flight %s saved but its draft could not be removed", track.id)

            self._draft = None
            self._transition(SessionState.IDLE)
            return track.id
        finally:
            if self._state is SessionState.ENDING:
                self._transition(SessionState.FLYING)
            self._done()

    async def discard_flight(self) -> Optional[FlightSessionDraft]:
        """Drop the current flight without recording it.

        Irreversible; confirmation is the caller's job. Returns the
        discarded draft, or ``None`` when no flight is in progress.
        """

        if self._state is not SessionState.FLYING or self._draft is None:
            logger.info("discard_flight ignored in state %s", self._state.value)
            return None

        draft = self._draft
        self._transition(SessionState.DISCARDING)
        self._progress("Discarding flight...")
        try:
            try:
                await self._kv.remove(DRAFT_KEY)
            except _PERSISTENCE_ERRORS as exc:
                logger.exception("Failed to discard flight draft")
                raise FlightPersistenceError("Failed to discard flight") from exc

            self._draft = None
            self.last_warning = None
            self._transition(SessionState.IDLE)
            return draft
        finally:
            if self._state is SessionState.DISCARDING:
                self._transition(SessionState.FLYING)
            self._done()

    async def restore_state(self) -> SessionState:
        """Resume a flight persisted by an earlier process, if any."""

        if self._state is not SessionState.IDLE:
            self._done()
            return self._state

        try:
            saved = await self._kv.get(DRAFT_KEY)
        except _PERSISTENCE_ERRORS:
            logger.exception("Failed to restore flight state")
            saved = None

        draft = _parse_draft(saved)
        if draft is not None:
            self._draft = draft
            self._transition(SessionState.FLYING)
            logger.info("Resumed flight that took off at %s", draft.takeoff_time)
        self._done()
        return self._state

    def snapshot(self, now: Optional[datetime] = None) -> SessionStatus:
        draft = self._draft
        elapsed = "00:00:00"
        if draft is not None:
            elapsed = format_duration(parse_timestamp(draft.takeoff_time), now or self._clock())
        return SessionStatus(
            state=self._state.value,
            is_flying=self.is_flying,
            is_loading=self.is_loading,
            loading_message=self.loading_message,
            last_warning=self.last_warning.value if self.last_warning else None,
            takeoff_time=draft.takeoff_time if draft else None,
            takeoff_lat=draft.takeoff_lat if draft else None,
            takeoff_long=draft.takeoff_long if draft else None,
            takeoff_location=draft.takeoff_location if draft else None,
            takeoff_place=format_short_place(draft.takeoff_location) if draft else None,
            elapsed=elapsed,
        )


def _parse_draft(saved: Any) -> Optional[FlightSessionDraft]:
    if not isinstance(saved, dict) or not saved.get("is_flying") or not saved.get("takeoff_time"):
        return None
    try:
        draft = FlightSessionDraft.model_validate(saved)
        parse_timestamp(draft.takeoff_time)
    except (ValidationError, ValueError):
        logger.warning("Ignoring malformed flight draft: %r", saved)
        return None
    if not _valid_pair(draft.takeoff_lat, draft.takeoff_long):
        logger.warning(
            "Dropping unusable takeoff coordinates %s,%s from flight draft",
            draft.takeoff_lat,
            draft.takeoff_long,
        )
        draft = draft.model_copy(update={"takeoff_lat": None, "takeoff_long": None})
    return draft


def _valid_pair(lat: Optional[float], long: Optional[float]) -> bool:
    if lat is None and long is None:
        return True
    if lat is None or long is None:
        return False
    return -90 <= lat <= 90 and -180 <= long <= 180
