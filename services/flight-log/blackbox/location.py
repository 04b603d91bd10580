"""Location acquisition and address formatting.

The device location stack is an external collaborator. The session only
talks to it through :class:`LocationProvider` and always through
:func:`acquire_location`, which enforces the wait bound and turns every
failure into a :class:`LocationWarning` instead of an exception.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Protocol, Tuple, Union

from .schemas import LocationAddress

logger = logging.getLogger("blackbox.location")

_NOT_JSON = object()


class LocationTimeout(Exception):
    """The provider did not produce a fix within the allowed time."""


class LocationWarning(str, Enum):
    """Non-fatal reasons a flight endpoint was recorded without coordinates."""

    PERMISSION_DENIED = "PERMISSION_DENIED"
    TIMEOUT = "TIMEOUT"
    UNAVAILABLE = "UNAVAILABLE"


@dataclass(frozen=True)
class LocationFix:
    latitude: float
    longitude: float
    address: Optional[Union[str, LocationAddress, dict]] = None


class LocationProvider(Protocol):
    async def request_permission(self) -> bool:
        ...

    async def get_current_location(self, timeout: float) -> Optional[LocationFix]:
        """Return a fix, ``None`` when none is available, or raise LocationTimeout."""
        ...


class NullLocationProvider:
    """Provider for hosts without a positioning device; never has a fix."""

    async def request_permission(self) -> bool:
        return True

    async def get_current_location(self, timeout: float) -> Optional[LocationFix]:
        return None


class StaticLocationProvider:
    """Serves a fix that was captured elsewhere, e.g. reported by a client."""

    def __init__(self, fix: Optional[LocationFix]):
        self._fix = fix

    async def request_permission(self) -> bool:
        return True

    async def get_current_location(self, timeout: float) -> Optional[LocationFix]:
        return self._fix


async def acquire_location(
    provider: LocationProvider, timeout: float
) -> Tuple[Optional[LocationFix], Optional[LocationWarning]]:
    """Ask ``provider`` for a fix, waiting at most ``timeout`` seconds."""

    try:
        granted = await provider.request_permission()
    except Exception:  # provider faults are never fatal to a flight
        logger.exception("Location permission request failed")
        return None, LocationWarning.UNAVAILABLE
    if not granted:
        logger.warning("Location permission denied; continuing without coordinates")
        return None, LocationWarning.PERMISSION_DENIED

    try:
        fix = await asyncio.wait_for(provider.get_current_location(timeout), timeout)
    except (asyncio.TimeoutError, LocationTimeout):
        logger.warning("Location request timed out after %ss", timeout)
        return None, LocationWarning.TIMEOUT
    except Exception:  # provider faults are never fatal to a flight
        logger.exception("Error getting location")
        return None, LocationWarning.UNAVAILABLE

    if fix is None:
        return None, LocationWarning.UNAVAILABLE
    if not (-90 <= fix.latitude <= 90 and -180 <= fix.longitude <= 180):
        logger.warning("Discarding out-of-range fix %s,%s", fix.latitude, fix.longitude)
        return None, LocationWarning.UNAVAILABLE
    return fix, None


# --- Address text -------------------------------------------------------------

def encode_address(value: Any) -> Optional[str]:
    """Serialise an address for storage; plain strings are stored verbatim."""

    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, LocationAddress):
        value = value.model_dump(exclude_none=True)
    return json.dumps(value, ensure_ascii=False)


def decode_address(raw: Optional[str]) -> Any:
    """Parse stored address text; returns ``_NOT_JSON`` for legacy plain text."""

    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return _NOT_JSON


def is_plain_text(decoded: Any) -> bool:
    return decoded is _NOT_JSON


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def format_full_address(raw: Optional[str]) -> str:
    """Country, province, city, district and street joined for the detail view."""

    if not raw:
        return "Not recorded"
    decoded = decode_address(raw)
    if isinstance(decoded, dict):
        parts = [_text(decoded.get(key)) for key in ("country", "province", "city", "district", "street")]
        return "".join(part for part in parts if part) or raw
    return raw


def format_short_place(raw: Optional[str]) -> str:
    """City (or province) plus district, as shown on the last-flight card."""

    if not raw:
        return "Unknown"
    decoded = decode_address(raw)
    if not isinstance(decoded, dict):
        return "Unknown"
    city = _text(decoded.get("city")) or _text(decoded.get("province"))
    result = f"{city}{_text(decoded.get('district'))}".strip()
    return result or "Unknown location"
