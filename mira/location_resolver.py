"""Reverse geocoding and timezone lookup for device coordinates."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from typing import Any

import httpx

LOGGER = logging.getLogger("mira-assistant.location")

UNKNOWN = "Unknown"
DEFAULT_LOCATIONIQ_BASE_URL = "https://us1.locationiq.com/v1"


@dataclass(frozen=True, slots=True)
class Coordinates:
    lat: float
    lng: float


@dataclass(frozen=True, slots=True)
class TimezoneInfo:
    name: str = UNKNOWN
    short_name: str = UNKNOWN
    full_name: str = UNKNOWN
    offset_sec: int = 0
    is_dst: bool = False


@dataclass(frozen=True, slots=True)
class LocationContext:
    city: str = UNKNOWN
    state: str = UNKNOWN
    country: str = UNKNOWN
    timezone: TimezoneInfo = TimezoneInfo()

    @property
    def is_unknown(self) -> bool:
        return self == UNKNOWN_LOCATION

    def describe(self) -> str:
        return f"{self.city}, {self.state}, {self.country} ({self.timezone.name})"


UNKNOWN_TIMEZONE = TimezoneInfo()
UNKNOWN_LOCATION = LocationContext()


def coerce_coordinates(raw: Any) -> Coordinates | None:
    """Accept ``Coordinates``, ``{"lat", "lng"}`` mappings or ``(lat, lng)`` pairs."""
    if isinstance(raw, Coordinates):
        return raw
    lat: Any = None
    lng: Any = None
    if isinstance(raw, dict):
        lat = raw.get("lat", raw.get("latitude"))
        lng = raw.get("lng", raw.get("lon", raw.get("longitude")))
    elif isinstance(raw, (tuple, list)) and len(raw) == 2:
        lat, lng = raw
    try:
        lat_value = float(lat)
        lng_value = float(lng)
    except (TypeError, ValueError):
        return None
    if not (math.isfinite(lat_value) and math.isfinite(lng_value)):
        return None
    return Coordinates(lat=lat_value, lng=lng_value)


async def _get_json(client: httpx.AsyncClient, url: str, params: dict[str, Any]) -> dict[str, Any] | None:
    response = await client.get(url, params=params)
    if not response.is_success:
        LOGGER.warning("[location] %s failed with status: %s", url, response.status_code)
        return None
    payload = response.json()
    return payload if isinstance(payload, dict) else None


async def reverse_geocode(
    client: httpx.AsyncClient,
    coordinates: Coordinates,
    *,
    token: str,
    base_url: str = DEFAULT_LOCATIONIQ_BASE_URL,
) -> tuple[str, str, str] | None:
    """Return ``(city, state, country)`` or ``None`` when the lookup fails."""
    try:
        payload = await _get_json(
            client,
            f"{base_url.rstrip('/')}/reverse.php",
            {"key": token, "lat": coordinates.lat, "lon": coordinates.lng, "format": "json"},
        )
    except (httpx.HTTPError, ValueError) as exc:
        LOGGER.warning("[location] Reverse geocoding failed: %s", exc)
        return None
    if not payload:
        return None
    address = payload.get("address")
    if not isinstance(address, dict):
        return None
    city = address.get("city") or address.get("town") or address.get("village") or UNKNOWN
    state = address.get("state") or UNKNOWN
    country = address.get("country") or UNKNOWN
    return str(city), str(state), str(country)


async def lookup_timezone(
    client: httpx.AsyncClient,
    coordinates: Coordinates,
    *,
    token: str,
    base_url: str = DEFAULT_LOCATIONIQ_BASE_URL,
) -> TimezoneInfo | None:
    """Return timezone details or ``None`` when the lookup fails."""
    try:
        payload = await _get_json(
            client,
            f"{base_url.rstrip('/')}/timezone",
            {"key": token, "lat": coordinates.lat, "lon": coordinates.lng, "format": "json"},
        )
    except (httpx.HTTPError, ValueError) as exc:
        LOGGER.warning("[location] Timezone lookup failed: %s", exc)
        return None
    if not payload:
        return None
    timezone = payload.get("timezone")
    if not isinstance(timezone, dict):
        return None
    try:
        offset = int(timezone.get("offset_sec") or 0)
    except (TypeError, ValueError):
        offset = 0
    return TimezoneInfo(
        name=timezone.get("name") or UNKNOWN,
        short_name=timezone.get("short_name") or UNKNOWN,
        full_name=timezone.get("full_name") or UNKNOWN,
        offset_sec=offset,
        is_dst=bool(timezone.get("now_in_dst")),
    )


async def resolve_location_context(
    raw_coordinates: Any,
    *,
    token: str | None,
    base_url: str = DEFAULT_LOCATIONIQ_BASE_URL,
    timeout: float = 10.0,
    client: httpx.AsyncClient | None = None,
) -> LocationContext:
    """Resolve coordinates into a location context, never raising.

    Reverse geocoding and the timezone lookup are independent: either one
    failing leaves only its own fields at ``Unknown``.
    """
    coordinates = coerce_coordinates(raw_coordinates)
    if coordinates is None:
        LOGGER.debug("[location] Invalid location data received, using fallback")
        return UNKNOWN_LOCATION
    if not token:
        LOGGER.debug("[location] No geocoding token configured; location stays unknown")
        return UNKNOWN_LOCATION

    owns_client = client is None
    http = client or httpx.AsyncClient(timeout=timeout)
    context = UNKNOWN_LOCATION
    try:
        place = await reverse_geocode(http, coordinates, token=token, base_url=base_url)
        if place:
            city, state, country = place
            context = replace(context, city=city, state=state, country=country)
        timezone = await lookup_timezone(http, coordinates, token=token, base_url=base_url)
        if timezone:
            context = replace(context, timezone=timezone)
    finally:
        if owns_client:
            await http.aclose()
    LOGGER.debug("[location] User location: %s", context.describe())
    return context
