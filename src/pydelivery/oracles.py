"""Geocoding and directions oracles.

Both are external collaborators. Geocoding resolves delivery addresses to
coordinates when a trip starts; directions are advisory only and never
affect the state machine.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, Field

from pydelivery._normalize import safe_float
from pydelivery._transport import Transport
from pydelivery.exceptions import OracleError
from pydelivery.models._base import Position

_logger = logging.getLogger(__name__)


class Route(BaseModel):
    """A route as a GeoJSON ``LineString`` plus OSRM summary figures."""

    model_config = ConfigDict(frozen=True)

    geometry: dict[str, Any]
    distance_m: float | None = None
    duration_s: float | None = None
    raw: dict[str, Any] = Field(default_factory=dict, repr=False)


class GeocodingOracle(Protocol):
    async def geocode(self, address: str) -> Position:
        ...


class DirectionsOracle(Protocol):
    async def route(self, start: Position | None, origin: Position, destination: Position) -> Route:
        ...


class NominatimGeocoder:
    """Geocoder for a Nominatim-compatible ``/search`` endpoint."""

    def __init__(self, transport: Transport, base_url: str) -> None:
        self._transport = transport
        self._base_url = base_url.rstrip("/")

    async def geocode(self, address: str) -> Position:
        query = address.strip()
        if not query:
            raise OracleError("Cannot geocode an empty address", endpoint=f"{self._base_url}/search")
        endpoint = f"{self._base_url}/search"
        payload = await self._transport.get_json(endpoint, {"q": query, "format": "jsonv2", "limit": "1"})
        position = parse_geocode_response(payload, endpoint=endpoint, address=query)
        _logger.debug("Geocoded %r -> (%.6f, %.6f)", query, position.latitude, position.longitude)
        return position


def parse_geocode_response(payload: Any, *, endpoint: str, address: str) -> Position:
    if not isinstance(payload, list) or not payload:
        raise OracleError(f"No geocoding match for {address!r}", endpoint=endpoint)
    first = payload[0]
    if not isinstance(first, dict):
        raise OracleError("Geocoding match is not an object", endpoint=endpoint)
    lat = safe_float(first.get("lat"))
    lng = safe_float(first.get("lon"))
    if lat is None or lng is None or not (-90 <= lat <= 90 and -180 <= lng <= 180):
        raise OracleError(f"Geocoding match for {address!r} has no usable coordinates", endpoint=endpoint)
    return Position(latitude=lat, longitude=lng)


class OsrmDirections:
    """Directions from an OSRM-compatible ``/route/v1/{profile}`` endpoint."""

    def __init__(self, transport: Transport, base_url: str, *, profile: str = "driving") -> None:
        self._transport = transport
        self._base_url = base_url.rstrip("/")
        self._profile = profile

    async def route(self, start: Position | None, origin: Position, destination: Position) -> Route:
        waypoints = [point for point in (start, origin, destination) if point is not None]
        coordinates = ";".join(f"{lng},{lat}" for lng, lat in (point.as_lng_lat() for point in waypoints))
        endpoint = f"{self._base_url}/route/v1/{self._profile}/{coordinates}"
        payload = await self._transport.get_json(endpoint, {"overview": "full", "geometries": "geojson"})
        return parse_route_response(payload, endpoint=endpoint)


def parse_route_response(payload: Any, *, endpoint: str) -> Route:
    if not isinstance(payload, dict):
        raise OracleError("Route response is not an object", endpoint=endpoint)
    code = payload.get("code")
    if code != "Ok":
        raise OracleError(f"Route lookup failed: code={code} message={payload.get('message', '')}", endpoint=endpoint)
    routes = payload.get("routes")
    if not isinstance(routes, list) or not routes or not isinstance(routes[0], dict):
        raise OracleError("Route response has no routes", endpoint=endpoint)
    best = routes[0]
    geometry = best.get("geometry")
    if not isinstance(geometry, dict) or geometry.get("type") != "LineString":
        raise OracleError("Route geometry is not a GeoJSON LineString", endpoint=endpoint)
    return Route(
        geometry=geometry,
        distance_m=safe_float(best.get("distance")),
        duration_s=safe_float(best.get("duration")),
        raw=best,
    )
