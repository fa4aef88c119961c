from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import pytest

from pydelivery.exceptions import OracleError
from pydelivery.models import Position
from pydelivery.oracles import NominatimGeocoder, OsrmDirections, parse_geocode_response, parse_route_response

_ROUTE_OK: dict[str, Any] = {
    "code": "Ok",
    "routes": [
        {
            "distance": 5321.4,
            "duration": 812.0,
            "geometry": {"type": "LineString", "coordinates": [[106.8456, -6.2088], [106.8556, -6.2188]]},
        }
    ],
}


class _FakeTransport:
    def __init__(self, payload: Any) -> None:
        self._payload = payload
        self.calls: list[tuple[str, dict[str, str]]] = []

    async def get_json(self, url: str, params: Mapping[str, str] | None = None) -> Any:
        self.calls.append((url, dict(params or {})))
        return self._payload


@pytest.mark.asyncio
async def test_geocoder_queries_search_endpoint() -> None:
    transport = _FakeTransport([{"lat": "-6.1754", "lon": "106.8272", "display_name": "Monas"}])
    geocoder = NominatimGeocoder(transport, "https://nominatim.example/")

    position = await geocoder.geocode("  Monas, Jakarta ")

    assert position == Position(latitude=-6.1754, longitude=106.8272)
    url, params = transport.calls[0]
    assert url == "https://nominatim.example/search"
    assert params == {"q": "Monas, Jakarta", "format": "jsonv2", "limit": "1"}


@pytest.mark.asyncio
async def test_geocoder_rejects_empty_address_without_request() -> None:
    transport = _FakeTransport([])
    with pytest.raises(OracleError):
        await NominatimGeocoder(transport, "https://nominatim.example").geocode("   ")
    assert transport.calls == []


@pytest.mark.parametrize(
    "payload",
    [[], {}, ["x"], [{"lat": "abc", "lon": "1"}], [{"lat": "100", "lon": "1"}]],
)
def test_geocode_response_without_usable_match(payload: Any) -> None:
    with pytest.raises(OracleError):
        parse_geocode_response(payload, endpoint="/search", address="nowhere")


@pytest.mark.asyncio
async def test_directions_builds_lng_lat_waypoints() -> None:
    transport = _FakeTransport(_ROUTE_OK)
    directions = OsrmDirections(transport, "https://osrm.example", profile="driving")

    route = await directions.route(
        Position(latitude=-6.2, longitude=106.8),
        Position(latitude=-6.21, longitude=106.81),
        Position(latitude=-6.22, longitude=106.82),
    )

    url, params = transport.calls[0]
    assert url == "https://osrm.example/route/v1/driving/106.8,-6.2;106.81,-6.21;106.82,-6.22"
    assert params == {"overview": "full", "geometries": "geojson"}
    assert route.geometry["type"] == "LineString"
    assert route.distance_m == 5321.4
    assert route.duration_s == 812.0


@pytest.mark.asyncio
async def test_directions_skips_missing_start() -> None:
    transport = _FakeTransport(_ROUTE_OK)
    await OsrmDirections(transport, "https://osrm.example").route(
        None,
        Position(latitude=1, longitude=2),
        Position(latitude=3, longitude=4),
    )
    assert transport.calls[0][0].endswith("/driving/2.0,1.0;4.0,3.0")


@pytest.mark.parametrize(
    "payload",
    [
        {"code": "NoRoute", "message": "Impossible route"},
        {"code": "Ok", "routes": []},
        {"code": "Ok", "routes": [{"geometry": "encoded-polyline"}]},
        [],
    ],
)
def test_route_response_errors(payload: Any) -> None:
    with pytest.raises(OracleError):
        parse_route_response(payload, endpoint="/route")
