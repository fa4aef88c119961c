"""Normalization helpers.

Centralizes defensive parsing of coordinates coming from driver agents
and external oracles.
"""

from __future__ import annotations

import math
from typing import Any

from pydelivery.exceptions import RejectedError
from pydelivery.models._base import Position


def safe_float(value: Any) -> float | None:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(result) or math.isinf(result):
        return None
    return result


def coerce_coordinate(value: Any, *, field: str, bound: float) -> float:
    """Parse one coordinate, raising :class:`RejectedError` naming *field* on failure."""
    parsed = safe_float(value)
    if parsed is None:
        raise RejectedError(f"not a finite number: {value!r}", field=field)
    if not -bound <= parsed <= bound:
        raise RejectedError(f"{parsed} outside [-{bound:g}, {bound:g}]", field=field)
    return parsed


def coerce_position(latitude: Any, longitude: Any, *, prefix: str = "") -> Position:
    lat = coerce_coordinate(latitude, field=f"{prefix}latitude", bound=90.0)
    lng = coerce_coordinate(longitude, field=f"{prefix}longitude", bound=180.0)
    return Position(latitude=lat, longitude=lng)


def position_from(value: Any, *, prefix: str = "") -> Position:
    """Accept a :class:`Position`, a ``(lat, lng)`` pair, or a mapping with latitude/longitude."""
    if isinstance(value, Position):
        return value
    if isinstance(value, dict):
        return coerce_position(
            value.get("latitude", value.get("lat")),
            value.get("longitude", value.get("lng", value.get("lon"))),
            prefix=prefix,
        )
    if isinstance(value, (tuple, list)) and len(value) == 2:
        return coerce_position(value[0], value[1], prefix=prefix)
    raise RejectedError(f"expected (latitude, longitude), got {value!r}", field=prefix.rstrip(".") or "position")
