"""Shared model base and value types.

Every entity model inherits from :class:`DeliveryBaseModel`, which
provides:

* ``frozen=True`` so a snapshot handed to an observer can never be
  mutated behind the store's back; changes go through
  ``model_copy(update=...)`` inside the store.
* ``extra="forbid"`` so a misspelt partial update is rejected instead of
  silently ignored.

Timestamps accept timezone-aware datetimes, ISO-8601 strings (the form
the JSON store writes) or epoch seconds (milliseconds are detected and
scaled down).
"""

from __future__ import annotations

import math
from datetime import UTC, datetime
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator

# Threshold to distinguish seconds from milliseconds.
_MS_THRESHOLD = 1_000_000_000_000


def utcnow() -> datetime:
    return datetime.now(UTC)


def parse_timestamp(value: Any) -> datetime | None:
    """Convert an epoch timestamp (seconds **or** milliseconds), ISO-8601 string or datetime to aware UTC.

    Naive values are assumed to be UTC. Returns ``None`` for ``None``.
    """
    if value is None:
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.strip())
        except ValueError as exc:
            raise ValueError(f"timestamp string is not ISO-8601: {value!r}") from exc
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"timestamp must be a datetime, ISO string or epoch number, got {type(value).__name__}")
    ts = float(value)
    if math.isnan(ts) or math.isinf(ts):
        raise ValueError("timestamp must be finite")
    if ts >= _MS_THRESHOLD:
        ts /= 1000.0
    return datetime.fromtimestamp(ts, tz=UTC)


Timestamp = Annotated[datetime, BeforeValidator(parse_timestamp)]
"""Annotated type that coerces epoch numbers and naive datetimes to aware UTC datetimes."""


class DeliveryBaseModel(BaseModel):
    """Base for all pydelivery records."""

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        validate_default=True,
        str_strip_whitespace=True,
    )


class Position(DeliveryBaseModel):
    """A WGS84 coordinate pair."""

    latitude: float = Field(..., ge=-90.0, le=90.0)
    longitude: float = Field(..., ge=-180.0, le=180.0)

    @field_validator("latitude", "longitude", mode="before")
    @classmethod
    def _reject_non_finite(cls, value: Any) -> Any:
        if isinstance(value, bool):
            raise ValueError("coordinate must be a number")
        if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
            raise ValueError("coordinate must be finite")
        return value

    def as_lat_lng(self) -> tuple[float, float]:
        return self.latitude, self.longitude

    def as_lng_lat(self) -> tuple[float, float]:
        """GeoJSON/OSRM coordinate order."""
        return self.longitude, self.latitude


class ContactInfo(DeliveryBaseModel):
    """Contact fields shared by every person record."""

    email: str = ""
    phone: str = ""
    address: str = ""

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return value.lower()
