"""Custom exception hierarchy for pydelivery."""

from __future__ import annotations

from typing import Any


class DeliveryError(Exception):
    """Base exception for all pydelivery errors."""


class ConfigError(DeliveryError):
    """Invalid or missing configuration."""


class NotFoundError(DeliveryError):
    """A referenced entity id is absent from the store."""

    def __init__(self, kind: Any, entity_id: str) -> None:
        self.kind = kind
        self.entity_id = entity_id
        super().__init__(f"{kind} {entity_id!r} not found")


class InvalidTransitionError(DeliveryError):
    """Requested delivery status change is not in the transition table."""

    def __init__(self, current: Any, requested: Any, *, delivery_id: str = "") -> None:
        self.current = current
        self.requested = requested
        self.delivery_id = delivery_id
        super().__init__(f"Invalid transition {current} -> {requested} for delivery {delivery_id!r}")


class RejectedError(DeliveryError):
    """Malformed input or a business-rule violation.

    ``field`` names the offending input when there is one, so the caller
    can correct it and resubmit.
    """

    def __init__(self, reason: str, *, field: str | None = None) -> None:
        self.reason = reason
        self.field = field
        message = f"{field}: {reason}" if field else reason
        super().__init__(message)


class StoreError(DeliveryError):
    """Backend failure while reading or writing the entity store."""


class TransitionFailedError(DeliveryError):
    """Store commit failed after the transition guards passed.

    Safe to retry: the guards are re-evaluated on every attempt.
    """

    def __init__(self, delivery_id: str, requested: Any) -> None:
        self.delivery_id = delivery_id
        self.requested = requested
        super().__init__(f"Commit of {requested} for delivery {delivery_id!r} failed")


class SubscriptionLostError(DeliveryError):
    """The observer's push channel is closed."""

    def __init__(self, observer_id: str) -> None:
        self.observer_id = observer_id
        super().__init__(f"Channel for observer {observer_id!r} is closed")


class OracleError(DeliveryError):
    """Geocoding or directions lookup failed (network, non-200, bad payload)."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        endpoint: str = "",
    ) -> None:
        self.status_code = status_code
        self.endpoint = endpoint
        super().__init__(message)
