"""Driver position reports.

Driver agents are expected to report at a bounded rate (one report every
3-10 seconds). The updater does not rate-limit by wall clock; the optional
``min_interval`` debounce only caps store writes when reports arrive
closer together (by ``observed_at``) than the configured interval.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from pydelivery._locks import KeyedLocks
from pydelivery._normalize import coerce_position
from pydelivery.exceptions import RejectedError
from pydelivery.fanout import FanoutEngine
from pydelivery.models._base import parse_timestamp
from pydelivery.models.entities import Driver, EntityKind
from pydelivery.models.subscription import PositionAck
from pydelivery.store.base import EntityStore, get_as

_logger = logging.getLogger(__name__)


def _coerce_observed_at(value: Any) -> datetime:
    try:
        observed = parse_timestamp(value)
    except (TypeError, ValueError) as exc:
        raise RejectedError(str(exc), field="observed_at") from exc
    if observed is None:
        raise RejectedError("observed_at is required", field="observed_at")
    return observed


def should_apply_report(
    *,
    stored_observed_at: datetime | None,
    incoming_observed_at: datetime,
    min_interval: timedelta,
) -> str | None:
    """Decide whether a validated report changes the stored position.

    Returns ``None`` to apply, or the reason it is discarded:
    ``"stale"`` when it is older than the stored observation, ``"throttled"``
    when it falls inside the debounce window. Equal timestamps apply.
    """
    if stored_observed_at is None:
        return None
    if incoming_observed_at < stored_observed_at:
        return "stale"
    if min_interval > timedelta(0) and incoming_observed_at - stored_observed_at < min_interval:
        return "throttled"
    return None


class LocationUpdater:
    def __init__(
        self,
        store: EntityStore,
        fanout: FanoutEngine,
        locks: KeyedLocks,
        *,
        min_interval: timedelta = timedelta(0),
    ) -> None:
        self._store = store
        self._fanout = fanout
        self._locks = locks
        self._min_interval = min_interval

    async def report_position(
        self,
        driver_id: str,
        latitude: Any,
        longitude: Any,
        observed_at: Any,
    ) -> PositionAck:
        """Validate and apply one position report.

        Raises :class:`RejectedError` for out-of-range coordinates or a
        missing/invalid ``observed_at`` and :class:`NotFoundError` for an
        unknown driver. A report older than the stored one is accepted but
        discarded (``applied=False``) so out-of-order delivery cannot move
        the displayed position backwards.
        """
        position = coerce_position(latitude, longitude)
        observed = _coerce_observed_at(observed_at)

        async with self._locks.hold((EntityKind.DRIVER, driver_id)):
            driver = await get_as(self._store, Driver, driver_id)

            reason = should_apply_report(
                stored_observed_at=driver.position_observed_at,
                incoming_observed_at=observed,
                min_interval=self._min_interval,
            )
            if reason is not None:
                _logger.debug(
                    "Discarded %s report for driver %s (observed_at=%s, stored=%s)",
                    reason,
                    driver_id,
                    observed.isoformat(),
                    driver.position_observed_at.isoformat() if driver.position_observed_at else None,
                )
                return PositionAck(driver_id=driver_id, applied=False, observed_at=observed, reason=reason)

            await self._store.update(
                EntityKind.DRIVER,
                driver_id,
                {"position": position, "position_observed_at": observed},
            )
            _logger.debug(
                "Driver %s at (%.6f, %.6f) observed_at=%s",
                driver_id,
                position.latitude,
                position.longitude,
                observed.isoformat(),
            )
            await self._fanout.notify(EntityKind.DRIVER, driver_id)

        return PositionAck(driver_id=driver_id, applied=True, observed_at=observed)
