"""Simulated driver agent.

Stands in for a driver's device: every ``interval`` seconds it reports the
driver's position with a small random jitter, the way a phone would send
GPS fixes while on a trip.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Protocol

from pydelivery.exceptions import DeliveryError, NotFoundError
from pydelivery.models._base import Position, utcnow
from pydelivery.models.subscription import PositionAck

_logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 5.0
DEFAULT_JITTER = 0.0025


class PositionSink(Protocol):
    async def report_position(
        self,
        driver_id: str,
        latitude: float,
        longitude: float,
        observed_at: datetime,
    ) -> PositionAck:
        ...


class DriverSimulator:
    """Fixed-interval jittered position reporter for one driver.

    Use :meth:`step` to emit a single report or :meth:`start`/:meth:`stop`
    to run it as a background task. Rejections are logged and the loop
    keeps going; an unknown driver stops it.
    """

    def __init__(
        self,
        sink: PositionSink,
        driver_id: str,
        start: Position,
        *,
        interval: float = DEFAULT_INTERVAL,
        jitter: float = DEFAULT_JITTER,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._sink = sink
        self._driver_id = driver_id
        self._position = start
        self._interval = interval
        self._jitter = jitter
        self._rng = rng or random.Random()
        self._clock = clock
        self._sleep = sleep
        self._task: asyncio.Task[None] | None = None
        self.reports = 0

    @property
    def driver_id(self) -> str:
        return self._driver_id

    @property
    def position(self) -> Position:
        return self._position

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _next_position(self) -> Position:
        lat = self._position.latitude + self._rng.uniform(-self._jitter, self._jitter)
        lng = self._position.longitude + self._rng.uniform(-self._jitter, self._jitter)
        return Position(latitude=max(-90.0, min(90.0, lat)), longitude=max(-180.0, min(180.0, lng)))

    async def step(self) -> PositionAck:
        """Move by one jitter step and report it."""
        position = self._next_position()
        ack = await self._sink.report_position(
            self._driver_id,
            position.latitude,
            position.longitude,
            self._clock(),
        )
        self._position = position
        self.reports += 1
        return ack

    async def run(self, *, max_reports: int | None = None) -> None:
        attempts = 0
        while max_reports is None or attempts < max_reports:
            attempts += 1
            try:
                await self.step()
            except NotFoundError:
                _logger.warning("Simulated driver %s no longer exists; stopping", self._driver_id)
                return
            except DeliveryError as exc:
                _logger.warning("Simulated report for %s rejected: %s", self._driver_id, exc)
            await self._sleep(self._interval)

    def start(self) -> asyncio.Task[None]:
        if self._task is not None and not self._task.done():
            return self._task
        self._task = asyncio.create_task(self.run(), name=f"simulate-{self._driver_id}")
        return self._task

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
