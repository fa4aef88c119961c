#!/usr/bin/env python3
"""Local trip simulation against the fixture dataset.

Seeds the in-memory store with the fixture drivers, customers and
deliveries, connects one observer watching a delivery and its driver,
starts the trip, lets a simulated driver report positions, then marks
the delivery delivered. Every pushed notification is printed.

Set PYDELIVERY_* environment variables to point the run at a JSON store,
geocoder or MQTT broker instead of the defaults.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from pydelivery import (
    DeliveryError,
    DeliveryStatus,
    DeliveryTracker,
    DriverSimulator,
    ObserverChannel,
    SubscriptionTarget,
    TrackerConfig,
)

_LOG = logging.getLogger("simulate")


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Simulate one delivery trip and print live notifications.",
    )
    parser.add_argument(
        "--delivery",
        default="del2",
        help="Fixture delivery id to run (must be PENDING with a driver).",
    )
    parser.add_argument(
        "--reports",
        type=int,
        default=5,
        help="Number of position reports before delivering.",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=0.5,
        help="Seconds between position reports.",
    )
    parser.add_argument(
        "--observer",
        default="demo-observer",
        help="Observer id used for the subscription.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging.",
    )
    return parser.parse_args()


async def _print_notifications(channel: ObserverChannel) -> None:
    async for notification in channel:
        print(json.dumps(notification.to_wire(), default=str, sort_keys=True))


async def _run(args: argparse.Namespace) -> int:
    config = TrackerConfig.from_env(seed_fixtures=True)
    async with DeliveryTracker(config) as tracker:
        delivery = await tracker.get_delivery(args.delivery)
        if delivery.driver_id is None:
            print(f"[simulate] delivery {delivery.id} has no driver assigned", file=sys.stderr)
            return 2
        driver = await tracker.get_driver(delivery.driver_id)

        channel = tracker.connect(args.observer)
        tracker.subscribe(args.observer, SubscriptionTarget.delivery(delivery.id))
        tracker.subscribe(args.observer, SubscriptionTarget.driver(driver.id))
        printer = asyncio.create_task(_print_notifications(channel))

        await tracker.transition_delivery(delivery.id, DeliveryStatus.IN_PROGRESS)
        if driver.position is None:
            print(f"[simulate] driver {driver.id} has no starting position", file=sys.stderr)
            return 2
        simulator = DriverSimulator(tracker, driver.id, driver.position, interval=args.interval)
        await simulator.run(max_reports=args.reports)

        await tracker.transition_delivery(delivery.id, DeliveryStatus.DELIVERED, simulator.position)
        while channel.pending():
            await asyncio.sleep(0)
        tracker.disconnect(args.observer)
        await printer

        print(f"[simulate] {simulator.reports} reports, delivery {delivery.id} delivered")
    return 0


def _main() -> int:
    args = _parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )
    try:
        return asyncio.run(_run(args))
    except DeliveryError as exc:
        print(f"[simulate] failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(_main())
