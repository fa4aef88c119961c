from __future__ import annotations

import asyncio
from typing import Any

import pytest

from pydelivery._mqtt import MqttBridge, decode_bridge_message, encode_bridge_message, topic_for
from pydelivery.exceptions import DeliveryError
from pydelivery.models import EntityKind


class _ImmediateLoop:
    """Stand-in loop that runs threadsafe callbacks inline."""

    def call_soon_threadsafe(self, callback: Any, *args: Any) -> None:
        callback(*args)


def _bridge(received: list[tuple[EntityKind, str]], node_id: str = "node-a") -> MqttBridge:
    return MqttBridge(
        loop=_ImmediateLoop(),  # type: ignore[arg-type]
        node_id=node_id,
        on_remote_change=lambda kind, entity_id: received.append((kind, entity_id)),
    )


def test_topic_quotes_entity_id() -> None:
    assert topic_for("pydelivery", EntityKind.DRIVER, "d1") == "pydelivery/driver/d1"
    assert topic_for("fleet", EntityKind.DELIVERY, "a/b#c") == "fleet/delivery/a%2Fb%23c"


def test_encode_decode() -> None:
    message = decode_bridge_message(encode_bridge_message(EntityKind.DELIVERY, "del1", "node-a"))
    assert message.kind == EntityKind.DELIVERY
    assert message.entity_id == "del1"
    assert message.origin == "node-a"


@pytest.mark.parametrize(
    "payload",
    [
        b"\xff\xfe",
        b"[1, 2]",
        b'{"kind": "driver", "origin": "n"}',
        b'{"kind": "truck", "id": "x", "origin": "n"}',
    ],
)
def test_decode_rejects_malformed(payload: bytes) -> None:
    with pytest.raises(DeliveryError):
        decode_bridge_message(payload)


def test_remote_payload_scheduled_on_loop() -> None:
    received: list[tuple[EntityKind, str]] = []
    bridge = _bridge(received)

    assert bridge.handle_payload(encode_bridge_message(EntityKind.DRIVER, "d1", "node-b")) is True
    assert received == [(EntityKind.DRIVER, "d1")]


def test_own_echo_and_garbage_ignored() -> None:
    received: list[tuple[EntityKind, str]] = []
    bridge = _bridge(received)

    assert bridge.handle_payload(encode_bridge_message(EntityKind.DRIVER, "d1", "node-a")) is False
    assert bridge.handle_payload(b"not json") is False
    assert received == []


def test_publish_before_start_is_noop() -> None:
    bridge = _bridge([])
    bridge.publish(EntityKind.DRIVER, "d1")
    assert bridge.is_running is False
    bridge.stop()


@pytest.mark.asyncio
async def test_handle_payload_from_worker_thread_reaches_loop() -> None:
    loop = asyncio.get_running_loop()
    seen: asyncio.Future[tuple[EntityKind, str]] = loop.create_future()
    bridge = MqttBridge(
        loop=loop,
        node_id="node-a",
        on_remote_change=lambda kind, entity_id: seen.set_result((kind, entity_id)),
    )

    payload = encode_bridge_message(EntityKind.DELIVERY, "del2", "node-b")
    await asyncio.to_thread(bridge.handle_payload, payload)

    assert await asyncio.wait_for(seen, timeout=1) == (EntityKind.DELIVERY, "del2")
