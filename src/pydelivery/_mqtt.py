"""Cross-process change relay over MQTT.

A single process keeps its subscription registry in memory, so a change
committed in one process must also reach observers connected to another.
Each process publishes ``{prefix}/{kind}/{id}`` for every local notify and
listens on ``{prefix}/#``. Messages carry only the entity fingerprint and
the publishing node; receivers re-read the entity from the shared store
before pushing it.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, cast
from urllib.parse import quote

import paho.mqtt.client as mqtt

from pydelivery.exceptions import DeliveryError
from pydelivery.models.entities import EntityKind


@dataclass(frozen=True)
class BridgeMessage:
    """Decoded relay message."""

    kind: EntityKind
    entity_id: str
    origin: str


def topic_for(prefix: str, kind: EntityKind, entity_id: str) -> str:
    return f"{prefix}/{kind.value}/{quote(entity_id, safe='')}"


def encode_bridge_message(kind: EntityKind, entity_id: str, origin: str) -> bytes:
    body = {"kind": kind.value, "id": entity_id, "origin": origin}
    return json.dumps(body, separators=(",", ":")).encode("utf-8")


def decode_bridge_message(payload: bytes) -> BridgeMessage:
    try:
        parsed = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise DeliveryError("Bridge payload is not JSON") from exc
    if not isinstance(parsed, dict):
        raise DeliveryError("Bridge payload is not an object")
    entity_id = parsed.get("id")
    origin = parsed.get("origin")
    if not isinstance(entity_id, str) or not entity_id or not isinstance(origin, str):
        raise DeliveryError("Bridge payload missing id/origin")
    try:
        kind = EntityKind(parsed.get("kind"))
    except ValueError as exc:
        raise DeliveryError(f"Bridge payload has unknown kind {parsed.get('kind')!r}") from exc
    return BridgeMessage(kind=kind, entity_id=entity_id, origin=origin)


class MqttBridge:
    """Threaded paho-mqtt runtime that hands remote change signals to an asyncio loop."""

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop,
        node_id: str,
        on_remote_change: Callable[[EntityKind, str], None],
        topic_prefix: str = "pydelivery",
        keepalive: int = 60,
        logger: logging.Logger | None = None,
    ) -> None:
        self._loop = loop
        self._node_id = node_id
        self._on_remote_change = on_remote_change
        self._topic_prefix = topic_prefix.rstrip("/")
        self._keepalive = keepalive
        self._logger = logger or logging.getLogger(__name__)
        self._client: mqtt.Client | None = None
        self._running = False

    @property
    def is_running(self) -> bool:
        """Whether the MQTT runtime is actively running."""
        return self._running

    @property
    def node_id(self) -> str:
        return self._node_id

    def start(self, host: str, port: int) -> None:
        """Connect to the broker and start the network loop thread."""
        self.stop()
        self._logger.debug("MQTT bridge start requested host=%s port=%s node=%s", host, port, self._node_id)

        client = mqtt.Client(
            callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
            client_id=f"pydelivery-{self._node_id}",
            protocol=mqtt.MQTTv5,
        )
        client.enable_logger(self._logger)
        subscription = f"{self._topic_prefix}/#"

        def on_connect(
            c: mqtt.Client,
            _userdata: Any,
            _flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if reason_code.value != 0:
                self._logger.warning("MQTT bridge connect failed: %s", reason_code)
                return
            self._logger.info("MQTT bridge connected; subscribing %s", subscription)
            c.subscribe(subscription, qos=1)

        def on_message(_c: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
            self.handle_payload(msg.payload)

        def on_disconnect(
            _client: mqtt.Client,
            _userdata: Any,
            _disconnect_flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if self._running:
                self._logger.warning("MQTT bridge disconnected: %s", reason_code)

        client.on_connect = on_connect
        client.on_message = on_message
        client.on_disconnect = on_disconnect

        client.connect(host, port, keepalive=self._keepalive)
        client.loop_start()

        self._client = client
        self._running = True
        self._logger.debug("MQTT bridge network loop started")

    def handle_payload(self, payload: bytes) -> bool:
        """Decode one inbound payload and schedule it on the loop.

        Runs on the MQTT thread. Returns ``False`` for malformed payloads
        and for echoes of this node's own publications.
        """
        try:
            message = decode_bridge_message(payload)
        except DeliveryError:
            self._logger.debug("MQTT bridge payload parse failure", exc_info=True)
            return False
        if message.origin == self._node_id:
            return False
        self._logger.debug("Remote change %s %s from %s", message.kind, message.entity_id, message.origin)
        self._loop.call_soon_threadsafe(self._on_remote_change, message.kind, message.entity_id)
        return True

    def publish(self, kind: EntityKind, entity_id: str) -> None:
        client = self._client
        if client is None or not self._running:
            return
        info = client.publish(
            topic_for(self._topic_prefix, kind, entity_id),
            encode_bridge_message(kind, entity_id, self._node_id),
            qos=1,
        )
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            self._logger.warning("MQTT bridge publish for %s %s returned rc=%s", kind, entity_id, info.rc)

    def stop(self) -> None:
        """Stop and disconnect the MQTT client if running."""
        client = self._client
        self._client = None
        was_running = self._running
        self._running = False

        if client is None:
            return
        try:
            if was_running:
                self._logger.debug("MQTT bridge disconnect requested")
                client.disconnect()
        finally:
            client.loop_stop()
            self._logger.debug("MQTT bridge network loop stopped")
