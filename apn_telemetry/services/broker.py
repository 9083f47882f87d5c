"""MQTT broker client.

Keeps one auto-reconnecting TLS session to the broker, subscribes to the
per-device telemetry topics and turns inbound messages into classified
``TelemetryEvent`` objects on an asyncio queue. paho-mqtt runs its network
loop in its own thread; every callback hands its result back to the event
loop with ``call_soon_threadsafe`` so nothing else in the process has to
be thread-aware.
"""

import asyncio
import json
import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import paho.mqtt.client as mqtt

from apn_telemetry.logging_config import get_logger
from apn_telemetry.schemas.telemetry import (
    ALERT_CLEARED_STATUS,
    MessageType,
    TelemetryEvent,
)

logger = get_logger(__name__)

# MQTT 5 reason code paho reports when the broker stops answering pings
KEEPALIVE_TIMEOUT = 0x8D


class BrokerError(Exception):
    """Broker connection failure other than a keepalive timeout."""


ErrorListener = Callable[[BrokerError], None]


def classify_message(payload: dict[str, Any]) -> MessageType:
    """Decide what kind of message a device sent.

    Checks run in a fixed order; the first match wins.
    """
    if payload.get("alert"):
        return MessageType.ALERT
    if payload.get("status") == ALERT_CLEARED_STATUS:
        return MessageType.ALERT_CLEARED
    if payload.get("power"):
        return MessageType.POWER_STATUS
    if (
        payload.get("water")
        or "gas" in payload
        or payload.get("temperature")
        or payload.get("gyro")
    ):
        return MessageType.SENSOR_READING
    if payload.get("medicine_name") or payload.get("schedule_id"):
        return MessageType.MEDICATION
    return MessageType.UNKNOWN


def device_id_from_topic(topic: str, topic_prefix: str) -> str | None:
    """Extract the device id from ``<prefix>/<deviceId>/telemetry``."""
    prefix_parts = topic_prefix.split("/")
    parts = topic.split("/")
    if len(parts) != len(prefix_parts) + 2:
        return None
    if parts[: len(prefix_parts)] != prefix_parts or parts[-1] != "telemetry":
        return None
    return parts[len(prefix_parts)] or None


def _is_keepalive_timeout(reason_code: Any) -> bool:
    return getattr(reason_code, "value", reason_code) == KEEPALIVE_TIMEOUT


class BrokerClient:
    """Asyncio-facing wrapper around a paho-mqtt client.

    Inbound telemetry is delivered on ``self.telemetry``; when the queue is
    full new events are dropped and logged. Connection failures are passed to
    registered error listeners, or logged when there are none.
    """

    def __init__(
        self,
        host: str,
        port: int = 8883,
        username: str = "",
        password: str = "",
        topic_prefix: str = "apn/device",
        client_id_prefix: str = "apn-backend",
        use_tls: bool = True,
        keepalive: int = 60,
        reconnect_interval: int = 5,
        queue_maxsize: int = 1000,
        client: mqtt.Client | None = None,
    ):
        self.host = host
        self.port = port
        self.topic_prefix = topic_prefix
        self.keepalive = keepalive
        self.telemetry: asyncio.Queue[TelemetryEvent] = asyncio.Queue(
            maxsize=queue_maxsize
        )
        self._connected = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._error_listeners: list[ErrorListener] = []

        self._client = client or mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=f"{client_id_prefix}-{int(time.time() * 1000)}",
            clean_session=True,
        )
        if client is None:
            if use_tls:
                self._client.tls_set()
            if username:
                self._client.username_pw_set(username, password)
        self._client.will_set(
            self.status_topic,
            json.dumps({"status": "offline"}),
            qos=1,
            retain=False,
        )
        self._client.reconnect_delay_set(
            min_delay=reconnect_interval, max_delay=reconnect_interval
        )
        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_message = self._on_message

    @property
    def telemetry_topic(self) -> str:
        return f"{self.topic_prefix}/+/telemetry"

    @property
    def status_topic(self) -> str:
        return f"{self.topic_prefix}/backend/status"

    def command_topic(self, device_id: str) -> str:
        return f"{self.topic_prefix}/{device_id}/commands"

    @property
    def is_connected(self) -> bool:
        return self._connected

    def add_error_listener(self, listener: ErrorListener) -> None:
        self._error_listeners.append(listener)

    def remove_error_listener(self, listener: ErrorListener) -> None:
        if listener in self._error_listeners:
            self._error_listeners.remove(listener)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Begin connecting in the background.

        Returns immediately; the paho network thread keeps retrying at the
        fixed reconnect interval until the broker accepts the session.
        """
        self._loop = asyncio.get_running_loop()
        logger.info(
            "Connecting to MQTT broker",
            host=self.host,
            port=self.port,
        )
        self._client.connect_async(self.host, self.port, keepalive=self.keepalive)
        self._client.loop_start()

    async def stop(self) -> None:
        """Disconnect cleanly and stop the network thread.

        A clean disconnect does not trigger the broker's last-will message.
        """
        self._client.disconnect()
        await asyncio.to_thread(self._client.loop_stop)
        self._connected = False
        logger.info("MQTT broker client stopped")

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def publish(self, topic: str, message: dict[str, Any] | str) -> bool:
        """Publish a message at QoS 1.

        Returns:
            False when not connected or when paho refuses the message.
        """
        if not self._connected:
            logger.warning("Cannot publish, broker not connected", topic=topic)
            return False

        body = message if isinstance(message, str) else json.dumps(message)
        info = self._client.publish(topic, body, qos=1)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            logger.error("Publish failed", topic=topic, rc=info.rc)
            return False

        logger.debug("Published message", topic=topic)
        return True

    def status(self) -> dict[str, Any]:
        return {
            "connected": self._connected,
            "broker": f"{self.host}:{self.port}",
            "subscription": self.telemetry_topic,
            "queuedEvents": self.telemetry.qsize(),
        }

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def handle_message(self, topic: str, raw: bytes) -> TelemetryEvent | None:
        """Parse and classify one inbound message.

        Returns:
            The telemetry event, or None when the message was dropped.
        """
        device_id = device_id_from_topic(topic, self.topic_prefix)
        if device_id is None:
            logger.warning("Ignoring message on unexpected topic", topic=topic)
            return None

        try:
            payload = json.loads(raw.decode("utf-8"))
        except ValueError:
            logger.warning(
                "Dropping malformed telemetry payload",
                device_id=device_id,
                raw=raw[:200].decode("utf-8", errors="replace"),
            )
            return None

        if not isinstance(payload, dict):
            logger.warning(
                "Dropping non-object telemetry payload",
                device_id=device_id,
                payload_type=type(payload).__name__,
            )
            return None

        message_type = classify_message(payload)
        logger.info(
            "Telemetry received",
            device_id=device_id,
            message_type=message_type.value,
        )
        return TelemetryEvent(
            device_id=device_id,
            topic=topic,
            message_type=message_type,
            payload=payload,
            received_at=datetime.now(UTC),
        )

    def _enqueue(self, event: TelemetryEvent) -> None:
        try:
            self.telemetry.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(
                "Telemetry queue full, dropping event",
                device_id=event.device_id,
                message_type=event.message_type.value,
            )

    def _report_error(self, error: BrokerError) -> None:
        if not self._error_listeners:
            logger.error("MQTT error (no listeners)", error=str(error))
            return
        for listener in list(self._error_listeners):
            try:
                listener(error)
            except Exception:
                logger.exception("MQTT error listener failed")

    def _call_in_loop(self, callback: Callable[..., None], *args: Any) -> None:
        if self._loop is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(callback, *args)

    # ------------------------------------------------------------------
    # paho callbacks (network thread)
    # ------------------------------------------------------------------

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        if reason_code.is_failure:
            self._connected = False
            self._call_in_loop(
                self._report_error,
                BrokerError(f"Connection refused: {reason_code}"),
            )
            return

        self._connected = True
        logger.info("Connected to MQTT broker", host=self.host)
        result, _mid = client.subscribe(self.telemetry_topic, qos=1)
        if result != mqtt.MQTT_ERR_SUCCESS:
            logger.error(
                "Subscription failed", topic=self.telemetry_topic, rc=result
            )
        else:
            logger.info("Subscribed to telemetry", topic=self.telemetry_topic)

    def _on_disconnect(
        self, client, userdata, disconnect_flags, reason_code, properties=None
    ):
        self._connected = False

        if _is_keepalive_timeout(reason_code):
            logger.info("MQTT keepalive timeout, reconnecting")
            return

        if getattr(reason_code, "is_failure", False):
            self._call_in_loop(
                self._report_error,
                BrokerError(f"Disconnected: {reason_code}"),
            )
            return

        logger.info("Disconnected from MQTT broker", reason=str(reason_code))

    def _on_message(self, client, userdata, message):
        event = self.handle_message(message.topic, message.payload)
        if event is not None:
            self._call_in_loop(self._enqueue, event)
