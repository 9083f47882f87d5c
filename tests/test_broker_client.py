"""Tests for the MQTT broker client: topic parsing, classification,
malformed message handling, publishing and connection error reporting."""

import asyncio
import json
from types import SimpleNamespace
from unittest.mock import MagicMock

import paho.mqtt.client as mqtt
import pytest
from paho.mqtt.packettypes import PacketTypes
from paho.mqtt.reasoncodes import ReasonCode

from apn_telemetry.schemas.telemetry import MessageType
from apn_telemetry.services.broker import (
    BrokerClient,
    BrokerError,
    classify_message,
    device_id_from_topic,
)


def _broker(**kwargs) -> tuple[BrokerClient, MagicMock]:
    paho_client = MagicMock()
    paho_client.subscribe.return_value = (mqtt.MQTT_ERR_SUCCESS, 1)
    broker = BrokerClient(
        host="broker.example.com",
        username="backend",
        password="secret",
        client=paho_client,
        **kwargs,
    )
    return broker, paho_client


def _connack(identifier: int = 0) -> ReasonCode:
    return ReasonCode(PacketTypes.CONNACK, identifier=identifier)


def _disconnect(identifier: int) -> ReasonCode:
    return ReasonCode(PacketTypes.DISCONNECT, identifier=identifier)


class TestClassifyMessage:
    """Classification order: alert, clear, power, reading, legacy, unknown."""

    def test_alert_wins_over_everything(self):
        payload = {"alert": "GAS_LEAK_DETECTED", "status": "ALERT_CLEARED", "water": [900]}
        assert classify_message(payload) == MessageType.ALERT

    def test_alert_cleared(self):
        assert classify_message({"status": "ALERT_CLEARED"}) == MessageType.ALERT_CLEARED

    def test_other_status_is_not_a_clear(self):
        assert classify_message({"status": "OK"}) == MessageType.UNKNOWN

    def test_power_before_readings(self):
        payload = {"power": {"mains": False}, "water": [0, 0, 0, 0]}
        assert classify_message(payload) == MessageType.POWER_STATUS

    def test_sensor_reading_by_water(self):
        assert classify_message({"water": [1, 2, 3, 4]}) == MessageType.SENSOR_READING

    def test_sensor_reading_by_gas_even_when_false(self):
        assert classify_message({"gas": False}) == MessageType.SENSOR_READING

    def test_sensor_reading_by_temperature_or_gyro(self):
        assert (
            classify_message({"temperature": {"temp1": 21.5}})
            == MessageType.SENSOR_READING
        )
        assert classify_message({"gyro": {"movement": 0.2}}) == MessageType.SENSOR_READING

    def test_legacy_medication(self):
        assert classify_message({"medicine_name": "x"}) == MessageType.MEDICATION
        assert classify_message({"schedule_id": 4}) == MessageType.MEDICATION

    def test_unknown(self):
        assert classify_message({"hello": "world"}) == MessageType.UNKNOWN

    def test_empty_alert_does_not_count(self):
        assert classify_message({"alert": ""}) == MessageType.UNKNOWN


class TestDeviceIdFromTopic:
    def test_extracts_device_id(self):
        assert device_id_from_topic("apn/device/APN-1/telemetry", "apn/device") == "APN-1"

    @pytest.mark.parametrize(
        "topic",
        [
            "apn/device/APN-1/commands",
            "apn/device/telemetry",
            "other/device/APN-1/telemetry",
            "apn/device/APN-1/extra/telemetry",
            "apn/device//telemetry",
        ],
    )
    def test_rejects_other_topics(self, topic):
        assert device_id_from_topic(topic, "apn/device") is None


class TestHandleMessage:
    """Inbound payload decoding."""

    def test_valid_payload_becomes_event(self):
        broker, _ = _broker()
        event = broker.handle_message(
            "apn/device/APN-7/telemetry",
            json.dumps({"water": [0, 800, 0, 0]}).encode(),
        )

        assert event is not None
        assert event.device_id == "APN-7"
        assert event.message_type == MessageType.SENSOR_READING
        assert event.payload == {"water": [0, 800, 0, 0]}
        assert event.received_at.tzinfo is not None

    def test_malformed_json_is_dropped(self):
        broker, _ = _broker()
        assert broker.handle_message("apn/device/APN-7/telemetry", b"{not json") is None

    def test_non_object_json_is_dropped(self):
        broker, _ = _broker()
        assert broker.handle_message("apn/device/APN-7/telemetry", b"[1, 2]") is None

    def test_unexpected_topic_is_dropped(self):
        broker, _ = _broker()
        assert broker.handle_message("apn/device/APN-7/status", b"{}") is None

    @pytest.mark.asyncio
    async def test_on_message_enqueues_on_event_loop(self):
        broker, paho_client = _broker()
        broker._loop = asyncio.get_running_loop()

        broker._on_message(
            paho_client,
            None,
            SimpleNamespace(
                topic="apn/device/APN-7/telemetry",
                payload=b'{"alert": "WATER_DETECTED", "sensor": "ZONE1"}',
            ),
        )
        event = await asyncio.wait_for(broker.telemetry.get(), timeout=1)

        assert event.message_type == MessageType.ALERT

    @pytest.mark.asyncio
    async def test_full_queue_drops_new_events(self):
        broker, _ = _broker(queue_maxsize=1)
        first = broker.handle_message("apn/device/A/telemetry", b'{"gas": true}')
        second = broker.handle_message("apn/device/B/telemetry", b'{"gas": true}')

        broker._enqueue(first)
        broker._enqueue(second)

        assert broker.telemetry.qsize() == 1
        assert broker.telemetry.get_nowait().device_id == "A"


class TestPublish:
    def test_returns_false_when_disconnected(self):
        broker, paho_client = _broker()

        assert broker.publish("apn/device/A/commands", {"command": "reset"}) is False
        paho_client.publish.assert_not_called()

    def test_publishes_json_at_qos1(self):
        broker, paho_client = _broker()
        broker._on_connect(paho_client, None, None, _connack())
        paho_client.publish.return_value = SimpleNamespace(rc=mqtt.MQTT_ERR_SUCCESS)

        assert broker.publish("apn/device/A/commands", {"command": "reset"}) is True
        paho_client.publish.assert_called_once_with(
            "apn/device/A/commands", json.dumps({"command": "reset"}), qos=1
        )

    def test_returns_false_when_paho_refuses(self):
        broker, paho_client = _broker()
        broker._on_connect(paho_client, None, None, _connack())
        paho_client.publish.return_value = SimpleNamespace(rc=mqtt.MQTT_ERR_NO_CONN)

        assert broker.publish("apn/device/A/commands", "raw") is False


class TestConnectionLifecycle:
    """Connection, subscription and error reporting."""

    def test_configures_last_will_and_fixed_reconnect(self):
        broker, paho_client = _broker(reconnect_interval=5)

        paho_client.will_set.assert_called_once_with(
            "apn/device/backend/status",
            json.dumps({"status": "offline"}),
            qos=1,
            retain=False,
        )
        paho_client.reconnect_delay_set.assert_called_once_with(min_delay=5, max_delay=5)

    def test_subscribes_on_connect(self):
        broker, paho_client = _broker()

        broker._on_connect(paho_client, None, None, _connack())

        assert broker.is_connected is True
        paho_client.subscribe.assert_called_once_with("apn/device/+/telemetry", qos=1)

    @pytest.mark.asyncio
    async def test_refused_connection_goes_to_listeners(self):
        broker, paho_client = _broker()
        broker._loop = asyncio.get_running_loop()
        errors: list[BrokerError] = []
        broker.add_error_listener(errors.append)

        broker._on_connect(paho_client, None, None, _connack(0x87))
        await asyncio.sleep(0)

        assert broker.is_connected is False
        assert len(errors) == 1
        paho_client.subscribe.assert_not_called()

    @pytest.mark.asyncio
    async def test_keepalive_timeout_is_silent_and_transient(self):
        broker, paho_client = _broker()
        broker._loop = asyncio.get_running_loop()
        listener = MagicMock()
        broker.add_error_listener(listener)
        broker._on_connect(paho_client, None, None, _connack())

        broker._on_disconnect(paho_client, None, None, _disconnect(0x8D))
        await asyncio.sleep(0)

        listener.assert_not_called()
        assert broker.is_connected is False

        # paho reconnects on its own; the next CONNACK resumes delivery
        broker._on_connect(paho_client, None, None, _connack())
        paho_client.publish.return_value = SimpleNamespace(rc=mqtt.MQTT_ERR_SUCCESS)
        assert broker.is_connected is True
        assert broker.publish("apn/device/A/commands", {"command": "ping"}) is True
        assert paho_client.subscribe.call_count == 2

        broker._on_message(
            paho_client,
            None,
            SimpleNamespace(
                topic="apn/device/APN-9/telemetry",
                payload=b'{"gas": true}',
            ),
        )
        event = await asyncio.wait_for(broker.telemetry.get(), timeout=1)

        assert event.device_id == "APN-9"
        assert event.message_type == MessageType.SENSOR_READING

    @pytest.mark.asyncio
    async def test_other_disconnect_errors_reach_listeners(self):
        broker, paho_client = _broker()
        broker._loop = asyncio.get_running_loop()
        listener = MagicMock()
        broker.add_error_listener(listener)

        broker._on_disconnect(paho_client, None, None, _disconnect(0x80))
        await asyncio.sleep(0)

        listener.assert_called_once()
        assert isinstance(listener.call_args.args[0], BrokerError)

    @pytest.mark.asyncio
    async def test_error_without_listeners_is_swallowed(self):
        broker, paho_client = _broker()
        broker._loop = asyncio.get_running_loop()

        broker._on_disconnect(paho_client, None, None, _disconnect(0x80))
        await asyncio.sleep(0)

        assert broker.is_connected is False

    @pytest.mark.asyncio
    async def test_removed_listener_is_not_called(self):
        broker, paho_client = _broker()
        broker._loop = asyncio.get_running_loop()
        listener = MagicMock()
        broker.add_error_listener(listener)
        broker.remove_error_listener(listener)

        broker._on_connect(paho_client, None, None, _connack(0x87))
        await asyncio.sleep(0)

        listener.assert_not_called()

    @pytest.mark.asyncio
    async def test_start_and_stop_drive_the_network_loop(self):
        broker, paho_client = _broker()

        await broker.start()
        paho_client.connect_async.assert_called_once_with(
            "broker.example.com", 8883, keepalive=60
        )
        paho_client.loop_start.assert_called_once()

        await broker.stop()
        paho_client.disconnect.assert_called_once()
        paho_client.loop_stop.assert_called_once()

    def test_status_reports_subscription(self):
        broker, _ = _broker()
        status = broker.status()

        assert status == {
            "connected": False,
            "broker": "broker.example.com:8883",
            "subscription": "apn/device/+/telemetry",
            "queuedEvents": 0,
        }
