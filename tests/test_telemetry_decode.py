"""Tests for per-type payload decoding and the live envelope shape."""

from datetime import UTC, datetime

import pytest

from apn_telemetry.schemas.telemetry import (
    AlertClearedPayload,
    AlertPayload,
    MessageType,
    PowerStatusPayload,
    SensorReadingPayload,
    TelemetryEvent,
    ValidationError,
    decode_payload,
)


class TestDecodePayload:
    def test_alert(self):
        payload = decode_payload(
            MessageType.ALERT,
            {"alert": "HIGH_TEMPERATURE", "sensor": "TEMP1", "value": 61.5, "fw": "1.2"},
        )

        assert isinstance(payload, AlertPayload)
        assert payload.alert == "HIGH_TEMPERATURE"
        assert payload.sensor == "TEMP1"
        assert payload.value == 61.5

    def test_numeric_sensor_label_becomes_text(self):
        payload = decode_payload(MessageType.ALERT, {"alert": "WATER_DETECTED", "sensor": 2})
        assert payload.sensor == "2"

    def test_alert_with_wrong_value_type_fails_closed(self):
        with pytest.raises(ValidationError):
            decode_payload(MessageType.ALERT, {"alert": "HIGH_TEMPERATURE", "value": "hot"})

    def test_alert_cleared_accepts_either_type_field(self):
        a = decode_payload(
            MessageType.ALERT_CLEARED, {"status": "ALERT_CLEARED", "alert": "WATER_DETECTED"}
        )
        b = decode_payload(
            MessageType.ALERT_CLEARED,
            {"status": "ALERT_CLEARED", "alertType": "WATER_DETECTED"},
        )
        c = decode_payload(MessageType.ALERT_CLEARED, {"status": "ALERT_CLEARED"})

        assert isinstance(a, AlertClearedPayload)
        assert a.resolved_alert_type == "WATER_DETECTED"
        assert b.resolved_alert_type == "WATER_DETECTED"
        assert c.resolved_alert_type is None

    def test_power_status(self):
        payload = decode_payload(MessageType.POWER_STATUS, {"power": {"mains": False}})

        assert isinstance(payload, PowerStatusPayload)
        assert payload.resolved_power_status == {"mains": False}

    def test_unstored_types_return_none(self):
        assert decode_payload(MessageType.MEDICATION, {"medicine_name": "x"}) is None
        assert decode_payload(MessageType.UNKNOWN, {"x": 1}) is None

    def test_sensor_reading_with_non_list_water_fails_closed(self):
        with pytest.raises(ValidationError):
            decode_payload(MessageType.SENSOR_READING, {"water": "wet"})


class TestSensorReadingPayload:
    """Zone thresholding and nested/flat field resolution."""

    @pytest.mark.parametrize(
        "water,zone1,zone2",
        [
            ([0, 0, 0, 0], False, False),
            ([501, 0, 0, 0], True, False),
            ([0, 501, 0, 0], True, False),
            ([0, 0, 501, 0], False, True),
            ([0, 0, 0, 900], False, True),
            ([500, 500, 500, 500], False, False),
            ([800, 0, 0, 800], True, True),
        ],
    )
    def test_zone_thresholds(self, water, zone1, zone2):
        payload = SensorReadingPayload.model_validate({"water": water})
        assert payload.zone1_detected is zone1
        assert payload.zone2_detected is zone2

    def test_short_and_null_water_arrays_read_as_dry(self):
        payload = SensorReadingPayload.model_validate({"water": [None, 700]})

        assert payload.water_levels == [0, 700, 0, 0]
        assert payload.zone1_detected is True
        assert payload.zone2_detected is False

    def test_gas_absent_vs_false(self):
        absent = SensorReadingPayload.model_validate({"water": [0, 0, 0, 0]})
        false = SensorReadingPayload.model_validate({"gas": False})
        true = SensorReadingPayload.model_validate({"gas": 1})

        assert absent.gas_detected is None
        assert false.gas_detected is False
        assert true.gas_detected is True

    def test_nested_values_win_over_flat(self):
        payload = SensorReadingPayload.model_validate(
            {
                "temperature": {"temp1": 30.0},
                "temp_1": 10.0,
                "temp_2": 12.0,
                "gyro": {"movement": 0.4},
                "movement": 0.1,
            }
        )

        assert payload.resolved_temp_1 == 30.0
        assert payload.resolved_temp_2 == 12.0
        assert payload.resolved_movement == 0.4


class TestTelemetryEvent:
    def test_envelope_shape(self):
        received_at = datetime(2026, 10, 18, 12, 0, tzinfo=UTC)
        event = TelemetryEvent(
            device_id="APN-1",
            topic="apn/device/APN-1/telemetry",
            message_type=MessageType.SENSOR_READING,
            payload={"gas": False},
            received_at=received_at,
        )

        assert event.to_envelope() == {
            "deviceId": "APN-1",
            "topic": "apn/device/APN-1/telemetry",
            "messageType": "sensor_reading",
            "payload": {"gas": False},
            "receivedAt": received_at.isoformat(),
        }
