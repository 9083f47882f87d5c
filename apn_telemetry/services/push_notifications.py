"""Alert delivery via Expo push notifications.

Formats an alert into a title/body/priority notification and sends it to
every push token registered by the alert's owner. Tokens that Expo reports
as no longer registered are deleted. Delivery is best effort: failures are
logged, never retried and never raised to the telemetry path.
"""

import re
from dataclasses import dataclass
from typing import Any

import httpx
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from apn_telemetry.logging_config import get_logger
from apn_telemetry.models.alert import Alert, AlertType
from apn_telemetry.models.push_token import PushToken

logger = get_logger(__name__)

EXPO_TOKEN_PATTERN = re.compile(r"^(ExponentPushToken|ExpoPushToken)\[.+\]$")

# Alert type -> notification title
ALERT_TITLES: dict[str, str] = {
    AlertType.WATER_DETECTED.value: "\U0001f4a7 Water Detected",  # 💧
    AlertType.GAS_LEAK_DETECTED.value: "\U0001f6a8 Gas Leak Alert",  # 🚨
    AlertType.HIGH_TEMPERATURE.value: "\U0001f321\ufe0f High Temperature Warning",  # 🌡️
    AlertType.GROUND_MOVEMENT_DETECTED.value: "\u26a0\ufe0f Ground Movement Detected",  # ⚠️
    AlertType.POWER_ABNORMAL.value: "\u26a1 Power Issue Detected",  # ⚡
    AlertType.MULTIPLE_HAZARDS.value: "\U0001f6a8 Multiple Hazards Detected",  # 🚨
}

# Alert types delivered with high priority; everything else is "default"
HIGH_PRIORITY_TYPES = frozenset(
    {AlertType.GAS_LEAK_DETECTED.value, AlertType.MULTIPLE_HAZARDS.value}
)


class PushGatewayError(Exception):
    """Expo push API rejected a request or could not be reached."""


def is_expo_push_token(token: str) -> bool:
    return bool(EXPO_TOKEN_PATTERN.match(token))


def _sensor_location(sensor: str | None) -> str:
    if sensor and sensor.startswith("ZONE"):
        return sensor.replace("ZONE", "Zone ", 1)
    return sensor or "your property"


def format_alert_body(alert_type: str, sensor: str | None, value: float | None) -> str:
    """Return the user-facing message for an alert."""
    if alert_type == AlertType.WATER_DETECTED:
        return (
            f"Water has been detected in {_sensor_location(sensor)}. "
            "Please check the area immediately."
        )
    if alert_type == AlertType.GAS_LEAK_DETECTED:
        return (
            "A gas leak has been detected! Please examine the area immediately "
            "and contact emergency services."
        )
    if alert_type == AlertType.HIGH_TEMPERATURE:
        temp = f"{value:.1f}°C" if value else "an elevated level"
        return (
            f"High temperature detected ({temp}). "
            "Please check your property for potential fire hazards."
        )
    if alert_type == AlertType.GROUND_MOVEMENT_DETECTED:
        intensity = f" (Intensity: {value:.2f})" if value else ""
        return (
            f"Ground movement detected{intensity}. "
            "This may indicate seismic activity or structural issues."
        )
    if alert_type == AlertType.POWER_ABNORMAL:
        return (
            "An abnormal power condition has been detected. "
            "Please check your electrical system."
        )
    if alert_type == AlertType.MULTIPLE_HAZARDS:
        return (
            "Multiple hazards have been detected simultaneously. Please check "
            "your property immediately and ensure your safety."
        )
    return f"Alert detected: {alert_type}. Please check your device."


def format_alert_notification(alert: Alert) -> dict[str, Any]:
    """Build the Expo message fields (without ``to``) for an alert."""
    title = ALERT_TITLES.get(
        alert.alert_type, f"\u26a0\ufe0f {alert.alert_type.replace('_', ' ')}"
    )
    return {
        "title": title,
        "body": format_alert_body(alert.alert_type, alert.sensor, alert.value),
        "priority": "high" if alert.alert_type in HIGH_PRIORITY_TYPES else "default",
        "sound": "default",
        "data": {
            "alertId": str(alert.id),
            "deviceId": alert.device_id,
            "alertType": alert.alert_type,
            "sensor": alert.sensor,
            "value": alert.value,
            "receivedAt": alert.received_at.isoformat() if alert.received_at else None,
        },
    }


@dataclass(frozen=True)
class PushTicket:
    """Expo's per-message delivery receipt."""

    token: str
    status: str
    message: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    @property
    def endpoint_invalid(self) -> bool:
        return self.status == "error" and self.error == "DeviceNotRegistered"


class ExpoPushGateway:
    """Client for Expo's push send endpoint."""

    def __init__(
        self,
        push_url: str = "https://exp.host/--/api/v2/push/send",
        access_token: str = "",
        chunk_size: int = 100,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.push_url = push_url
        self.access_token = access_token
        self.chunk_size = chunk_size
        self.timeout = timeout
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    async def _send_chunk(
        self, client: httpx.AsyncClient, chunk: list[dict[str, Any]]
    ) -> list[PushTicket]:
        try:
            response = await client.post(
                self.push_url, json=chunk, headers=self._headers()
            )
        except httpx.HTTPError as exc:
            raise PushGatewayError(f"Push request failed: {exc}") from exc

        if response.status_code != 200:
            raise PushGatewayError(
                f"Push request failed: {response.status_code} {response.text}"
            )

        tickets = response.json().get("data") or []
        result = []
        for message, ticket in zip(chunk, tickets):
            details = ticket.get("details") or {}
            result.append(
                PushTicket(
                    token=details.get("expoPushToken") or message["to"],
                    status=ticket.get("status", "error"),
                    message=ticket.get("message"),
                    error=details.get("error")
                    or ("DeviceNotRegistered" if details.get("expoPushToken") else None),
                )
            )
        return result

    async def send(self, messages: list[dict[str, Any]]) -> list[PushTicket]:
        """Send messages in chunks of at most ``chunk_size``.

        A failed chunk is logged and skipped; the remaining chunks are still
        sent.
        """
        tickets: list[PushTicket] = []
        async with httpx.AsyncClient(
            timeout=self.timeout, transport=self._transport
        ) as client:
            for start in range(0, len(messages), self.chunk_size):
                chunk = messages[start : start + self.chunk_size]
                try:
                    tickets.extend(await self._send_chunk(client, chunk))
                except PushGatewayError as exc:
                    logger.error(
                        "Error sending push notification chunk",
                        size=len(chunk),
                        error=str(exc),
                    )
        return tickets


class NotificationDispatcher:
    """Sends alert notifications to the alert owner's push tokens."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        gateway: ExpoPushGateway,
    ):
        self.session_maker = session_maker
        self.gateway = gateway

    async def _user_tokens(self, db: AsyncSession, user_id) -> list[str]:
        result = await db.execute(
            select(PushToken.expo_push_token).where(PushToken.user_id == user_id)
        )
        return [token for token in result.scalars().all() if is_expo_push_token(token)]

    async def notify_alert(self, alert: Alert) -> int:
        """Deliver one alert.

        Returns:
            Number of messages Expo accepted.
        """
        if alert.user_id is None:
            return 0

        try:
            async with self.session_maker() as db:
                tokens = await self._user_tokens(db, alert.user_id)
            if not tokens:
                logger.info("No push tokens for user", user_id=str(alert.user_id))
                return 0

            notification = format_alert_notification(alert)
            tickets = await self.gateway.send(
                [{"to": token, **notification} for token in tokens]
            )

            invalid = sorted({t.token for t in tickets if t.endpoint_invalid})
            if invalid:
                async with self.session_maker() as db:
                    await db.execute(
                        delete(PushToken).where(PushToken.expo_push_token.in_(invalid))
                    )
                    await db.commit()
                logger.info("Removed invalid push tokens", count=len(invalid))

            failed = [t for t in tickets if not t.ok]
            if failed:
                logger.warning(
                    "Some push notifications failed",
                    failed=len(failed),
                    errors=[t.error or t.message for t in failed],
                )

            sent = sum(1 for t in tickets if t.ok)
            logger.info(
                "Push notifications sent",
                user_id=str(alert.user_id),
                alert_type=alert.alert_type,
                sent=sent,
                total=len(tokens),
            )
            return sent
        except Exception:
            logger.exception(
                "Error sending push notifications",
                user_id=str(alert.user_id),
                alert_id=str(alert.id),
            )
            return 0
