"""Routes classified telemetry events to storage, live connections and push.

For each event from the broker queue the router resolves the owning user,
hands the decoded payload to its ingestion handler, forwards the original
envelope to the owner's live connections and, for every alert the handler
created, schedules a push notification. Ingestion, live forwarding and
notification are independent: a failure in one never skips the others.
"""

import asyncio
import uuid

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from apn_telemetry.logging_config import correlation_id_ctx, get_logger
from apn_telemetry.models.alert import Alert
from apn_telemetry.models.device import Device
from apn_telemetry.schemas.telemetry import TelemetryEvent, ValidationError, decode_payload
from apn_telemetry.services.connection_registry import ConnectionRegistry
from apn_telemetry.services.ingestion import ingest
from apn_telemetry.services.push_notifications import NotificationDispatcher

logger = get_logger(__name__)


class TelemetryRouter:
    """Consumes telemetry events one at a time, in receipt order."""

    def __init__(
        self,
        events: asyncio.Queue[TelemetryEvent],
        session_maker: async_sessionmaker[AsyncSession],
        registry: ConnectionRegistry,
        notification_dispatcher: NotificationDispatcher | None = None,
    ):
        self.events = events
        self.session_maker = session_maker
        self.registry = registry
        self.notification_dispatcher = notification_dispatcher
        self._task: asyncio.Task | None = None
        self._notifications: set[asyncio.Task] = set()

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._notifications:
            await asyncio.gather(*self._notifications, return_exceptions=True)

    async def _run(self) -> None:
        while True:
            event = await self.events.get()
            try:
                await self.process(event)
            except Exception:
                logger.exception("Unhandled error routing telemetry", device_id=event.device_id)
            finally:
                self.events.task_done()

    async def process(self, event: TelemetryEvent) -> bool:
        """Handle one event.

        Returns:
            False when the event was discarded because its device is unknown,
            inactive or could not be looked up.
        """
        token = correlation_id_ctx.set(f"mqtt-{uuid.uuid4().hex[:12]}")
        try:
            owner = await self._resolve_owner(event.device_id)
            if owner is None:
                return False

            created = await self._ingest(event, owner)
            await self._forward(event, owner)
            for alert in created:
                self._schedule_notification(alert)
            return True
        finally:
            correlation_id_ctx.reset(token)

    async def _resolve_owner(self, device_id: str) -> uuid.UUID | None:
        try:
            async with self.session_maker() as db:
                result = await db.execute(
                    select(Device.user_id, Device.is_active).where(
                        Device.device_id == device_id
                    )
                )
                row = result.one_or_none()
        except SQLAlchemyError:
            logger.exception("Device lookup failed", device_id=device_id)
            return None

        if row is None:
            logger.warning("Telemetry from unknown device, ignoring", device_id=device_id)
            return None
        if not row.is_active:
            logger.info("Telemetry from inactive device, ignoring", device_id=device_id)
            return None
        return row.user_id

    async def _ingest(self, event: TelemetryEvent, user_id: uuid.UUID) -> list[Alert]:
        try:
            payload = decode_payload(event.message_type, event.payload)
        except ValidationError as exc:
            logger.warning(
                "Payload does not match its message type, not stored",
                device_id=event.device_id,
                message_type=event.message_type.value,
                errors=exc.error_count(),
            )
            return []

        if payload is None:
            logger.info(
                "No handler for message type",
                device_id=event.device_id,
                message_type=event.message_type.value,
            )
            return []

        try:
            async with self.session_maker() as db:
                return await ingest(
                    db, event.device_id, user_id, payload, event.received_at
                )
        except Exception:
            logger.exception("Ingestion failed", device_id=event.device_id)
            return []

    async def _forward(self, event: TelemetryEvent, user_id: uuid.UUID) -> None:
        try:
            await self.registry.send_to_user(user_id, event.to_envelope())
        except Exception:
            logger.exception("Live forwarding failed", device_id=event.device_id)

    def _schedule_notification(self, alert: Alert) -> None:
        if self.notification_dispatcher is None:
            return
        task = asyncio.create_task(self.notification_dispatcher.notify_alert(alert))
        self._notifications.add(task)
        task.add_done_callback(self._notifications.discard)
