"""Forwards device commands from live connections to the broker.

A command is only published when the target device exists, belongs to the
requesting user and is active. With the broker disabled the forwarder still
runs and reports every valid command as MQTT_ERROR. Every rejection is reported back to the
user's live connections as a typed error frame.
"""

import asyncio
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from apn_telemetry.logging_config import get_logger
from apn_telemetry.models.device import Device
from apn_telemetry.services.broker import BrokerClient
from apn_telemetry.services.connection_registry import ConnectionRegistry, DeviceCommand

logger = get_logger(__name__)


class CommandRejected(Exception):
    """A command failed validation or could not be published."""

    def __init__(self, code: str, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details


class CommandForwarder:
    """Consumes ``registry.commands`` and publishes valid commands."""

    def __init__(
        self,
        broker: BrokerClient | None,
        registry: ConnectionRegistry,
        session_maker: async_sessionmaker[AsyncSession],
    ):
        self.broker = broker
        self.registry = registry
        self.session_maker = session_maker
        self._task: asyncio.Task | None = None

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

    async def _run(self) -> None:
        while True:
            command = await self.registry.commands.get()
            try:
                await self.forward(command)
            finally:
                self.registry.commands.task_done()

    async def _check_device(self, command: DeviceCommand) -> None:
        async with self.session_maker() as db:
            result = await db.execute(
                select(Device).where(Device.device_id == command.device_id)
            )
            device = result.scalar_one_or_none()

        if device is None:
            raise CommandRejected(
                "DEVICE_NOT_FOUND", f"Device {command.device_id} not found"
            )
        if device.user_id != command.user_id:
            raise CommandRejected(
                "UNAUTHORIZED", f"User does not own device {command.device_id}"
            )
        if not device.is_active:
            raise CommandRejected(
                "DEVICE_INACTIVE", f"Device {command.device_id} is inactive"
            )

    async def forward(self, command: DeviceCommand) -> bool:
        """Validate and publish one command.

        Returns:
            True if the command was handed to the broker.
        """
        try:
            await self._check_device(command)
            published = self.broker is not None and self.broker.publish(
                self.broker.command_topic(command.device_id),
                {
                    "command": command.command,
                    "timestamp": datetime.now(UTC).isoformat(),
                },
            )
            if not published:
                raise CommandRejected(
                    "MQTT_ERROR",
                    "Failed to publish command to device",
                    {"deviceId": command.device_id},
                )
        except CommandRejected as exc:
            logger.warning(
                "Device command rejected",
                user_id=str(command.user_id),
                device_id=command.device_id,
                code=exc.code,
            )
            await self.registry.send_error_to_user(
                command.user_id, exc.code, exc.message, exc.details
            )
            return False
        except Exception:
            logger.exception(
                "Error handling device command",
                user_id=str(command.user_id),
                device_id=command.device_id,
            )
            await self.registry.send_error_to_user(
                command.user_id,
                "INTERNAL_ERROR",
                "Internal error while processing command",
            )
            return False

        logger.info(
            "Device command published",
            user_id=str(command.user_id),
            device_id=command.device_id,
            command=command.command,
        )
        return True
