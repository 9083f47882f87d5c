"""Registry of authenticated live telemetry connections.

Each WebSocket moves through CONNECTING -> AUTHENTICATING -> OPEN -> CLOSED.
A connection is added to its user's set only once authentication has
finished, so nothing is ever delivered to an unauthenticated socket.

The registry is only touched from the event loop; opening, closing and
liveness eviction never interleave mid-mutation, so no locking is needed.
"""

import asyncio
import enum
import json
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from fastapi import WebSocket

from apn_telemetry.core.auth import (
    InvalidTokenError,
    UserAuthenticator,
    UserProfileMissingError,
)
from apn_telemetry.logging_config import get_logger

logger = get_logger(__name__)


class CloseCode(enum.IntEnum):
    GOING_AWAY = 1001
    AUTH_REQUIRED = 4001
    INVALID_TOKEN = 4002
    AUTH_FAILED = 4003
    PROFILE_MISSING = 4004
    UNRESPONSIVE = 4005


class ConnectionState(str, enum.Enum):
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    OPEN = "open"
    CLOSED = "closed"


@dataclass(frozen=True)
class DeviceCommand:
    """A command a user asked to have delivered to one of their devices."""

    user_id: uuid.UUID
    device_id: str
    command: str
    timestamp: str


def _now() -> str:
    return datetime.now(UTC).isoformat()


class LiveConnection:
    """One WebSocket session and its per-connection state."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self.connection_id = uuid.uuid4().hex[:12]
        self.state = ConnectionState.CONNECTING
        self.user_id: uuid.UUID | None = None
        self.is_alive = True
        # Informational only, delivery is not filtered by it
        self.subscribed_devices: set[str] = set()

    def __repr__(self) -> str:
        return (
            f"<LiveConnection(id={self.connection_id}, user_id={self.user_id}, "
            f"state={self.state.value})>"
        )

    async def send_json(self, data: dict[str, Any]) -> bool:
        """Send a frame; returns False instead of raising when it fails."""
        if self.state != ConnectionState.OPEN:
            return False
        try:
            await self.websocket.send_text(json.dumps(data, default=str))
        except Exception as exc:
            logger.warning(
                "Send to live connection failed",
                connection_id=self.connection_id,
                error=str(exc),
            )
            return False
        return True

    async def close(self, code: int, reason: str) -> None:
        self.state = ConnectionState.CLOSED
        try:
            await self.websocket.close(code=code, reason=reason)
        except Exception as exc:
            # Peer already gone
            logger.debug(
                "Close on dead connection",
                connection_id=self.connection_id,
                error=str(exc),
            )


class ConnectionRegistry:
    """Per-user sets of open live connections.

    Device command frames received from clients are put on ``commands`` for
    the command forwarder to validate and publish.
    """

    def __init__(
        self,
        authenticator: UserAuthenticator,
        heartbeat_interval: float = 30.0,
        command_queue_size: int = 100,
    ):
        self._authenticator = authenticator
        self.heartbeat_interval = heartbeat_interval
        self.commands: asyncio.Queue[DeviceCommand] = asyncio.Queue(
            maxsize=command_queue_size
        )
        self._connections: dict[uuid.UUID, set[LiveConnection]] = {}
        self._heartbeat_task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def open(self, websocket: WebSocket, token: str | None) -> LiveConnection | None:
        """Accept, authenticate and register a WebSocket.

        Returns:
            The open connection, or None if it was closed during the
            handshake.
        """
        conn = LiveConnection(websocket)
        await websocket.accept()

        if not token:
            logger.info("Live connection without token", connection_id=conn.connection_id)
            await conn.close(CloseCode.AUTH_REQUIRED, "Authentication required")
            return None

        conn.state = ConnectionState.AUTHENTICATING
        try:
            user = await self._authenticator.authenticate(token)
        except InvalidTokenError:
            logger.info("Live connection with invalid token", connection_id=conn.connection_id)
            await conn.close(CloseCode.INVALID_TOKEN, "Invalid token")
            return None
        except UserProfileMissingError:
            logger.info("Live connection without user profile", connection_id=conn.connection_id)
            await conn.close(CloseCode.PROFILE_MISSING, "User profile not found")
            return None
        except Exception:
            logger.exception(
                "Live connection authentication error",
                connection_id=conn.connection_id,
            )
            await conn.close(CloseCode.AUTH_FAILED, "Authentication failed")
            return None

        conn.user_id = user.id
        conn.state = ConnectionState.OPEN
        conn.is_alive = True
        self._connections.setdefault(user.id, set()).add(conn)

        logger.info(
            "Live connection opened",
            user_id=str(user.id),
            connection_id=conn.connection_id,
            user_connections=len(self._connections[user.id]),
        )
        await conn.send_json(
            {
                "type": "connected",
                "message": "Successfully connected to telemetry stream",
                "userId": str(user.id),
                "connectionId": conn.connection_id,
                "timestamp": _now(),
            }
        )
        return conn

    def unregister(self, conn: LiveConnection) -> None:
        """Remove a connection; drops the user entry once it is empty.

        Safe to call more than once for the same connection.
        """
        conn.state = ConnectionState.CLOSED
        if conn.user_id is None:
            return
        user_connections = self._connections.get(conn.user_id)
        if user_connections is None or conn not in user_connections:
            return
        user_connections.discard(conn)
        if not user_connections:
            del self._connections[conn.user_id]
        logger.info(
            "Live connection closed",
            user_id=str(conn.user_id),
            connection_id=conn.connection_id,
        )

    async def terminate(self, conn: LiveConnection) -> None:
        """Evict an unresponsive connection without waiting on the peer."""
        logger.info(
            "Terminating unresponsive connection",
            user_id=str(conn.user_id),
            connection_id=conn.connection_id,
        )
        self.unregister(conn)
        await conn.close(CloseCode.UNRESPONSIVE, "Connection unresponsive")

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def connections_for(self, user_id: uuid.UUID) -> set[LiveConnection]:
        return set(self._connections.get(user_id, ()))

    def _all_connections(self) -> list[LiveConnection]:
        return [conn for conns in self._connections.values() for conn in conns]

    async def _deliver(self, connections: list[LiveConnection], frame: dict[str, Any]) -> int:
        results = await asyncio.gather(*(conn.send_json(frame) for conn in connections))
        return sum(1 for sent in results if sent)

    async def send_to_user(self, user_id: uuid.UUID, data: dict[str, Any]) -> int:
        """Send ``data`` as a telemetry frame to every connection of a user.

        Returns:
            Number of connections the frame was written to.
        """
        connections = list(self._connections.get(user_id, ()))
        if not connections:
            logger.info("No active connections for user", user_id=str(user_id))
            return 0

        sent = await self._deliver(
            connections, {"type": "telemetry", "data": data, "timestamp": _now()}
        )
        logger.debug("Telemetry delivered", user_id=str(user_id), connections=sent)
        return sent

    async def broadcast(self, data: dict[str, Any]) -> int:
        """Send ``data`` to every open connection."""
        sent = await self._deliver(
            self._all_connections(),
            {"type": "broadcast", "data": data, "timestamp": _now()},
        )
        logger.info("Broadcast sent", connections=sent)
        return sent

    async def send_error_to_user(
        self,
        user_id: uuid.UUID,
        code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> int:
        frame: dict[str, Any] = {
            "type": "error",
            "code": code,
            "message": message,
            "timestamp": _now(),
        }
        if details:
            frame["details"] = details
        connections = list(self._connections.get(user_id, ()))
        if not connections:
            logger.info("No active connections for error", user_id=str(user_id), code=code)
            return 0
        return await self._deliver(connections, frame)

    # ------------------------------------------------------------------
    # Inbound frames
    # ------------------------------------------------------------------

    async def handle_client_frame(self, conn: LiveConnection, raw: str) -> None:
        """Process one text frame received from a client."""
        # Any inbound frame proves the peer is still there.
        conn.is_alive = True
        try:
            message = json.loads(raw)
        except ValueError:
            logger.warning("Unparseable client frame", connection_id=conn.connection_id)
            return
        if not isinstance(message, dict):
            logger.warning("Client frame is not an object", connection_id=conn.connection_id)
            return

        frame_type = message.get("type")
        if frame_type == "ping":
            await conn.send_json({"type": "pong", "timestamp": _now()})
        elif frame_type == "pong":
            pass  # reply to a heartbeat probe, recorded above
        elif frame_type == "subscribe_device":
            device_id = message.get("deviceId")
            if isinstance(device_id, str) and device_id:
                conn.subscribed_devices.add(device_id)
                await conn.send_json(
                    {"type": "subscribed", "deviceId": device_id, "timestamp": _now()}
                )
        elif self._is_command(message):
            await self._queue_command(conn, message)
        else:
            logger.info(
                "Unknown client frame",
                connection_id=conn.connection_id,
                frame_type=frame_type,
            )

    @staticmethod
    def _is_command(message: dict[str, Any]) -> bool:
        device_id = message.get("deviceId")
        command = message.get("command")
        return (
            isinstance(device_id, str)
            and bool(device_id)
            and isinstance(command, str)
            and bool(command)
        )

    async def _queue_command(self, conn: LiveConnection, message: dict[str, Any]) -> None:
        timestamp = message.get("timestamp")
        command = DeviceCommand(
            user_id=conn.user_id,
            device_id=message["deviceId"],
            command=message["command"],
            timestamp=timestamp if isinstance(timestamp, str) else _now(),
        )
        try:
            self.commands.put_nowait(command)
        except asyncio.QueueFull:
            logger.warning(
                "Command queue full, rejecting command",
                user_id=str(conn.user_id),
                device_id=command.device_id,
            )
            await conn.send_json(
                {
                    "type": "error",
                    "code": "INTERNAL_ERROR",
                    "message": "Server is busy, command not sent",
                    "timestamp": _now(),
                }
            )
            return
        logger.info(
            "Device command received",
            user_id=str(conn.user_id),
            device_id=command.device_id,
            command=command.command,
        )

    # ------------------------------------------------------------------
    # Liveness
    # ------------------------------------------------------------------

    async def heartbeat_tick(self) -> int:
        """Run one liveness round.

        Connections that sent no frame since the previous probe are
        terminated; the rest are marked not-alive and probed again.

        Returns:
            Number of connections terminated.
        """
        terminated = 0
        for conn in self._all_connections():
            if not conn.is_alive:
                await self.terminate(conn)
                terminated += 1
                continue
            conn.is_alive = False
            await conn.send_json({"type": "heartbeat", "timestamp": _now()})
        return terminated

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self.heartbeat_tick()
            except Exception:
                logger.exception("Liveness check failed")

    async def start(self) -> None:
        if self._heartbeat_task is None:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
            logger.info("Liveness probing started", interval=self.heartbeat_interval)

    async def stop(self) -> None:
        """Stop probing and close every connection with 1001."""
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None

        connections = self._all_connections()
        self._connections.clear()
        for conn in connections:
            await conn.close(CloseCode.GOING_AWAY, "Server shutting down")
        logger.info("Live connections closed", count=len(connections))

    def stats(self) -> dict[str, int]:
        return {
            "activeUsers": len(self._connections),
            "totalConnections": sum(len(c) for c in self._connections.values()),
        }
