"""Live telemetry WebSocket endpoint (``/ws/telemetry``).

Clients authenticate with a ``token`` query parameter or an
``Authorization: Bearer`` header. Once open, the connection receives
telemetry, broadcast and error frames and may send ``ping``,
``subscribe_device``, ``pong`` and device command frames.
"""

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from apn_telemetry.core.auth import bearer_token
from apn_telemetry.logging_config import get_logger
from apn_telemetry.services.connection_registry import ConnectionRegistry

logger = get_logger(__name__)

router = APIRouter(tags=["live"])


def token_from_websocket(websocket: WebSocket) -> str | None:
    return websocket.query_params.get("token") or bearer_token(
        websocket.headers.get("authorization")
    )


@router.websocket("/ws/telemetry")
async def telemetry_socket(websocket: WebSocket) -> None:
    registry: ConnectionRegistry = websocket.app.state.connection_registry
    conn = await registry.open(websocket, token_from_websocket(websocket))
    if conn is None:
        return

    try:
        while True:
            raw = await websocket.receive_text()
            await registry.handle_client_frame(conn, raw)
    except WebSocketDisconnect:
        pass
    except RuntimeError as exc:
        # Raised by receive after the registry closed the socket
        logger.debug("Live connection receive ended", connection_id=conn.connection_id, error=str(exc))
    finally:
        registry.unregister(conn)
