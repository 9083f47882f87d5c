"""Health check endpoints for container orchestration."""

from typing import Any

from fastapi import APIRouter, Request, Response, status
from fastapi.responses import JSONResponse

from apn_telemetry.database import check_database_connection

router = APIRouter(tags=["Health"])


def _broker_connected(request: Request) -> bool | None:
    broker = getattr(request.app.state, "broker", None)
    return broker.is_connected if broker is not None else None


@router.get("/health", response_model=None)
async def health_check(request: Request) -> Response:
    """Database and broker status.

    The service reports degraded (503) only when the database is down; a
    disconnected broker reconnects on its own and is reported, not failed.
    """
    db_connected = await check_database_connection()
    content = {
        "status": "healthy" if db_connected else "degraded",
        "database": "connected" if db_connected else "disconnected",
        "broker": {True: "connected", False: "disconnected", None: "disabled"}[
            _broker_connected(request)
        ],
    }
    return JSONResponse(
        status_code=status.HTTP_200_OK
        if db_connected
        else status.HTTP_503_SERVICE_UNAVAILABLE,
        content=content,
    )


@router.get("/health/live")
async def liveness_probe() -> dict[str, Any]:
    """Succeeds while the process is running; checks no dependencies."""
    return {"status": "alive"}


@router.get("/health/ready", response_model=None)
async def readiness_probe() -> Response:
    """Succeeds once the database answers."""
    if await check_database_connection():
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={"status": "ready", "database": "connected"},
        )
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "not_ready", "database": "disconnected"},
    )
