"""Socket grouping API."""

import uuid
from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from apn_telemetry.config import settings
from apn_telemetry.core.auth import CurrentUser
from apn_telemetry.database import get_db
from apn_telemetry.middleware.rate_limit import limiter
from apn_telemetry.schemas.socket import (
    SocketCreateRequest,
    SocketListResponse,
    SocketResponse,
)
from apn_telemetry.services.socket_service import (
    SocketCreationError,
    create_socket,
    delete_socket,
    list_sockets,
)

router = APIRouter(prefix="/api/sockets", tags=["sockets"])


@router.post("", response_model=SocketResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
async def create_socket_endpoint(
    body: SocketCreateRequest,
    request: Request,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
) -> SocketResponse:
    """Create a socket from devices that are active, unassigned and reporting.

    409 when no such device exists.
    """
    try:
        socket, devices = await create_socket(
            db,
            user_id=current_user.id,
            name=body.name,
            location=body.location,
            device_ids=body.device_ids,
            activity_window=timedelta(minutes=settings.socket_activity_window_minutes),
        )
    except SocketCreationError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    await db.commit()
    return SocketResponse(
        id=socket.id,
        name=socket.name,
        location=socket.location,
        device_ids=sorted(d.device_id for d in devices),
        created_at=socket.created_at,
    )


@router.get("", response_model=SocketListResponse)
async def list_sockets_endpoint(
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
) -> SocketListResponse:
    sockets = await list_sockets(db, current_user.id)
    return SocketListResponse(
        sockets=[
            SocketResponse(
                id=s.id,
                name=s.name,
                location=s.location,
                device_ids=device_ids,
                created_at=s.created_at,
            )
            for s, device_ids in sockets
        ]
    )


@router.delete("/{socket_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_socket_endpoint(
    socket_id: uuid.UUID,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
) -> None:
    if not await delete_socket(db, current_user.id, socket_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Socket not found")
    await db.commit()
