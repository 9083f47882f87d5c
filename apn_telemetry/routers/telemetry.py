"""Device pairing and telemetry read API.

All routes act on the authenticated user's own devices and data.
"""

import uuid
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from apn_telemetry.core.auth import CurrentUser
from apn_telemetry.database import get_db
from apn_telemetry.logging_config import get_logger
from apn_telemetry.middleware.rate_limit import limiter
from apn_telemetry.schemas.alert import (
    ActiveAlertsResponse,
    AlertAcknowledgeResponse,
    AlertArchiveResponse,
    AlertListResponse,
    AlertResponse,
    ArchivedAlertListResponse,
    ArchivedAlertResponse,
    LatestReadingResponse,
    SensorReadingListResponse,
    SensorReadingResponse,
    ServiceStatusResponse,
    TelemetryStats,
    TelemetryStatsResponse,
)
from apn_telemetry.schemas.base import Pagination
from apn_telemetry.schemas.device import (
    DeviceListResponse,
    DevicePairRequest,
    DevicePairResponse,
    DeviceResponse,
    DeviceUnpairResponse,
)
from apn_telemetry.services import alert_service
from apn_telemetry.services.alert_service import Page
from apn_telemetry.services.device_service import (
    DevicePairingError,
    list_devices,
    pair_device,
    unpair_device,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/api/telemetry", tags=["telemetry"])


def _pagination(page: Page) -> Pagination:
    return Pagination(
        total=page.total,
        limit=page.limit,
        offset=page.offset,
        has_more=page.has_more,
    )


# ---------------------------------------------------------------------------
# Devices
# ---------------------------------------------------------------------------


@router.post(
    "/device/pair",
    response_model=DevicePairResponse,
    status_code=status.HTTP_201_CREATED,
)
@limiter.limit("10/minute")
async def pair_device_endpoint(
    body: DevicePairRequest,
    request: Request,
    response: Response,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
) -> DevicePairResponse:
    """Pair a device to the current user.

    201 when the device is new, 200 when the current owner pairs it again,
    409 when it belongs to another account.
    """
    try:
        device, created = await pair_device(
            db, user_id=current_user.id, device_id=body.device_id, name=body.name
        )
    except DevicePairingError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    await db.commit()

    if not created:
        response.status_code = status.HTTP_200_OK
    return DevicePairResponse(
        message="Device paired successfully" if created else "Device already paired to your account",
        device=DeviceResponse.model_validate(device),
    )


@router.delete("/device/{device_id}", response_model=DeviceUnpairResponse)
async def unpair_device_endpoint(
    device_id: str,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
) -> DeviceUnpairResponse:
    """Unpair one of the current user's devices."""
    removed = await unpair_device(db, current_user.id, device_id)
    if not removed:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Device not found or not owned by you",
        )
    await db.commit()
    return DeviceUnpairResponse(message="Device unpaired successfully", device_id=device_id)


@router.get("/devices", response_model=DeviceListResponse)
async def list_devices_endpoint(
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
) -> DeviceListResponse:
    devices = await list_devices(db, current_user.id)
    return DeviceListResponse(devices=[DeviceResponse.model_validate(d) for d in devices])


# ---------------------------------------------------------------------------
# Sensor readings
# ---------------------------------------------------------------------------


@router.get("/sensors", response_model=SensorReadingListResponse)
async def list_sensor_readings_endpoint(
    current_user: CurrentUser,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    device_id: str | None = Query(default=None, alias="deviceId"),
    start_date: datetime | None = Query(default=None, alias="startDate"),
    end_date: datetime | None = Query(default=None, alias="endDate"),
    db: AsyncSession = Depends(get_db),
) -> SensorReadingListResponse:
    page = await alert_service.list_sensor_readings(
        db,
        current_user.id,
        limit=limit,
        offset=offset,
        device_id=device_id,
        start_date=start_date,
        end_date=end_date,
    )
    return SensorReadingListResponse(
        readings=[SensorReadingResponse.from_reading(r) for r in page.items],
        pagination=_pagination(page),
    )


@router.get("/sensors/latest", response_model=LatestReadingResponse)
async def latest_sensor_reading_endpoint(
    current_user: CurrentUser,
    device_id: str | None = Query(default=None, alias="deviceId"),
    db: AsyncSession = Depends(get_db),
) -> LatestReadingResponse:
    reading = await alert_service.get_latest_reading(db, current_user.id, device_id)
    return LatestReadingResponse(
        reading=SensorReadingResponse.from_reading(reading) if reading else None
    )


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------


@router.get("/alerts", response_model=AlertListResponse)
async def list_alerts_endpoint(
    current_user: CurrentUser,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    active: bool | None = None,
    alert_type: str | None = Query(default=None, alias="type"),
    device_id: str | None = Query(default=None, alias="deviceId"),
    db: AsyncSession = Depends(get_db),
) -> AlertListResponse:
    page = await alert_service.list_alerts(
        db,
        current_user.id,
        limit=limit,
        offset=offset,
        active=active,
        alert_type=alert_type,
        device_id=device_id,
    )
    return AlertListResponse(
        alerts=[AlertResponse.model_validate(a) for a in page.items],
        pagination=_pagination(page),
    )


@router.get("/alerts/active", response_model=ActiveAlertsResponse)
async def active_alerts_endpoint(
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
) -> ActiveAlertsResponse:
    alerts = await alert_service.get_active_alerts(db, current_user.id)
    return ActiveAlertsResponse(
        alerts=[AlertResponse.model_validate(a) for a in alerts],
        count=len(alerts),
    )


@router.get("/alerts/archived", response_model=ArchivedAlertListResponse)
async def archived_alerts_endpoint(
    current_user: CurrentUser,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
) -> ArchivedAlertListResponse:
    page = await alert_service.list_archived_alerts(
        db, current_user.id, limit=limit, offset=offset
    )
    return ArchivedAlertListResponse(
        alerts=[ArchivedAlertResponse.model_validate(a) for a in page.items],
        pagination=_pagination(page),
    )


@router.post("/alerts/{alert_id}/acknowledge", response_model=AlertAcknowledgeResponse)
async def acknowledge_alert_endpoint(
    alert_id: uuid.UUID,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
) -> AlertAcknowledgeResponse:
    """Clear an alert manually."""
    alert = await alert_service.acknowledge_alert(db, current_user.id, alert_id)
    if alert is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Alert not found or not owned by you",
        )
    await db.commit()
    return AlertAcknowledgeResponse(
        message="Alert acknowledged", alert=AlertResponse.model_validate(alert)
    )


@router.post("/alerts/{alert_id}/archive", response_model=AlertArchiveResponse)
async def archive_alert_endpoint(
    alert_id: uuid.UUID,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
) -> AlertArchiveResponse:
    """Move an alert to the archive; it is purged after the retention window."""
    archived = await alert_service.archive_alert(db, current_user.id, alert_id)
    if archived is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Alert not found or not owned by you",
        )
    await db.commit()
    return AlertArchiveResponse(
        message="Alert archived",
        archived=ArchivedAlertResponse.model_validate(archived),
    )


# ---------------------------------------------------------------------------
# Overview
# ---------------------------------------------------------------------------


@router.get("/stats", response_model=TelemetryStatsResponse)
async def stats_endpoint(
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
) -> TelemetryStatsResponse:
    stats = await alert_service.get_user_stats(db, current_user.id)
    return TelemetryStatsResponse(stats=TelemetryStats(**stats))


@router.get("/status", response_model=ServiceStatusResponse)
async def status_endpoint(
    request: Request,
    current_user: CurrentUser,
) -> ServiceStatusResponse:
    """Broker connection state and live connection counts."""
    broker = getattr(request.app.state, "broker", None)
    registry = request.app.state.connection_registry
    return ServiceStatusResponse(
        broker=broker.status() if broker is not None else {"connected": False, "enabled": False},
        live_connections=registry.stats(),
    )
