"""Push token registration API.

The mobile app registers its Expo push token after sign-in so alert
notifications can reach it.
"""

from fastapi import APIRouter, Body, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from apn_telemetry.core.auth import CurrentUser
from apn_telemetry.database import get_db
from apn_telemetry.middleware.rate_limit import limiter
from apn_telemetry.schemas.notification import (
    PushTokenListResponse,
    PushTokenRegisterRequest,
    PushTokenRegisterResponse,
    PushTokenResponse,
    PushTokenUnregisterRequest,
    PushTokenUnregisterResponse,
)
from apn_telemetry.services.push_token_service import (
    PushTokenError,
    list_push_tokens,
    register_push_token,
    unregister_push_tokens,
)

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


@router.post("/register", response_model=PushTokenRegisterResponse)
@limiter.limit("20/minute")
async def register_push_token_endpoint(
    body: PushTokenRegisterRequest,
    request: Request,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
) -> PushTokenRegisterResponse:
    try:
        token, created = await register_push_token(
            db,
            user_id=current_user.id,
            expo_push_token=body.expo_push_token,
            device_id=body.device_id,
            platform=body.platform,
        )
    except PushTokenError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    await db.commit()
    return PushTokenRegisterResponse(
        message="Push token registered" if created else "Push token updated",
        token_id=token.id,
    )


@router.delete("/unregister", response_model=PushTokenUnregisterResponse)
async def unregister_push_token_endpoint(
    current_user: CurrentUser,
    body: PushTokenUnregisterRequest | None = Body(default=None),
    db: AsyncSession = Depends(get_db),
) -> PushTokenUnregisterResponse:
    """Remove one token, or every token of the user when none is given."""
    removed = await unregister_push_tokens(
        db,
        current_user.id,
        body.expo_push_token if body is not None else None,
    )
    await db.commit()
    return PushTokenUnregisterResponse(
        message="Push token(s) unregistered", removed=removed
    )


@router.get("/tokens", response_model=PushTokenListResponse)
async def list_push_tokens_endpoint(
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
) -> PushTokenListResponse:
    tokens = await list_push_tokens(db, current_user.id)
    return PushTokenListResponse(
        tokens=[PushTokenResponse.model_validate(t) for t in tokens],
        count=len(tokens),
    )
