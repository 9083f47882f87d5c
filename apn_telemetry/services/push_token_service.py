"""Push token registration.

Tokens are keyed by their value: registering a token that already exists
updates it in place (including moving it to the registering user) instead
of adding a second row.
"""

import uuid

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from apn_telemetry.logging_config import get_logger
from apn_telemetry.models.push_token import PushToken
from apn_telemetry.services.push_notifications import is_expo_push_token

logger = get_logger(__name__)


class PushTokenError(Exception):
    """The token is not an Expo push token."""


async def _get_token(db: AsyncSession, expo_push_token: str) -> PushToken | None:
    result = await db.execute(
        select(PushToken).where(PushToken.expo_push_token == expo_push_token)
    )
    return result.scalar_one_or_none()


def _update_existing(
    token: PushToken,
    user_id: uuid.UUID,
    device_id: str | None,
    platform: str | None,
) -> None:
    token.user_id = user_id
    token.device_id = device_id or token.device_id
    token.platform = platform or token.platform


async def register_push_token(
    db: AsyncSession,
    user_id: uuid.UUID,
    expo_push_token: str,
    device_id: str | None = None,
    platform: str | None = None,
) -> tuple[PushToken, bool]:
    """Insert or update a push token. The caller commits.

    Returns:
        (token, created)

    Raises:
        PushTokenError: If the value is not an Expo push token.
    """
    if not is_expo_push_token(expo_push_token):
        raise PushTokenError("The provided token is not a valid Expo push token")

    existing = await _get_token(db, expo_push_token)
    if existing is not None:
        if existing.user_id != user_id:
            logger.info(
                "Push token moved to new owner",
                previous_user_id=str(existing.user_id),
                user_id=str(user_id),
            )
        _update_existing(existing, user_id, device_id, platform)
        await db.flush()
        return existing, False

    token = PushToken(
        user_id=user_id,
        expo_push_token=expo_push_token,
        device_id=device_id,
        platform=platform,
    )
    try:
        async with db.begin_nested():
            db.add(token)
            await db.flush()
    except IntegrityError:
        existing = await _get_token(db, expo_push_token)
        if existing is None:
            raise
        _update_existing(existing, user_id, device_id, platform)
        await db.flush()
        return existing, False

    logger.info("Push token registered", user_id=str(user_id), platform=platform)
    return token, True


async def unregister_push_tokens(
    db: AsyncSession,
    user_id: uuid.UUID,
    expo_push_token: str | None = None,
) -> int:
    """Delete one of the user's tokens, or all of them when none is given."""
    query = delete(PushToken).where(PushToken.user_id == user_id)
    if expo_push_token:
        query = query.where(PushToken.expo_push_token == expo_push_token)
    result = await db.execute(query)
    logger.info("Push tokens unregistered", user_id=str(user_id), count=result.rowcount)
    return result.rowcount


async def list_push_tokens(db: AsyncSession, user_id: uuid.UUID) -> list[PushToken]:
    result = await db.execute(
        select(PushToken)
        .where(PushToken.user_id == user_id)
        .order_by(PushToken.created_at.desc())
    )
    return list(result.scalars().all())
