"""Authentication against the external identity provider.

Tokens are issued by Supabase Auth; this service never mints or stores
credentials. A token is verified by asking the provider who it belongs to,
then mapped to the internal ``users`` row through ``users.auth_id``.

Used by both the HTTP API (``get_current_user``) and the live telemetry
endpoint (through the connection registry).
"""

import uuid
from dataclasses import dataclass
from typing import Annotated

import httpx
from fastapi import Depends, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from apn_telemetry.logging_config import get_logger
from apn_telemetry.models.user import User

logger = get_logger(__name__)


class AuthenticationError(Exception):
    """Base class for token verification failures."""


class InvalidTokenError(AuthenticationError):
    """The provider rejected the token (expired, revoked or malformed)."""


class IdentityProviderError(AuthenticationError):
    """The provider could not be reached or answered unexpectedly."""


class UserProfileMissingError(AuthenticationError):
    """The token is valid but no internal user profile exists for it."""


@dataclass(frozen=True)
class IdentityClaims:
    external_user_id: str
    email: str | None = None


@dataclass(frozen=True)
class AuthenticatedUser:
    """The internal user a request or live connection acts as."""

    id: uuid.UUID
    auth_id: uuid.UUID
    email: str | None = None


def bearer_token(header_value: str | None) -> str | None:
    """Extract the token from an ``Authorization: Bearer <token>`` header."""
    if not header_value:
        return None
    scheme, _, token = header_value.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class SupabaseIdentityProvider:
    """Verifies access tokens with Supabase Auth (``GET /auth/v1/user``)."""

    def __init__(
        self,
        base_url: str,
        anon_key: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.anon_key = anon_key
        self.timeout = timeout
        self._transport = transport

    async def verify_token(self, token: str) -> IdentityClaims:
        """Resolve a token to the provider's user identity.

        Raises:
            InvalidTokenError: If the provider rejects the token.
            IdentityProviderError: If the provider is unconfigured, unreachable
                or returns an unexpected response.
        """
        if not self.base_url:
            raise IdentityProviderError("Identity provider is not configured")

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.get(
                    f"{self.base_url}/auth/v1/user",
                    headers={
                        "apikey": self.anon_key,
                        "Authorization": f"Bearer {token}",
                    },
                )
        except httpx.HTTPError as exc:
            raise IdentityProviderError(
                f"Identity provider request failed: {exc}"
            ) from exc

        if response.status_code in (401, 403):
            raise InvalidTokenError("Invalid or expired token")
        if response.status_code != 200:
            raise IdentityProviderError(
                f"Identity provider returned {response.status_code}"
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise IdentityProviderError("Identity provider returned invalid JSON") from exc

        external_user_id = data.get("id") if isinstance(data, dict) else None
        if not external_user_id:
            raise InvalidTokenError("Token does not identify a user")

        return IdentityClaims(
            external_user_id=str(external_user_id),
            email=data.get("email"),
        )


class UserAuthenticator:
    """Maps a provider token to the internal user profile."""

    def __init__(
        self,
        provider: SupabaseIdentityProvider,
        session_maker: async_sessionmaker[AsyncSession],
    ):
        self.provider = provider
        self.session_maker = session_maker

    async def authenticate(self, token: str) -> AuthenticatedUser:
        """Verify ``token`` and load the matching user.

        Raises:
            InvalidTokenError: Token rejected or not a user id.
            IdentityProviderError: Provider failure.
            UserProfileMissingError: No ``users`` row for the identity.
        """
        claims = await self.provider.verify_token(token)
        try:
            auth_id = uuid.UUID(claims.external_user_id)
        except ValueError as exc:
            raise InvalidTokenError("Token subject is not a valid user id") from exc

        async with self.session_maker() as db:
            result = await db.execute(select(User).where(User.auth_id == auth_id))
            user = result.scalar_one_or_none()

        if user is None:
            logger.warning("No user profile for identity", auth_id=str(auth_id))
            raise UserProfileMissingError("User profile not found")

        return AuthenticatedUser(id=user.id, auth_id=user.auth_id, email=user.email)


async def get_current_user(request: Request) -> AuthenticatedUser:
    """FastAPI dependency resolving the bearer token to the current user.

    Raises:
        HTTPException 401: Missing or invalid token
        HTTPException 403: Valid token but no user profile
        HTTPException 503: Identity provider unavailable
    """
    token = bearer_token(request.headers.get("Authorization"))
    if token is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="No authorization token provided",
            headers={"WWW-Authenticate": "Bearer"},
        )

    authenticator: UserAuthenticator = request.app.state.authenticator
    try:
        return await authenticator.authenticate(token)
    except InvalidTokenError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except UserProfileMissingError:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User profile not found",
        )
    except IdentityProviderError:
        logger.exception("Identity provider unavailable")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authentication service unavailable",
        )


# Type alias for cleaner route signatures
CurrentUser = Annotated[AuthenticatedUser, Depends(get_current_user)]
