"""Rate limiting for write endpoints using slowapi.

Limits are applied per endpoint with ``@limiter.limit()``. Counters are
kept in process memory since the service runs as a single process.
"""

from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from starlette.requests import Request
from starlette.responses import JSONResponse

from apn_telemetry.config import settings


def _get_real_client_ip(request: Request) -> str:
    """Client IP, honouring X-Forwarded-For / X-Real-IP behind a proxy."""
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else "unknown"


limiter = Limiter(
    key_func=_get_real_client_ip,
    storage_uri="memory://",
    enabled=not settings.testing,
)

# Device pairing: 10/minute
# Push token registration: 20/minute
# Socket creation: 10/minute


async def rate_limit_exceeded_handler(
    request: Request, exc: RateLimitExceeded
) -> JSONResponse:
    """Return a 429 JSON response when a limit is exceeded."""
    return JSONResponse(
        status_code=429,
        content={"detail": f"Rate limit exceeded: {exc.detail}"},
    )
