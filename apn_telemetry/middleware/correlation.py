"""Correlation ID middleware.

Pure ASGI so it wraps WebSocket sessions as well as HTTP requests. Every
log line written while handling a request, or for the lifetime of a live
connection, carries the same correlation id.
"""

import time
import uuid

from starlette.types import ASGIApp, Message, Receive, Scope, Send

from apn_telemetry.logging_config import correlation_id_ctx, get_logger

logger = get_logger(__name__)

CORRELATION_ID_HEADER = "X-Correlation-ID"

# Probe endpoints are hit constantly by orchestrators
_QUIET_PATHS = frozenset({"/health/live", "/health/ready"})


class CorrelationIdMiddleware:
    """Reuses an incoming X-Correlation-ID header or generates a new id.

    HTTP responses echo the id back in the same header. WebSocket sessions
    log their start and end instead of a status code.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        scope_type = scope["type"]
        if scope_type not in ("http", "websocket"):
            await self.app(scope, receive, send)
            return

        headers = dict(scope.get("headers", []))
        correlation_id = headers.get(b"x-correlation-id", b"").decode() or str(
            uuid.uuid4()
        )
        token = correlation_id_ctx.set(correlation_id)

        path = scope.get("path", "")
        method = scope.get("method", "WS")
        quiet = path in _QUIET_PATHS
        start_time = time.perf_counter()
        status_code: int | None = None

        async def send_wrapper(message: Message) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message.get("status")
                response_headers = list(message.get("headers", []))
                response_headers.append(
                    (CORRELATION_ID_HEADER.lower().encode(), correlation_id.encode())
                )
                message = {**message, "headers": response_headers}
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
            if not quiet:
                logger.info(
                    "Request completed" if scope_type == "http" else "Live session ended",
                    method=method,
                    path=path,
                    status_code=status_code,
                    duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
                )
        except Exception:
            logger.exception(
                "Request failed",
                method=method,
                path=path,
                duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
            )
            raise
        finally:
            correlation_id_ctx.reset(token)
