"""APN Telemetry FastAPI application.

One process hosts the HTTP API, the live telemetry WebSocket, the broker
client and the background workers that connect them:

    broker.telemetry -> TelemetryRouter -> storage / live connections / push
    live connections -> registry.commands -> CommandForwarder -> broker
"""

from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi.errors import RateLimitExceeded

from apn_telemetry import __version__
from apn_telemetry.config import settings, validate_broker_settings
from apn_telemetry.core.auth import SupabaseIdentityProvider, UserAuthenticator
from apn_telemetry.database import close_database, get_session_maker
from apn_telemetry.logging_config import get_logger, setup_logging
from apn_telemetry.middleware import CorrelationIdMiddleware
from apn_telemetry.middleware.rate_limit import limiter, rate_limit_exceeded_handler
from apn_telemetry.routers import health, live, notifications, sockets, telemetry
from apn_telemetry.services.broker import BrokerClient, BrokerError
from apn_telemetry.services.command_forwarder import CommandForwarder
from apn_telemetry.services.connection_registry import ConnectionRegistry
from apn_telemetry.services.push_notifications import (
    ExpoPushGateway,
    NotificationDispatcher,
)
from apn_telemetry.services.scheduler import start_scheduler, stop_scheduler
from apn_telemetry.services.telemetry_router import TelemetryRouter

setup_logging(
    log_format=settings.log_format,
    log_level=settings.log_level,
    service_name=settings.service_name,
)
logger = get_logger(__name__)


def _log_broker_error(error: BrokerError) -> None:
    logger.error("MQTT broker error", error=str(error))


def build_broker() -> BrokerClient:
    return BrokerClient(
        host=settings.mqtt_broker_url,
        port=settings.mqtt_port,
        username=settings.mqtt_username,
        password=settings.mqtt_password,
        topic_prefix=settings.mqtt_topic_prefix,
        client_id_prefix=settings.mqtt_client_id_prefix,
        use_tls=settings.mqtt_use_tls,
        keepalive=settings.mqtt_keepalive_seconds,
        reconnect_interval=settings.mqtt_reconnect_interval_seconds,
        queue_maxsize=settings.telemetry_queue_size,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build, start and later stop the long-lived components."""
    session_maker = get_session_maker()

    authenticator = UserAuthenticator(
        SupabaseIdentityProvider(
            settings.supabase_url,
            settings.supabase_anon_key,
            timeout=settings.identity_timeout_seconds,
        ),
        session_maker,
    )
    registry = ConnectionRegistry(
        authenticator, heartbeat_interval=settings.ws_heartbeat_interval_seconds
    )
    dispatcher = NotificationDispatcher(
        session_maker,
        ExpoPushGateway(
            push_url=settings.expo_push_url,
            access_token=settings.expo_access_token,
            chunk_size=settings.push_chunk_size,
        ),
    )

    broker: BrokerClient | None = None
    telemetry_router: TelemetryRouter | None = None
    if validate_broker_settings():
        broker = build_broker()
        broker.add_error_listener(_log_broker_error)
        telemetry_router = TelemetryRouter(broker.telemetry, session_maker, registry, dispatcher)
    else:
        logger.warning("MQTT broker disabled, telemetry ingestion is off")
    forwarder = CommandForwarder(broker, registry, session_maker)

    app.state.authenticator = authenticator
    app.state.connection_registry = registry
    app.state.notification_dispatcher = dispatcher
    app.state.broker = broker
    app.state.telemetry_router = telemetry_router
    app.state.command_forwarder = forwarder

    await registry.start()
    await forwarder.start()
    if broker is not None:
        await telemetry_router.start()
        await broker.start()
    scheduler = start_scheduler()
    logger.info("APN telemetry service started", port=settings.port)

    yield

    logger.info("Shutting down APN telemetry service...")
    stop_scheduler(scheduler)
    await forwarder.stop()
    if broker is not None:
        await telemetry_router.stop()
    await registry.stop()
    if broker is not None:
        await broker.stop()
    await close_database()
    logger.info("APN telemetry service shutdown complete")


app = FastAPI(
    title="APN Telemetry API",
    description="Device telemetry ingestion, live streaming and alerting",
    version=__version__,
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

# Middleware (order matters: first added = last executed)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(CorrelationIdMiddleware)

app.include_router(health.router)
app.include_router(telemetry.router)
app.include_router(notifications.router)
app.include_router(sockets.router)
app.include_router(live.router)


@app.get("/")
async def root() -> dict[str, Any]:
    """Service banner."""
    return {
        "name": "APN Telemetry API",
        "version": __version__,
        "docs": "/docs",
        "websocket": "/ws/telemetry",
    }
