"""Pytest configuration and shared fixtures.

Service tests run against an in-memory SQLite database so upserts,
savepoints and the partial unique index on active alerts behave like they
do in production. HTTP routes are exercised through ASGITransport with the
auth and database dependencies overridden.
"""

import os
import uuid
from collections.abc import AsyncGenerator
from datetime import UTC, datetime

# Set testing mode BEFORE importing the app (disables rate limits and pooling)
os.environ["TESTING"] = "true"
os.environ.setdefault("MQTT_ENABLED", "false")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from apn_telemetry.core.auth import AuthenticatedUser, get_current_user
from apn_telemetry.database import get_db
from apn_telemetry.main import app
from apn_telemetry.models import Base, Device, User


@pytest_asyncio.fixture
async def db_engine():
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # pysqlite's own transaction handling breaks SAVEPOINT; take it over
    @event.listens_for(engine.sync_engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_maker) -> AsyncGenerator[AsyncSession, None]:
    async with session_maker() as session:
        yield session


@pytest.fixture
def make_user(session_maker):
    """Factory inserting a user profile."""

    async def _make_user(email: str | None = None) -> User:
        user = User(
            auth_id=uuid.uuid4(),
            email=email or f"user-{uuid.uuid4().hex[:8]}@example.com",
        )
        async with session_maker() as session:
            session.add(user)
            await session.commit()
        return user

    return _make_user


@pytest.fixture
def make_device(session_maker):
    """Factory inserting a device paired to ``user``."""

    async def _make_device(
        user: User,
        device_id: str | None = None,
        is_active: bool = True,
        name: str | None = None,
    ) -> Device:
        device = Device(
            user_id=user.id,
            device_id=device_id or f"APN-{uuid.uuid4().hex[:6].upper()}",
            name=name,
            is_active=is_active,
            paired_at=datetime.now(UTC),
        )
        async with session_maker() as session:
            session.add(device)
            await session.commit()
        return device

    return _make_device


@pytest_asyncio.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client against the app (lifespan is not run)."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest.fixture
def api_as(session_maker):
    """Authenticate API calls as ``user`` against the test database.

    Usage: ``api_as(user)``; overrides are cleared after the test.
    """

    async def _override_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_maker() as session:
            yield session

    def _api_as(user: User) -> None:
        app.dependency_overrides[get_current_user] = lambda: AuthenticatedUser(
            id=user.id, auth_id=user.auth_id, email=user.email
        )
        app.dependency_overrides[get_db] = _override_db

    yield _api_as
    app.dependency_overrides.clear()
