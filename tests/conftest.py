# tests/conftest.py

import os

# Settings are cached on first use, so the environment must be in place
# before anything from shopfront is imported.
os.environ.setdefault("SHOPFRONT_ENVIRONMENT", "test")
os.environ.setdefault("SHOPFRONT_DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("SHOPFRONT_LOTTERY_POLL_INTERVAL_SECONDS", "0")

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from shopfront.shared.database import Base, get_db_session
from shopfront.web import models  # noqa: F401
from shopfront.web.api.app import api
from shopfront.web.crud import PointsOperations
from shopfront.web.models import Campaign, UserRole

BASE_TIME = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


# --- Database Setup ---
@pytest.fixture
async def engine():
    """In-memory SQLite engine with working SAVEPOINT support."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # pysqlite's implicit transaction handling breaks SAVEPOINT; let
    # SQLAlchemy emit BEGIN itself
    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


# --- Data Helpers ---
@pytest.fixture
def make_user(session):
    """Create an account (with the welcome bonus) and return it."""

    async def _make_user(user_id, name=None, role=UserRole.USER):
        return await PointsOperations(session).get_or_create_account(
            user_id, name=name or user_id, role=role
        )

    return _make_user


@pytest.fixture
def make_campaign(session):
    """Insert a campaign with an explicit creation time.

    Series redirects and backfills depend on creation order, so tests
    state it instead of relying on clock resolution.
    """

    async def _make_campaign(title, target_count, price="10", minutes=0, **kwargs):
        campaign = Campaign(
            title=title,
            target_count=target_count,
            price=Decimal(price),
            created_at=BASE_TIME + timedelta(minutes=minutes),
            **kwargs,
        )
        session.add(campaign)
        await session.flush()
        return campaign

    return _make_campaign


# --- API Client ---
@pytest.fixture
async def client(session_factory):
    """HTTP client against the app, one committed session per request."""

    async def override_get_db_session():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    api.dependency_overrides[get_db_session] = override_get_db_session

    async with AsyncClient(transport=ASGITransport(app=api), base_url="http://test") as client:
        yield client

    api.dependency_overrides.clear()


@pytest.fixture
async def admin_headers(session_factory):
    """Headers for a seeded admin account."""
    async with session_factory() as session:
        await PointsOperations(session).get_or_create_account(
            "admin-1", name="Admin", role=UserRole.ADMIN
        )
        await session.commit()

    return {"X-User-Id": "admin-1"}

