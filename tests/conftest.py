"""
Pytest configuration and fixtures.

Tests run against an in-memory SQLite database shared through a StaticPool,
so every session in a test sees the same data.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("PAYMENT_GATEWAY", "mock")
os.environ.setdefault("APP_ENV", "test")

from datetime import timedelta  # noqa: E402
from decimal import Decimal  # noqa: E402
from typing import Any, AsyncGenerator  # noqa: E402
from unittest.mock import AsyncMock  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool  # noqa: E402

from lab_billing.config import get_settings  # noqa: E402
from lab_billing.database.models import Base, Member, Plan, Subscription  # noqa: E402
from lab_billing.timeutils import utcnow  # noqa: E402


@pytest.fixture(autouse=True)
def clear_settings_cache() -> Any:
    """Settings are cached per process; tests that patch env vars need a fresh copy."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest_asyncio.fixture
async def test_engine() -> AsyncGenerator[AsyncEngine, Any]:
    """Create a fresh in-memory database."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        test_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )


@pytest_asyncio.fixture
async def test_db(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, Any]:
    """Create test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def mock_redis() -> AsyncMock:
    """Redis stand-in that has never seen an event."""
    redis = AsyncMock()
    redis.exists.return_value = 0
    redis.setex.return_value = True
    return redis


@pytest_asyncio.fixture
async def member(test_db: AsyncSession) -> Member:
    member = Member(
        name="Wanjiku Kamau",
        email="wanjiku@example.com",
        phone="254701234567",
        county="Nairobi",
    )
    test_db.add(member)
    await test_db.commit()
    return member


@pytest_asyncio.fixture
async def paid_plan(test_db: AsyncSession) -> Plan:
    plan = Plan(
        slug="maker-monthly",
        name="Maker Monthly",
        price=Decimal("1500.00"),
        currency="KES",
        interval_months=1,
    )
    test_db.add(plan)
    await test_db.commit()
    return plan


@pytest_asyncio.fixture
async def free_plan(test_db: AsyncSession) -> Plan:
    plan = Plan(slug="free", name="Free", price=Decimal("0"), is_free=True)
    test_db.add(plan)
    await test_db.commit()
    return plan


@pytest_asyncio.fixture
async def subscription(test_db: AsyncSession, member: Member, paid_plan: Plan) -> Subscription:
    """Active auto-renewing subscription ending in 12 hours."""
    now = utcnow()
    subscription = Subscription(
        member_id=member.id,
        plan_id=paid_plan.id,
        status="active",
        starts_at=now - timedelta(days=30),
        ends_at=now + timedelta(hours=12),
        auto_renew=True,
    )
    test_db.add(subscription)
    await test_db.commit()
    return subscription


@pytest_asyncio.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession], mock_redis: AsyncMock
) -> AsyncGenerator[AsyncClient, Any]:
    """HTTP client bound to the app, with the database dependency pointed at the test engine."""
    from lab_billing.api import routes
    from lab_billing.api.main import app
    from lab_billing.database.connection import get_db

    async def override_get_db() -> AsyncGenerator[AsyncSession, Any]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    original_redis = routes.webhook_handler.redis_client
    routes.webhook_handler.redis_client = mock_redis

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    routes.webhook_handler.redis_client = original_redis
    app.dependency_overrides.clear()
