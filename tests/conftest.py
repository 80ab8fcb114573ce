from datetime import datetime, timezone
from typing import Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from app.main import app
from app.database import Base, get_db
from app.models.principal import Principal
from app.models.user import User
from app.services.user_sync_notify import wait_for_pending_notifications
from app.tasks import segment_scheduler
from tests.factories import PrincipalFactory, UserFactory

# Test database URL (SQLite for testing)
TEST_DATABASE_URL = "sqlite+aiosqlite:///./test.db"

# Fixed reference time so age-based rules are deterministic
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def test_db():
    """Create test database and tables."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        poolclass=NullPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async_session = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )

    async with async_session() as session:
        yield session

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture
async def client(test_db: AsyncSession):
    """Create test client with overridden database."""

    async def override_get_db():
        yield test_db

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    await wait_for_pending_notifications(timeout=5)


@pytest.fixture(autouse=True)
def reset_segment_scheduler():
    """Each test starts with an empty, unstarted scheduler."""
    segment_scheduler.scheduler = None
    yield
    segment_scheduler.shutdown_segment_scheduler()


@pytest.fixture
def notifier() -> AsyncMock:
    """Stand-in for the user sync webhook sender."""
    return AsyncMock(return_value=1)


@pytest_asyncio.fixture
async def make_principal(test_db: AsyncSession):
    """
    Create a portal principal with a linked user.

    Usage:
        principal = await make_principal(email="a@acme.com", metadata={"plan": "pro"})
    """

    async def _make(
        email: Optional[str] = None,
        email_verified: bool = True,
        metadata: Optional[dict] = None,
        created_at: Optional[datetime] = None,
        role: str = "user",
        with_user: bool = True,
        principal_id: Optional[str] = None,
    ) -> Principal:
        user = None
        if with_user:
            data = UserFactory(email_verified=email_verified)
            user = User(
                id=data["id"],
                email=email if email is not None else data["email"],
                email_verified=data["email_verified"],
                name=data["name"],
                metadata_json=metadata if metadata is not None else data["metadata_json"],
                created_at=created_at or NOW,
            )
            test_db.add(user)

        data = PrincipalFactory(role=role)
        principal = Principal(
            id=principal_id or data["id"],
            user_id=user.id if user else None,
            role=data["role"],
            display_name=data["display_name"],
            created_at=created_at or NOW,
        )
        test_db.add(principal)
        await test_db.commit()
        await test_db.refresh(principal)
        return principal

    return _make


@pytest.fixture
def now() -> datetime:
    return NOW
