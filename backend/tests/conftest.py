import asyncio
import os
import sys
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

# A sufficiently long JWT secret for tests
TEST_JWT_SECRET = "x" * 32
os.environ.setdefault("JWT_SECRET", TEST_JWT_SECRET)
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ALLOWED_ORIGINS", "http://testserver")

from setrank import db, models  # noqa: E402,F401
from setrank.models import LiveSet  # noqa: E402

BASE_TIME = datetime(2024, 6, 1, 20, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def jwt_secret(monkeypatch):
    """Ensure a strong JWT secret is present for all tests."""
    monkeypatch.setenv("JWT_SECRET", TEST_JWT_SECRET)
    yield


@pytest.fixture(scope="module")
def anyio_backend():
    return "asyncio"


@pytest.fixture()
def session_maker():
    """A fresh in-memory SQLite database with the full schema."""

    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    maker = sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    async def init_models():
        async with engine.begin() as conn:
            await conn.run_sync(db.Base.metadata.create_all)

    asyncio.run(init_models())
    yield maker
    asyncio.run(engine.dispose())


def make_set(
    owner_id: str,
    bucket: str = "liked",
    *,
    set_id: str | None = None,
    rating: float = 1500.0,
    minutes: int = 0,
    artist: str = "Artist",
) -> LiveSet:
    return LiveSet(
        id=set_id or uuid.uuid4().hex,
        owner_id=owner_id,
        artist_name=artist,
        location_name="Venue",
        bucket=bucket,
        rating=rating,
        created_at=BASE_TIME + timedelta(minutes=minutes),
    )


async def add_sets(maker, *live_sets: LiveSet) -> None:
    async with maker() as session:
        session.add_all(live_sets)
        await session.commit()


def seed(maker, *live_sets: LiveSet) -> None:
    asyncio.run(add_sets(maker, *live_sets))
