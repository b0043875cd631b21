"""
Shared fixtures.

Settings are read once at import time, so the environment is pinned here
before anything under ``app`` is imported: a throwaway Fernet key and an
in-memory SQLite URL (no Postgres driver needed to import the app) and
in-process rate-limit counters.
"""
import os

from cryptography.fernet import Fernet

os.environ.setdefault("ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("RATE_LIMIT_STORAGE_URI", "memory://")

import pytest  # noqa: E402
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from app.core.database import Base  # noqa: E402
import app.models.idex  # noqa: E402,F401

from tests.helpers.fake_panel import FakePanel, RecordingSleep  # noqa: E402
from tests.helpers.memory_store import InMemorySyncStore  # noqa: E402


@pytest.fixture
async def session_factory():
    """Fresh in-memory SQLite database per test, schema created from the models."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def store() -> InMemorySyncStore:
    return InMemorySyncStore()


@pytest.fixture
def panel() -> FakePanel:
    return FakePanel()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()
