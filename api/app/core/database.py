from collections.abc import AsyncIterator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool

from app.core.config import settings


class Base(DeclarativeBase):
    pass


engine = create_async_engine(settings.database_url, pool_pre_ping=True)
AsyncSessionLocal = async_sessionmaker(engine, expire_on_commit=False)


async def get_db() -> AsyncIterator[AsyncSession]:
    async with AsyncSessionLocal() as session:
        yield session


def make_session_factory(url: str | None = None) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """Build a throwaway engine for code running in its own event loop (Celery tasks, scripts).

    NullPool keeps connections from outliving the loop that opened them.
    """
    worker_engine = create_async_engine(url or settings.database_url, poolclass=NullPool)
    return worker_engine, async_sessionmaker(worker_engine, expire_on_commit=False)
