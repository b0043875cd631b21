import httpx
import pytest

from app.core.database import get_db
from app.main import app
from app.routers import idex


@pytest.fixture
async def client(session_factory):
    """HTTP client against the real app, with get_db bound to the test database."""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    idex.limiter.enabled = False
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
    idex.limiter.enabled = True
    idex.limiter.reset()
