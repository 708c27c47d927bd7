"""Pytest configuration and fixtures."""

from typing import AsyncGenerator, Dict, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from floristcards.auth_routes import issue_token
from floristcards.db import get_session, init_db
from floristcards.main import app


@pytest_asyncio.fixture
async def engine(tmp_path):
    """Fresh SQLite database file per test."""
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'cards.db'}")
    await init_db(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def async_client(session_factory) -> AsyncGenerator[AsyncClient, None]:
    """Test client bound to the per-test database."""

    async def _get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = _get_session
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    """Build bearer headers for a staff member of a tenant."""

    def _make(tenant_id: str = "tenant-1", *, role: str = "florist", name: Optional[str] = "Alice") -> Dict[str, str]:
        token = issue_token("user-1", tenant_id, role=role, name=name)
        return {"Authorization": f"Bearer {token}"}

    return _make
