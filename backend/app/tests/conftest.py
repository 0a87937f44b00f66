"""
Shared fixtures for the DevBox test suite.

Uses in-memory SQLite databases: aiosqlite for the async API session and
pysqlite for the synchronous sessions the Celery workers use. Every test gets
a fresh database.
"""

import os

# The vault reads its key on first use; tests need a deterministic one.
os.environ.setdefault("ENCRYPTION_KEY", "00" * 32)

from collections.abc import AsyncGenerator, Generator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from app.core.security import create_access_token
from app.models import Base, Server, User
from app.tests.factories import make_server, make_user, with_provider_keys

# ---------------------------------------------------------------------------
# Async database (API tests)
# ---------------------------------------------------------------------------

TEST_DATABASE_URL = "sqlite+aiosqlite://"


@pytest_asyncio.fixture()
async def engine():
    eng = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture()
async def db(engine) -> AsyncGenerator[AsyncSession, None]:
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture()
async def test_user(db: AsyncSession) -> User:
    user = make_user()
    db.add(user)
    await db.commit()
    await db.refresh(user)
    return user


@pytest_asyncio.fixture()
async def credentialed_user(db: AsyncSession, test_user: User) -> User:
    with_provider_keys(test_user)
    await db.commit()
    await db.refresh(test_user)
    return test_user


@pytest.fixture()
def auth_token(test_user) -> str:
    """Return a valid JWT access token for the test user."""
    return create_access_token(str(test_user.id))


@pytest_asyncio.fixture()
async def running_server(db: AsyncSession, test_user: User) -> Server:
    server = make_server(
        test_user,
        status="running",
        status_message="Server is ready",
        hetzner_server_id="4711",
        public_ip="203.0.113.10",
        tailscale_name="devbox-abc12345",
        tailscale_domain="tail1234.ts.net",
    )
    db.add(server)
    await db.commit()
    await db.refresh(server)
    return server


# ---------------------------------------------------------------------------
# HTTPX AsyncClient (integration tests)
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture()
async def client(db: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """
    An AsyncClient that talks to the real FastAPI app, but with the DB
    dependency overridden to use the test session.
    """
    from app.core.database import get_db
    from app.main import app

    async def _override_get_db():
        yield db

    app.dependency_overrides[get_db] = _override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest_asyncio.fixture()
async def auth_client(client: AsyncClient, auth_token: str) -> AsyncClient:
    """AsyncClient pre-configured with an auth header."""
    client.headers["Authorization"] = f"Bearer {auth_token}"
    return client


# ---------------------------------------------------------------------------
# Sync database (worker tests)
# ---------------------------------------------------------------------------

@pytest.fixture()
def sync_db() -> Generator[Session, None, None]:
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    session = Session(eng, expire_on_commit=False)
    try:
        yield session
    finally:
        session.close()
        eng.dispose()


@pytest.fixture()
def sync_user(sync_db: Session) -> User:
    user = with_provider_keys(make_user())
    sync_db.add(user)
    sync_db.commit()
    return user
