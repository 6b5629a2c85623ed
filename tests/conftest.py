"""Shared fixtures: in-memory SQLite store, test settings, seeded tenants.

The app's background work opens sessions through
``app.models.database.AsyncSessionLocal``, so the fixture swaps that global
for a factory bound to an in-memory engine.  ``ASGITransport`` does not run
the lifespan, which keeps the watchdog and Redis out of HTTP tests.
"""

from __future__ import annotations

import uuid

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.config import Settings, get_settings
from app.core.auth import SESSION_COOKIE, create_session_token
from app.main import app
from app.models import database
from app.models.database import Base
from app.models.fix_job import FixJob
from app.models.tenant import Installation
from app.models.user import User
from app.services.credentials import save_credential

TEST_WEBHOOK_SECRET = "test_webhook_secret_1234567890abcdef"
TEST_AGENT_TOKEN = "sk-ant-REDACTED"
TEST_API_KEY = "test-shared-api-key"
TEST_ADMIN_SECRET = "test-admin-secret"


def make_settings(**overrides) -> Settings:
    values = {
        "github_webhook_secret": TEST_WEBHOOK_SECRET,
        "github_pat": "ghp_testpat",
        "worker_repo_owner": "fixrelay",
        "encryption_key": "test-master-key",
        "callback_secret": "test-callback-secret",
        "session_secret": "test-session-secret",
        "api_secret_key": TEST_API_KEY,
        "admin_secret": TEST_ADMIN_SECRET,
        "database_url": "sqlite+aiosqlite:///",
        "redis_url": "",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture()
def settings() -> Settings:
    return make_settings()


@pytest_asyncio.fixture()
async def session_factory(monkeypatch: pytest.MonkeyPatch):
    engine = create_async_engine("sqlite+aiosqlite:///", poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    monkeypatch.setattr(database, "AsyncSessionLocal", factory)
    yield factory
    await engine.dispose()


@pytest_asyncio.fixture()
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture()
async def client(session_factory, settings: Settings):
    app.dependency_overrides[get_settings] = lambda: settings
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
#  Seed helpers
# ---------------------------------------------------------------------------


async def create_user(db: AsyncSession, github_user_id: int = 1001, login: str = "octocat") -> User:
    user = User(github_user_id=github_user_id, github_username=login)
    db.add(user)
    await db.flush()
    return user


async def create_installation(
    db: AsyncSession,
    installation_id: int = 42,
    owner: User | None = None,
    account_id: int = 1001,
) -> Installation:
    installation = Installation(
        id=installation_id,
        account_login="octocat",
        account_type="User",
        account_id=account_id,
        user_id=owner.id if owner else None,
    )
    db.add(installation)
    await db.flush()
    return installation


async def fetch_job(session_factory, job_id: str | uuid.UUID) -> FixJob | None:
    """Read a job through a fresh session so no identity-map state leaks in."""
    async with session_factory() as session:
        return await session.get(FixJob, uuid.UUID(str(job_id)))


@pytest_asyncio.fixture()
async def tenant(db: AsyncSession, settings: Settings) -> tuple[User, Installation]:
    """A user owning installation 42 with an active agent token."""
    user = await create_user(db)
    installation = await create_installation(db, owner=user)
    await save_credential(
        db,
        installation=installation,
        user=user,
        token=TEST_AGENT_TOKEN,
        token_type="api_key",
        settings=settings,
    )
    await db.commit()
    return user, installation


def login(client: AsyncClient, user: User, settings: Settings) -> None:
    client.cookies.set(SESSION_COOKIE, create_session_token(user.id, settings))
