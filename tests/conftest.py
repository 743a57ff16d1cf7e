"""
Test infrastructure for the blog platform API.

Strategy
--------
- SQLite in-memory via aiosqlite, shared through StaticPool so every
  session in a test sees the same database.
- The app's get_db dependency is overridden with one that uses the test
  session factory but keeps the production commit/post-commit-hook logic.
- Tables are created before and dropped after each test.
- The lifespan does not run under ASGITransport, so the cache (in-memory
  backend), the realtime manager and the AI client (httpx.MockTransport)
  are installed on ``app.state`` by the ``async_client`` fixture.
- Settings that must be in place before the app is imported are set
  through the environment below.
"""
import os
import tempfile

os.environ.setdefault("UPLOAD_DIR", tempfile.mkdtemp(prefix="blog-uploads-"))
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("CACHE_BACKEND", "memory")
os.environ.setdefault("AI_API_KEY", "test-key")

import httpx
import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool

from blog_api import database
from blog_api.cache import CacheManager, MemoryBackend
from blog_api.config import settings
from blog_api.database import Base, commit_and_run_hooks, discard_post_commit_hooks, get_db
from blog_api.main import app
from blog_api.middleware import install_query_counter
from blog_api.realtime import ConnectionManager
from blog_api.services.ai_service import AIClient

# ---------------------------------------------------------------------------
# Test database engine: SQLite in-memory with aiosqlite
# ---------------------------------------------------------------------------

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

engine_test = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

install_query_counter(engine_test)

async_session_test = async_sessionmaker(
    engine_test,
    class_=AsyncSession,
    expire_on_commit=False,
)

# The WebSocket endpoint opens its own session outside dependency injection.
database.async_session = async_session_test


# ---------------------------------------------------------------------------
# Dependency override
# ---------------------------------------------------------------------------

async def override_get_db():
    async with async_session_test() as session:
        try:
            yield session
            await commit_and_run_hooks(session)
        except Exception:
            discard_post_commit_hooks(session)
            await session.rollback()
            raise


app.dependency_overrides[get_db] = override_get_db


# ---------------------------------------------------------------------------
# Fake AI upstream
# ---------------------------------------------------------------------------

class FakeAIUpstream:
    """Answers chat completion requests with a canned message."""

    def __init__(self) -> None:
        self.reply = "Generated content"
        self.status_code = 200
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status_code >= 400:
            return httpx.Response(self.status_code, json={"error": "upstream failure"})
        return httpx.Response(
            200,
            json={"choices": [{"message": {"role": "assistant", "content": self.reply}}]},
        )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture(autouse=True)
async def setup_db():
    """Create all tables before each test, drop after to guarantee isolation."""
    async with engine_test.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine_test.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture
async def db_session() -> AsyncSession:
    """A live session for tests that call services directly."""
    async with async_session_test() as session:
        yield session


@pytest.fixture
def cache() -> CacheManager:
    return CacheManager(MemoryBackend())


@pytest.fixture
def realtime() -> ConnectionManager:
    return ConnectionManager()


@pytest.fixture
def ai_upstream() -> FakeAIUpstream:
    return FakeAIUpstream()


@pytest_asyncio.fixture
async def async_client(cache, realtime, ai_upstream) -> AsyncClient:
    app.state.cache = cache
    app.state.realtime = realtime
    app.state.ai = AIClient(settings, transport=httpx.MockTransport(ai_upstream))
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    await app.state.ai.close()


# ---------------------------------------------------------------------------
# Account helpers
# ---------------------------------------------------------------------------

async def register(client: AsyncClient, name: str, email: str, admin: bool = False) -> dict:
    payload = {"name": name, "email": email, "password": "Secret123"}
    if admin:
        payload["admin_access_token"] = settings.ADMIN_ACCESS_TOKEN
    resp = await client.post("/api/v1/auth/register", json=payload)
    assert resp.status_code == 201, resp.text
    return resp.json()


def bearer(user: dict) -> dict:
    return {"Authorization": f"Bearer {user['token']}"}


@pytest_asyncio.fixture
async def admin(async_client: AsyncClient) -> dict:
    return await register(async_client, "Ada Admin", "admin@example.com", admin=True)


@pytest_asyncio.fixture
async def member(async_client: AsyncClient) -> dict:
    return await register(async_client, "Mia Member", "member@example.com")


@pytest.fixture
def admin_headers(admin: dict) -> dict:
    return bearer(admin)


@pytest.fixture
def member_headers(member: dict) -> dict:
    return bearer(member)
