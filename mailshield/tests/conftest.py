from __future__ import annotations

from typing import AsyncIterator

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from mailshield.apps.api.main import create_app
from mailshield.core.config import get_settings
from mailshield.domain.models import Base
from mailshield.providers.mailbox.fake import FakeMailboxProvider
from mailshield.services.queue.work_queue import WorkQueue
from mailshield.services.runtime import Runtime, build_runtime
from mailshield.services.telemetry import reset_telemetry
from mailshield.tests.utils.fake_redis import FakeRedis


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    # Each test reads settings fresh so env overrides never leak.
    monkeypatch.setenv("CRON_SECRET", "cron-secret")
    monkeypatch.setenv("ADMIN_API_TOKEN", "admin-token")
    monkeypatch.delenv("GOOGLE_WEBHOOK_AUDIENCE", raising=False)
    monkeypatch.delenv("MICROSOFT_WEBHOOK_SECRET", raising=False)
    monkeypatch.delenv("NOTIFY_WEBHOOK_URL", raising=False)
    get_settings.cache_clear()
    reset_telemetry()
    yield
    get_settings.cache_clear()


@pytest.fixture
async def db_engine() -> AsyncIterator[AsyncEngine]:
    # One in-memory SQLite database shared by every session in the test.
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, expire_on_commit=False)


@pytest.fixture
async def session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def work_queue(fake_redis: FakeRedis) -> WorkQueue:
    return WorkQueue(fake_redis)  # type: ignore[arg-type]


@pytest.fixture
def providers() -> dict[str, FakeMailboxProvider]:
    return {"gmail": FakeMailboxProvider("gmail"), "o365": FakeMailboxProvider("o365")}


@pytest.fixture
def runtime(fake_redis: FakeRedis, session_factory, providers) -> Runtime:
    return build_runtime(redis=fake_redis, session_factory=session_factory, providers=providers)  # type: ignore[arg-type]


@pytest.fixture
async def client(runtime: Runtime) -> AsyncIterator[AsyncClient]:
    # The runtime is attached up front, so lifespan never dials Postgres or Redis.
    transport = ASGITransport(app=create_app(runtime=runtime))
    async with AsyncClient(transport=transport, base_url="http://test") as http:
        yield http
