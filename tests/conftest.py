import os

# racky.main builds its app at import time from global settings; keep tests
# off the debug console renderer (slow rich tracebacks), like test_settings.
os.environ.setdefault("DEBUG", "false")

from collections.abc import AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from typer.testing import CliRunner

from racky.config.settings import Settings
from racky.infra.database import Base, get_session
from racky.main import create_app
from racky.v1.infra.jobs import models  # noqa: F401
from racky.v1.infra.jobs.connection import BrokerConnectionManager
from racky.v1.infra.jobs.service import JobQueueService
from racky.v1.infra.jobs.store import JobStore
from tests.fakes import FakeChannel, FakeConnector, RecordingSleep


@pytest.fixture
def test_settings() -> Settings:
    """Settings for tests: fast health windows, no snapshot loop."""
    return Settings(
        database_url="sqlite+aiosqlite://",
        debug=False,
        health_snapshot_interval_s=0,
    )


@pytest.fixture
async def test_engine():
    """In-memory SQLite engine with the job tables created."""
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
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=test_engine, expire_on_commit=False)


@pytest.fixture
def store(session_factory) -> JobStore:
    return JobStore(session_factory)


@pytest.fixture
def channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture
def connector(channel) -> FakeConnector:
    return FakeConnector(channel)


@pytest.fixture
def sleeper() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def connection(test_settings, connector, sleeper) -> BrokerConnectionManager:
    return BrokerConnectionManager(test_settings, connector=connector, sleep=sleeper)


@pytest.fixture
async def service(
    test_settings, session_factory, connection
) -> AsyncGenerator[JobQueueService, None]:
    """Connected job queue service over the fake broker and SQLite."""
    job_queue = JobQueueService(test_settings, session_factory, connection=connection)
    await job_queue.initialize()

    yield job_queue

    await job_queue.consumers.shutdown(grace_seconds=1)
    await job_queue.connection.shutdown()


@pytest.fixture
def payload():
    return {"userId": "user-1", "workspaceId": "ws-1", "marketplace": "amazon"}


@pytest.fixture
def app(service, session_factory):
    """FastAPI app bound to the test service (ASGITransport skips lifespan)."""
    app = create_app(job_queue=service)
    app.state.job_queue = service

    async def override_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_session

    yield app

    app.dependency_overrides.clear()


@pytest.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def runner():
    """CLI test runner"""
    return CliRunner()
