"""
Centralized Test Configuration.
"""

import uuid
import pytest
import httpx
from httpx import AsyncClient, ASGITransport
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool

from taskbox.app.main import app
from taskbox.app.core.config import Settings
from taskbox.app.db.session import get_db, get_session_factory, Base
from taskbox.app.models.client import Client
from taskbox.app.models.trainer import Trainer
from taskbox.app.services.dispatcher import TaskDispatcher
from taskbox.app.services.providers.factory import build_providers
from taskbox.app.services.task_context import TaskContext

# Setup In-Memory Test Database
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture
async def engine():
    """Fresh in-memory database per test, one shared connection."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine.sync_engine, "connect")
    def set_sqlite_pragma(dbapi_conn, connection_record):
        """Enable foreign key constraints for SQLite."""
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


# Shared session for fixture data creation
@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def test_settings():
    # One connection is shared by every session: run handlers one at a time.
    return Settings(
        _env_file=None,
        outbox_dispatch_concurrency=1,
        outbox_claim_batch_size=20,
        outbox_lock_timeout_seconds=120,
        outbox_task_timeout_seconds=5,
        twilio_account_sid="AC00000000000000000000000000000000",
        twilio_auth_token="twilio-token",
        twilio_messaging_service_sid="MG00000000000000000000000000000000",
        mandrill_api_key="mandrill-key",
        stripe_secret_key="sk_test_123",
        mailchimp_api_key="mc-key-us21",
        mailchimp_audience_id="aud123",
        app_store_shared_secret="app-secret",
        dispatch_secret=None,
    )


class ProviderStub:
    """httpx.MockTransport handler recording every outbound request."""

    def __init__(self):
        self.requests = []
        self.responder = lambda request: httpx.Response(404, json={"message": "not stubbed"})

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responder(request)


@pytest.fixture
def provider_stub():
    return ProviderStub()


@pytest.fixture
async def providers(test_settings, provider_stub):
    async with httpx.AsyncClient(transport=httpx.MockTransport(provider_stub)) as http:
        yield build_providers(test_settings, http)


@pytest.fixture
def dispatcher(session_factory, providers, test_settings):
    return TaskDispatcher(session_factory, providers, test_settings, worker_id="worker-a")


@pytest.fixture
def make_context(session_factory, providers, test_settings):
    """Build a TaskContext for calling a handler directly."""

    def _make(task_type, attempt=1, max_attempts=3):
        return TaskContext(
            session_factory=session_factory,
            settings=test_settings,
            providers=providers,
            task_id=uuid.uuid4(),
            task_type=task_type,
            attempt=attempt,
            max_attempts=max_attempts,
        )

    return _make


@pytest.fixture
async def trainer_and_client(session_factory):
    async with session_factory() as db:
        async with db.begin():
            trainer = Trainer(user_id=42, email="coach@example.com", first_name="Casey")
            db.add(trainer)
            await db.flush()
            client = Client(
                trainer_id=trainer.id,
                first_name="Robin",
                last_name="Lee",
                email="robin@example.com",
                phone_number="+15550001111",
            )
            db.add(client)
            await db.flush()
    return trainer, client


@pytest.fixture
async def client(session_factory):
    """Async client for testing."""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    async def override_get_session_factory():
        return session_factory

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = override_get_session_factory

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides = {}
    app.state.dispatcher = None
    app.state.providers = None
