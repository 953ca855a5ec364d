import os
from collections.abc import AsyncGenerator
from typing import Any, Dict, List, Optional

# Configure before the application modules read settings
CALLBACK_SECRET = "test-callback-secret-0123456789abcdef"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["ENVIRONMENT"] = "test"
os.environ["HELLO_SMS_TEST_MODE"] = "true"
os.environ["SMS_SCHEDULER_ENABLED"] = "false"
os.environ["SMS_CALLBACK_SECRET"] = CALLBACK_SECRET

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import update

from matkassen.main import app
from matkassen.api.v1 import dependencies
from matkassen.core.config import Settings
from matkassen.core.security import get_password_hash
from matkassen.db.repositories.sms import SmsRepository
from matkassen.db.repositories.users import UserRepository
from matkassen.db.session import (
    create_engine_for_url,
    create_session_factory,
    create_tables,
    get_repository_context,
    get_session_factory,
)
from matkassen.models.sms import SmsMessage
from matkassen.services.event_bus.bus import EventBus
from matkassen.services.rate_limiter import RateLimiter
from matkassen.services.sms.provider import ProviderSendResult, SmsProviderClient
from matkassen.services.sms.queue import QueueProcessor
from matkassen.services.sms.reconciler import WebhookReconciler

ADMIN_USER = {
    "email": "admin@example.com",
    "password": "Admin1234!",
    "full_name": "Admin User",
    "role": "admin",
}


class MockSmsGateway(SmsProviderClient):
    """Scriptable provider double that records every send call."""

    name = "mock"

    def __init__(self):
        self.calls: List[Dict[str, str]] = []
        self._counter = 0
        self.always_succeed()

    def always_succeed(self) -> "MockSmsGateway":
        self._failures_left: Optional[int] = 0
        self._error = None
        self._http_status = None
        self._raise: Optional[Exception] = None
        return self

    def always_fail(self, error: str = "Mock provider failure", http_status: Optional[int] = None) -> "MockSmsGateway":
        self._failures_left = None
        self._error = error
        self._http_status = http_status
        self._raise = None
        return self

    def always_raise(self, exc: Exception) -> "MockSmsGateway":
        self._failures_left = None
        self._raise = exc
        return self

    def fail_then_succeed(self, failures: int, error: str = "Temporary failure") -> "MockSmsGateway":
        self._failures_left = failures
        self._error = error
        self._http_status = 503
        self._raise = None
        return self

    async def send(self, phone_number: str, text: str) -> ProviderSendResult:
        self.calls.append({"to": phone_number, "text": text})

        failing = self._failures_left is None or self._failures_left > 0
        if failing:
            if self._failures_left:
                self._failures_left -= 1
            if self._raise is not None:
                raise self._raise
            return ProviderSendResult(accepted=False, error=self._error, http_status=self._http_status)

        self._counter += 1
        return ProviderSendResult(accepted=True, provider_message_id=f"mock_{self._counter}")


@pytest_asyncio.fixture()
async def db_engine(tmp_path):
    # File database so separate sessions see each other's commits
    engine = create_engine_for_url(f"sqlite+aiosqlite:///{tmp_path / 'matkassen-test.db'}")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture()
async def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest.fixture()
def test_settings() -> Settings:
    return Settings(
        SMS_MAX_RETRIES=3,
        SMS_RETRY_BACKOFF_SECONDS=0,
        SMS_SEND_DELAY_SECONDS=0,
        SMS_QUEUE_CONCURRENCY=1,
        SMS_QUEUE_BATCH_SIZE=50,
        SMS_SENDING_TIMEOUT_SECONDS=600,
        SMS_QUEUE_LOCK_TIMEOUT_SECONDS=300,
    )


@pytest.fixture()
def mock_gateway() -> MockSmsGateway:
    return MockSmsGateway()


@pytest.fixture()
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture()
def queue_processor(session_factory, mock_gateway, event_bus, test_settings) -> QueueProcessor:
    return QueueProcessor(session_factory, mock_gateway, event_bus=event_bus, config=test_settings)


@pytest.fixture()
def reconciler(session_factory, event_bus) -> WebhookReconciler:
    return WebhookReconciler(session_factory, event_bus=event_bus)


@pytest.fixture()
def make_sms(session_factory):
    """Insert an SMS record directly, optionally forcing column values."""
    counter = {"n": 0}

    async def _make(status: str = "queued", **values: Any) -> SmsMessage:
        counter["n"] += 1
        async with get_repository_context(SmsRepository, session_factory) as repo:
            sms, _ = await repo.create_sms(
                intent=values.pop("intent", "pickup_reminder"),
                to_e164=values.pop("to_e164", "+46701234567"),
                text=values.pop("text", "Your food parcel is ready for pickup tomorrow."),
                idempotency_key=values.pop("idempotency_key", f"test-key-{counter['n']}"),
                parcel_id=values.pop("parcel_id", f"parcel-{counter['n']}"),
                household_id=values.pop("household_id", "household-1"),
            )
            values["status"] = status
            await repo.session.execute(
                update(SmsMessage).where(SmsMessage.id == sms.id).values(**values)
            )
            await repo.session.commit()
            return await repo.get_by_id(sms.id)

    return _make


@pytest.fixture()
def get_sms(session_factory):
    async def _get(sms_id: str) -> SmsMessage:
        async with get_repository_context(SmsRepository, session_factory) as repo:
            return await repo.get_by_id(sms_id)

    return _get


@pytest_asyncio.fixture()
async def admin_user(session_factory):
    async with get_repository_context(UserRepository, session_factory) as repo:
        return await repo.create(
            email=ADMIN_USER["email"],
            hashed_password=get_password_hash(ADMIN_USER["password"]),
            full_name=ADMIN_USER["full_name"],
            role=ADMIN_USER["role"],
        )


@pytest_asyncio.fixture()
async def regular_user(session_factory):
    async with get_repository_context(UserRepository, session_factory) as repo:
        return await repo.create(
            email="staff@example.com",
            hashed_password=get_password_hash("Staff1234!"),
            full_name="Staff User",
            role="user",
        )


@pytest.fixture()
def override_app(session_factory, mock_gateway):
    """Point the app at the test database and provider, with a fresh rate limiter."""
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[dependencies.get_provider_client] = lambda: mock_gateway
    app.state.rate_limiter = RateLimiter()
    yield app
    app.dependency_overrides.clear()
    app.state.sms_scheduler = None
    app.state.sms_monitor = None


@pytest.fixture()
def override_auth(override_app, admin_user):
    app.dependency_overrides[dependencies.get_current_user] = lambda: admin_user
    yield admin_user


@pytest_asyncio.fixture()
async def async_client(override_app) -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(base_url="http://testserver", transport=transport) as client:
        yield client
