"""
Test configuration and fixtures.
Uses SQLite in-memory for fast tests. Mocks Redis and alert delivery.
"""
import hashlib
import hmac
import json
import time
import uuid
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.pool import StaticPool

from bookon_relay.config import get_settings
from bookon_relay.database import Base
from bookon_relay.models import Booking, User  # registers every table on Base.metadata

STRIPE_SECRET = "whsec_test_secret"
EXTERNAL_SECRET = "external_test_secret"
JWT_SECRET = "jwt_test_secret"


# Register JSONB as JSON for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


# Store UUIDs as text on SQLite; a column typed UUID gets NUMERIC affinity there
@compiles(UUID, "sqlite")
def _compile_uuid_sqlite(type_, compiler, **kw):
    return "CHAR(32)"


@pytest.fixture(autouse=True)
def relay_env(monkeypatch):
    """Deterministic settings for every test."""
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", STRIPE_SECRET)
    monkeypatch.setenv("EXTERNAL_WEBHOOK_SECRET", EXTERNAL_SECRET)
    monkeypatch.setenv("JWT_SECRET", JWT_SECRET)
    monkeypatch.setenv("RETRY_MAX_ATTEMPTS", "3")
    monkeypatch.setenv("HANDLER_TIMEOUT_SECONDS", "2")
    monkeypatch.setenv("EXPECTED_EVENT_TYPES", "")
    monkeypatch.setenv("ALERT_WEBHOOK_URL", "")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def mock_redis():
    """Mock for async Redis - prevents real Redis calls in tests."""
    redis_mock = AsyncMock()
    redis_mock.set = AsyncMock(return_value=True)
    redis_mock.get = AsyncMock(return_value=None)
    redis_mock.ping = AsyncMock(return_value=True)
    with patch("bookon_relay.utils.cache.get_redis", new_callable=AsyncMock, return_value=redis_mock):
        yield redis_mock


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    """In-memory SQLite database for tests."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def notifier():
    """Stands in for the delivery queue: records what the dispatcher publishes."""
    mock = MagicMock()
    mock.publish = MagicMock(return_value=True)
    return mock


@pytest.fixture
def dispatcher(notifier):
    from bookon_relay.services.dispatcher import EventDispatcher
    from bookon_relay.services.handlers import register_default_handlers
    d = EventDispatcher(notifier=notifier, settings=get_settings())
    register_default_handlers(d)
    return d


@pytest.fixture
async def user(db):
    u = User(
        id=uuid.UUID("11111111-1111-1111-1111-111111111111"),
        email="guest@example.com",
        role="user",
        venue_id="venue-1",
        is_active=True,
    )
    db.add(u)
    await db.commit()
    return u


@pytest.fixture
async def admin_user(db):
    u = User(
        id=uuid.UUID("22222222-2222-2222-2222-222222222222"),
        email="admin@example.com",
        role="admin",
        venue_id=None,
        is_active=True,
    )
    db.add(u)
    await db.commit()
    return u


@pytest.fixture
async def booking(db, user):
    b = Booking(
        id=uuid.UUID("33333333-3333-3333-3333-333333333333"),
        user_id=user.id,
        venue_id="venue-1",
        payment_intent_id="pi_test_123",
        status="pending",
        payment_status="pending",
        total_amount=Decimal("45.00"),
    )
    db.add(b)
    await db.commit()
    return b


@pytest.fixture
def stripe_event():
    """Build a raw Stripe event body."""
    def _build(event_type: str = "payment_intent.succeeded", obj: dict | None = None, event_id: str = "evt_test_1") -> bytes:
        return json.dumps({
            "id": event_id,
            "object": "event",
            "type": event_type,
            "data": {"object": obj if obj is not None else {"id": "pi_test_123", "object": "payment_intent"}},
        }).encode("utf-8")
    return _build


@pytest.fixture
def sign_stripe():
    """Build a valid Stripe-Signature header for a body."""
    def _sign(body: bytes, secret: str = STRIPE_SECRET, timestamp: int | None = None) -> str:
        ts = timestamp if timestamp is not None else int(time.time())
        digest = hmac.new(
            secret.encode("utf-8"), f"{ts}.{body.decode('utf-8')}".encode("utf-8"), hashlib.sha256,
        ).hexdigest()
        return f"t={ts},v1={digest}"
    return _sign


@pytest.fixture
def make_token():
    """Issue a BookOn access token the way the main API does."""
    def _make(user_id, role: str = "user", secret: str = JWT_SECRET, expires_in: int = 3600) -> str:
        import jwt
        return jwt.encode(
            {"userId": str(user_id), "role": role, "exp": int(time.time()) + expires_in},
            secret,
            algorithm="HS256",
        )
    return _make
