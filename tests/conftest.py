"""
Shared Test Fixtures
====================

Every test gets its own SQLite database file (aiosqlite, NullPool) with
the full schema, a fixed clock and an engine wired to the web, Play and
App Store verifiers. Redis is patched out: the cache behaves as if the
server were unreachable.
"""

import os

# Settings are read at import time
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret-with-at-least-32-characters")
os.environ.setdefault("SERVICE_API_KEY", "test-service-key")
os.environ.setdefault("WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("WEB_RECEIPT_SECRET", "test-web-receipt-secret")

import json
import uuid
from datetime import datetime, timezone
from typing import Optional
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from httpx import ASGITransport, AsyncClient
from sqlalchemy.pool import NullPool

import app.models  # noqa: F401
from app.config import Settings
from app.core.feature_map import FeatureMap
from app.db.base import Base
from app.db.session import create_engine_for_url, make_session_factory
from app.models.user import User
from app.schemas.receipt import ReceiptSubmission
from app.services.engine import EntitlementEngine
from app.services.verifiers import sign_web_receipt

WEB_SECRET = "test-web-receipt-secret"
SERVICE_KEY = "test-service-key"
WEBHOOK_SECRET = "test-webhook-secret"

# Fixed "now" for every engine built by these fixtures
NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def web_submission(
    user_id: uuid.UUID,
    *,
    transaction_id: str = "tx-001",
    product_id: str = "premium_monthly",
    sequence: int = 1,
    purchased_at: datetime = datetime(2025, 5, 1, tzinfo=timezone.utc),
    expires_at: datetime = datetime(2025, 12, 31, tzinfo=timezone.utc),
    original_transaction_id: Optional[str] = None,
    status: Optional[str] = None,
    trial: bool = False,
    canceled_at: Optional[datetime] = None,
    grace_expires_at: Optional[datetime] = None,
    secret: str = WEB_SECRET,
    environment: str = "production",
) -> ReceiptSubmission:
    """A signed web checkout receipt."""
    document = {
        "transaction_id": transaction_id,
        "product_id": product_id,
        "sequence": sequence,
        "purchased_at_ms": ms(purchased_at),
        "expires_at_ms": ms(expires_at),
        "trial": trial,
    }
    if original_transaction_id:
        document["original_transaction_id"] = original_transaction_id
    if status:
        document["status"] = status
    if canceled_at:
        document["canceled_at_ms"] = ms(canceled_at)
    if grace_expires_at:
        document["grace_expires_at_ms"] = ms(grace_expires_at)

    receipt_data = json.dumps(document, sort_keys=True)
    return ReceiptSubmission(
        transaction_id=transaction_id,
        user_id=user_id,
        product_id=product_id,
        receipt_data=receipt_data,
        receipt_signature=sign_web_receipt(receipt_data, secret),
        platform="web",
        environment=environment,
    )


@pytest.fixture(scope="session")
def play_private_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def play_public_key_pem(play_private_key) -> str:
    return play_private_key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()


@pytest.fixture
def test_settings(play_public_key_pem) -> Settings:
    return Settings(
        ENVIRONMENT="test",
        DATABASE_URL="sqlite+aiosqlite:///:memory:",
        JWT_SECRET="test-jwt-secret-with-at-least-32-characters",
        WEB_RECEIPT_SECRET=WEB_SECRET,
        GOOGLE_PLAY_PUBLIC_KEY=play_public_key_pem,
        APPLE_SHARED_SECRET="apple-shared-secret",
        VERIFY_MAX_ATTEMPTS=3,
        VERIFY_BACKOFF_BASE_SECONDS=0,
        VERIFY_BACKOFF_MAX_SECONDS=0,
        FEATURE_MAP_PATH=None,
    )


@pytest.fixture(autouse=True)
def redis_unavailable():
    """Every cache call behaves as if Redis were down."""
    with patch(
        "app.services.cache.get_redis",
        new=AsyncMock(side_effect=ConnectionError("redis unavailable")),
    ):
        yield


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    engine = create_engine_for_url(
        f"sqlite+aiosqlite:///{tmp_path / 'entitlements.db'}",
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return make_session_factory(db_engine)


async def _create_user(session_factory, email: str) -> uuid.UUID:
    user = User(user_id=uuid.uuid4(), email=email)
    async with session_factory() as session:
        session.add(user)
        await session.commit()
    return user.user_id


@pytest_asyncio.fixture
async def user_id(session_factory) -> uuid.UUID:
    """User U1."""
    return await _create_user(session_factory, "u1@example.com")


@pytest_asyncio.fixture
async def other_user_id(session_factory) -> uuid.UUID:
    """User U2."""
    return await _create_user(session_factory, "u2@example.com")


@pytest.fixture
def engine(session_factory, test_settings) -> EntitlementEngine:
    return EntitlementEngine(
        session_factory,
        test_settings,
        feature_map=FeatureMap.default(),
        clock=lambda: NOW,
    )


@pytest_asyncio.fixture
async def client(engine):
    """API client bound to the test engine."""
    from app.dependencies import get_engine
    from app.main import app

    app.dependency_overrides[get_engine] = lambda: engine
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
