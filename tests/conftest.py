# tests/conftest.py
import os

# Settings are read once and cached; these must be in place before shopbridge is imported
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./shopbridge_test.db")
os.environ.setdefault("TIKTOK_APP_KEY", "test_app_key")
os.environ.setdefault("TIKTOK_APP_SECRET", "test_app_secret")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("APP_URL", "https://app.example.com")

from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine, AsyncSession
from sqlalchemy.pool import NullPool

from shopbridge.database import Base
from shopbridge.core.utils import utcnow
from shopbridge.models.tiktok import TikTokConnection
from shopbridge.schemas.tiktok import TikTokTokens
from shopbridge.services.tiktok.client import TikTokClientConfig
from shopbridge.services.tiktok.credential_store import CredentialStore
from shopbridge.services.tiktok.record_store import TikTokRecordStore


@pytest.fixture
async def test_engine(tmp_path):
    """Create and configure the test database engine (function-scoped)."""
    # A file rather than :memory: so every session sees the same database
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def credential_store(session_factory):
    return CredentialStore(session_factory)


@pytest.fixture
def record_store(session_factory):
    return TikTokRecordStore(session_factory)


@pytest.fixture
def client_config():
    return TikTokClientConfig(
        app_key="test_app_key",
        app_secret="test_app_secret",
        api_base="https://open-api.example.com",
        auth_base="https://auth.example.com",
        timeout=5.0,
        retryable_codes=(429, 36009004),
    )


@pytest.fixture
def make_tokens():
    """Factory for token payloads as the token endpoints return them"""
    def _make(access_token="new-access", refresh_token="new-refresh", expire_in=14400, refresh_expire_in=86400 * 30):
        return TikTokTokens(
            access_token=access_token,
            refresh_token=refresh_token,
            access_token_expire_in=expire_in,
            refresh_token_expire_in=refresh_expire_in,
        )
    return _make


@pytest.fixture
def make_connection(session_factory):
    """Insert a connection row; keyword arguments override the defaults"""
    async def _make(**overrides):
        now = utcnow()
        values = dict(
            user_id="user-1",
            shop_id="shop-1",
            shop_cipher="cipher-1",
            shop_name="Test Shop",
            access_token="stored-access",
            token_expires_at=now + timedelta(hours=4),
            refresh_token="stored-refresh",
            refresh_token_expires_at=now + timedelta(days=30),
            connected_at=now,
            updated_at=now,
            sync_status="idle",
        )
        values.update(overrides)
        connection = TikTokConnection(**values)
        async with session_factory() as session:
            async with session.begin():
                session.add(connection)
        return connection
    return _make


@pytest.fixture
async def connection(make_connection):
    return await make_connection()
