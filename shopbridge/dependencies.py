from functools import lru_cache
from typing import AsyncGenerator

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from shopbridge.core.config import get_settings
from shopbridge.database import async_session
from shopbridge.services.tiktok.auth import TikTokAuthFlow
from shopbridge.services.tiktok.client import TikTokClient, TikTokClientConfig
from shopbridge.services.tiktok.credential_store import CredentialStore
from shopbridge.services.tiktok.record_store import TikTokRecordStore
from shopbridge.services.tiktok.service import TikTokSyncService
from shopbridge.services.tiktok.sync import SyncEngine
from shopbridge.services.tiktok.token_manager import TokenManager


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency for getting async database sessions."""
    async with async_session() as session:
        try:
            yield session
        finally:
            await session.close()


# Process-wide singletons: the token manager's per-connection refresh locks
# only serialize callers that share one instance.

@lru_cache()
def get_tiktok_client() -> TikTokClient:
    return TikTokClient(TikTokClientConfig.from_settings(get_settings()))


@lru_cache()
def get_credential_store() -> CredentialStore:
    return CredentialStore(async_session)


@lru_cache()
def get_record_store() -> TikTokRecordStore:
    return TikTokRecordStore(async_session)


@lru_cache()
def get_token_manager() -> TokenManager:
    return TokenManager(
        get_credential_store(),
        get_tiktok_client(),
        skew_seconds=get_settings().TIKTOK_TOKEN_REFRESH_SKEW_SECONDS,
    )


@lru_cache()
def get_sync_service() -> TikTokSyncService:
    settings = get_settings()
    engine = SyncEngine.from_settings(
        settings,
        get_token_manager(),
        get_tiktok_client(),
        get_credential_store(),
        get_record_store(),
    )
    return TikTokSyncService(engine, get_credential_store(), get_record_store(), settings)


def get_auth_flow(
    client: TikTokClient = Depends(get_tiktok_client),
    store: CredentialStore = Depends(get_credential_store),
) -> TikTokAuthFlow:
    return TikTokAuthFlow(client, store, get_settings())
