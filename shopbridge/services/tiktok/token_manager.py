"""
Access token lifecycle for TikTok connections.

Tokens are served from the stored connection while they are comfortably
valid and refreshed through the platform when they are inside the skew
window. Only one refresh per connection is in flight at a time; callers that
arrive during a refresh wait for it and reuse its result, since a duplicate
refresh can invalidate the token a sibling request just obtained.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import AsyncIterator, Callable, Dict, Optional, Tuple

from shopbridge.core.enums import ConnectionSyncStatus, SyncErrorKind, TokenState
from shopbridge.core.exceptions import (
    TikTokAPIError,
    TikTokAuthExpiredError,
    TikTokTransportError,
)
from shopbridge.core.logging_config import mask_secret
from shopbridge.core.utils import ensure_utc, utcnow
from shopbridge.models.tiktok import TikTokConnection
from shopbridge.services.tiktok.client import TikTokClient
from shopbridge.services.tiktok.credential_store import CredentialStore

logger = logging.getLogger(__name__)


class TokenManager:

    def __init__(
        self,
        store: CredentialStore,
        client: TikTokClient,
        skew_seconds: int = 300,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.client = client
        self.skew = timedelta(seconds=skew_seconds)
        self.clock = clock
        self._refresh_locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    def token_state(self, connection: TikTokConnection, now: Optional[datetime] = None) -> TokenState:
        now = now or self.clock()
        expires_at = ensure_utc(connection.token_expires_at)
        if connection.access_token and expires_at and now < expires_at - self.skew:
            return TokenState.VALID

        refresh_expires_at = ensure_utc(connection.refresh_token_expires_at)
        if (
            not connection.refresh_token
            or connection.sync_error_kind == SyncErrorKind.REAUTH_REQUIRED.value
            or (refresh_expires_at is not None and refresh_expires_at <= now)
        ):
            return TokenState.REFRESH_FAILED
        return TokenState.EXPIRING

    async def get_valid_token(self, connection_id: str) -> Tuple[str, TikTokConnection]:
        """
        Get a valid access token for a connection, refreshing if needed

        Raises:
            ConnectionNotFoundError: unknown connection
            TikTokAuthExpiredError: the member has to reconnect
            TikTokTransportError: the platform could not be reached
        """
        connection = await self.store.get(connection_id)
        if self.token_state(connection) == TokenState.VALID:
            logger.debug(f"Using stored access token for connection {connection_id}")
            return connection.access_token, connection

        async with self._refresh_lock(connection_id):
            # A sibling may have refreshed while we waited
            connection = await self.store.get(connection_id)
            state = self.token_state(connection)
            if state == TokenState.VALID:
                logger.debug(f"Reusing token refreshed by a concurrent caller for {connection_id}")
                return connection.access_token, connection
            if state == TokenState.REFRESH_FAILED:
                await self._mark_reauth_required(connection_id, "refresh token missing, expired or revoked")
                raise TikTokAuthExpiredError(connection_id)
            return await self._refresh(connection)

    async def _refresh(self, connection: TikTokConnection) -> Tuple[str, TikTokConnection]:
        logger.info(f"Refreshing access token for connection {connection.id}")
        try:
            tokens = await self.client.refresh_access_token(connection.refresh_token)
        except TikTokAPIError as e:
            if e.retryable:
                logger.warning(f"Token refresh throttled for {connection.id}: {e.code} {e.message}")
                raise
            logger.error(f"Token refresh rejected for {connection.id}: {e.code} {e.message}")
            await self._mark_reauth_required(connection.id, f"{e.code} {e.message}")
            raise TikTokAuthExpiredError(connection.id, detail=e.message) from e
        except TikTokTransportError:
            # Refresh token state unknown; the current token may still be usable
            expires_at = ensure_utc(connection.token_expires_at)
            if connection.access_token and expires_at and self.clock() < expires_at:
                logger.warning(f"Token refresh failed for {connection.id}, using existing token until {expires_at}")
                return connection.access_token, connection
            raise

        updated = await self.store.save_refreshed_tokens(connection.id, tokens, now=self.clock())
        logger.info(
            f"Refreshed access token {mask_secret(updated.access_token)} for connection {connection.id} "
            f"(expires {updated.token_expires_at})"
        )
        return updated.access_token, updated

    async def _mark_reauth_required(self, connection_id: str, detail: str) -> None:
        await self.store.set_sync_status(
            connection_id,
            ConnectionSyncStatus.ERROR,
            error=f"Reauthorization required: {detail}",
            kind=SyncErrorKind.REAUTH_REQUIRED,
        )

    @asynccontextmanager
    async def _refresh_lock(self, connection_id: str) -> AsyncIterator[None]:
        """Per-connection lock, dropped once nobody holds or waits for it"""
        lock = self._refresh_locks.setdefault(connection_id, asyncio.Lock())
        self._lock_users[connection_id] = self._lock_users.get(connection_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[connection_id] -= 1
            if not self._lock_users[connection_id]:
                del self._lock_users[connection_id]
                del self._refresh_locks[connection_id]
