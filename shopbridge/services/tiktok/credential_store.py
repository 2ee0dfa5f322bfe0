import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import case, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shopbridge.core.enums import ConnectionSyncStatus, SyncErrorKind
from shopbridge.core.exceptions import ConnectionNotFoundError
from shopbridge.core.utils import ensure_utc, utcnow
from shopbridge.models.tiktok import TikTokConnection, TikTokSyncRun
from shopbridge.schemas.tiktok import TikTokShop, TikTokTokens

logger = logging.getLogger(__name__)

REAUTH = SyncErrorKind.REAUTH_REQUIRED.value

# Only a fresh authorization (upsert_shop_connection / create_pending_connection)
# clears a reauth_required connection; every other status write keeps it.
_reauth_held = TikTokConnection.sync_error_kind == REAUTH


def _unless_reauth(held, value):
    """SQL expression: keep `held` while the connection needs re-authorization, else `value`"""
    return case((_reauth_held, held), else_=value)


def _later(current: Optional[datetime], candidate: Optional[datetime]) -> Optional[datetime]:
    """Expiries only ever move forward."""
    current, candidate = ensure_utc(current), ensure_utc(candidate)
    if current is None:
        return candidate
    if candidate is None:
        return current
    return max(current, candidate)


class CredentialStore:
    """
    Reads and writes TikTok connection records.

    Each write runs in its own session and transaction, so a failed write
    leaves the previously stored tokens untouched.
    """

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def get(self, connection_id: str) -> TikTokConnection:
        async with self.session_factory() as session:
            connection = await session.get(TikTokConnection, connection_id)
        if connection is None:
            raise ConnectionNotFoundError(f"Connection not found: {connection_id}")
        return connection

    async def list_for_user(self, user_id: str) -> List[TikTokConnection]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(TikTokConnection)
                .where(TikTokConnection.user_id == user_id)
                .order_by(TikTokConnection.connected_at.desc())
            )
            return list(result.scalars().all())

    async def list_syncable(self) -> List[TikTokConnection]:
        """Connections that hold an access token and do not wait on the member to reconnect"""
        async with self.session_factory() as session:
            result = await session.execute(
                select(TikTokConnection)
                .where(
                    TikTokConnection.access_token.is_not(None),
                    or_(
                        TikTokConnection.sync_error_kind.is_(None),
                        TikTokConnection.sync_error_kind != REAUTH,
                    ),
                )
                .order_by(TikTokConnection.connected_at)
            )
            return list(result.scalars().all())

    @staticmethod
    def _apply_tokens(connection: TikTokConnection, tokens: TikTokTokens, now: datetime) -> None:
        connection.access_token = tokens.access_token
        connection.refresh_token = tokens.refresh_token
        connection.token_expires_at = _later(connection.token_expires_at, tokens.access_expires_at(now))
        connection.refresh_token_expires_at = _later(
            connection.refresh_token_expires_at, tokens.refresh_expires_at(now)
        )
        connection.updated_at = now

    @staticmethod
    def _reset_after_authorization(connection: TikTokConnection, now: datetime) -> None:
        connection.connected_at = now
        if connection.sync_status != ConnectionSyncStatus.SYNCING.value:
            connection.sync_status = ConnectionSyncStatus.IDLE.value
        connection.sync_error = None
        connection.sync_error_kind = None

    async def _find(self, session: AsyncSession, user_id: str, shop_id: Optional[str]) -> Optional[TikTokConnection]:
        shop_clause = (
            TikTokConnection.shop_id.is_(None) if shop_id is None else TikTokConnection.shop_id == shop_id
        )
        result = await session.execute(
            select(TikTokConnection)
            .where(TikTokConnection.user_id == user_id, shop_clause)
            .order_by(TikTokConnection.connected_at)
            .with_for_update()
        )
        return result.scalars().first()

    async def upsert_shop_connection(
        self,
        user_id: str,
        shop: TikTokShop,
        tokens: TikTokTokens,
        now: Optional[datetime] = None,
    ) -> TikTokConnection:
        """Create or update the connection for (user_id, shop.id)"""
        now = now or utcnow()
        async with self.session_factory() as session:
            async with session.begin():
                connection = await self._find(session, user_id, shop.id)
                if connection is None:
                    connection = TikTokConnection(
                        user_id=user_id,
                        shop_id=shop.id,
                        connected_at=now,
                        sync_status=ConnectionSyncStatus.IDLE.value,
                    )
                    session.add(connection)
                    logger.info(f"Linking new TikTok shop {shop.id} for user {user_id}")
                else:
                    logger.info(f"Re-authorized TikTok shop {shop.id} for user {user_id}")

                connection.shop_cipher = shop.cipher
                connection.shop_name = shop.name
                connection.region = shop.region
                self._reset_after_authorization(connection, now)
                self._apply_tokens(connection, tokens, now)
        return connection

    async def create_pending_connection(
        self,
        user_id: str,
        tokens: TikTokTokens,
        now: Optional[datetime] = None,
    ) -> TikTokConnection:
        """
        Store tokens for a user whose shops are not listable yet.
        A user has at most one shopless connection; re-authorizing updates it.
        """
        now = now or utcnow()
        async with self.session_factory() as session:
            async with session.begin():
                connection = await self._find(session, user_id, None)
                if connection is None:
                    connection = TikTokConnection(
                        user_id=user_id,
                        connected_at=now,
                        sync_status=ConnectionSyncStatus.IDLE.value,
                    )
                    session.add(connection)
                self._reset_after_authorization(connection, now)
                self._apply_tokens(connection, tokens, now)
        logger.info(f"Stored TikTok tokens for user {user_id}; shop discovery deferred")
        return connection

    async def save_refreshed_tokens(
        self,
        connection_id: str,
        tokens: TikTokTokens,
        now: Optional[datetime] = None,
    ) -> TikTokConnection:
        now = now or utcnow()
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    select(TikTokConnection)
                    .where(TikTokConnection.id == connection_id)
                    .with_for_update()
                )
                connection = result.scalars().first()
                if connection is None:
                    raise ConnectionNotFoundError(f"Connection not found: {connection_id}")
                self._apply_tokens(connection, tokens, now)
        return connection

    async def attach_shop(self, connection_id: str, shop: TikTokShop) -> TikTokConnection:
        """
        Give a shopless connection its shop.

        When the user already has a connection for that shop, the pending
        connection's tokens are merged into it and the pending row is removed.
        The surviving connection is returned; its id may differ from
        connection_id.
        """
        now = utcnow()
        async with self.session_factory() as session:
            async with session.begin():
                pending = await session.get(TikTokConnection, connection_id)
                if pending is None:
                    raise ConnectionNotFoundError(f"Connection not found: {connection_id}")

                existing = await self._find(session, pending.user_id, shop.id)
                if existing is None or existing.id == pending.id:
                    pending.shop_id = shop.id
                    pending.shop_cipher = shop.cipher
                    pending.shop_name = shop.name
                    pending.region = shop.region
                    pending.updated_at = now
                    logger.info(f"Attached shop {shop.id} to connection {connection_id}")
                    return pending

                existing.access_token = pending.access_token
                existing.refresh_token = pending.refresh_token
                existing.token_expires_at = _later(existing.token_expires_at, pending.token_expires_at)
                existing.refresh_token_expires_at = _later(
                    existing.refresh_token_expires_at, pending.refresh_token_expires_at
                )
                existing.shop_cipher = shop.cipher or existing.shop_cipher
                existing.shop_name = shop.name or existing.shop_name
                existing.region = shop.region or existing.region
                existing.sync_error = None
                existing.sync_error_kind = None
                if existing.sync_status == ConnectionSyncStatus.ERROR.value:
                    existing.sync_status = ConnectionSyncStatus.IDLE.value
                existing.updated_at = now

                await session.execute(
                    update(TikTokSyncRun)
                    .where(TikTokSyncRun.connection_id == pending.id)
                    .values(connection_id=existing.id)
                )
                await session.delete(pending)
        logger.info(f"Merged pending connection {connection_id} into {existing.id} for shop {shop.id}")
        return existing

    async def set_sync_status(
        self,
        connection_id: str,
        status: ConnectionSyncStatus,
        error: Optional[str] = None,
        kind: Optional[SyncErrorKind] = None,
    ) -> None:
        """A connection that needs re-authorization stays in error whatever status is written."""
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(TikTokConnection)
                    .where(TikTokConnection.id == connection_id)
                    .values(
                        sync_status=_unless_reauth(ConnectionSyncStatus.ERROR.value, status.value),
                        sync_error=_unless_reauth(TikTokConnection.sync_error, error),
                        sync_error_kind=_unless_reauth(REAUTH, kind.value if kind else None),
                        updated_at=utcnow(),
                    )
                )

    async def mark_sync_finished(self, connection_id: str, at: Optional[datetime] = None) -> None:
        at = at or utcnow()
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(TikTokConnection)
                    .where(TikTokConnection.id == connection_id)
                    .values(
                        sync_status=_unless_reauth(ConnectionSyncStatus.ERROR.value, ConnectionSyncStatus.IDLE.value),
                        sync_error=_unless_reauth(TikTokConnection.sync_error, None),
                        sync_error_kind=_unless_reauth(REAUTH, None),
                        last_sync_at=at,
                        updated_at=at,
                    )
                )

    async def try_claim_for_sync(self, connection_id: str) -> bool:
        """
        Atomically move a connection to 'syncing'.
        Returns False when another run already owns it.
        """
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(TikTokConnection)
                    .where(
                        TikTokConnection.id == connection_id,
                        TikTokConnection.sync_status != ConnectionSyncStatus.SYNCING.value,
                    )
                    .values(
                        sync_status=ConnectionSyncStatus.SYNCING.value,
                        sync_error=_unless_reauth(TikTokConnection.sync_error, None),
                        sync_error_kind=_unless_reauth(REAUTH, None),
                        updated_at=utcnow(),
                    )
                )
                return result.rowcount == 1
