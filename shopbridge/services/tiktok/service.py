"""
Per-connection sync orchestration and the scheduled sweep.

Owns the connection's sync status: a run claims the connection, works through
the requested resources with the SyncEngine, writes an audit row per resource
and leaves the connection idle (with a new last_sync_at once every resource
completed) or in error with a user-facing kind.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from shopbridge.core.config import Settings
from shopbridge.core.enums import ConnectionSyncStatus, SyncErrorKind, SyncOutcome, SyncResource
from shopbridge.core.exceptions import SyncInProgressError
from shopbridge.core.utils import ensure_utc, utcnow
from shopbridge.models.tiktok import TikTokConnection
from shopbridge.schemas.tiktok import CronSyncEntry, CronSyncResponse, SyncResult
from shopbridge.services.tiktok.credential_store import CredentialStore
from shopbridge.services.tiktok.record_store import TikTokRecordStore
from shopbridge.services.tiktok.sync import SyncEngine

logger = logging.getLogger(__name__)

REAUTH_MESSAGE = "Reconnect your TikTok Shop account"
SYNC_FAILED_MESSAGE = "Sync failed, will retry"

# Run order for a full resource sweep
ALL_RESOURCES = (
    SyncResource.ORDERS,
    SyncResource.AFFILIATE_ORDERS,
    SyncResource.SETTLEMENTS,
    SyncResource.STATEMENT_TRANSACTIONS,
    SyncResource.PRODUCTS,
)


def user_facing_status(connection: TikTokConnection) -> Optional[str]:
    """Message shown to the member; platform error text never leaves the logs"""
    if connection.sync_status != ConnectionSyncStatus.ERROR.value:
        return None
    if connection.sync_error_kind == SyncErrorKind.REAUTH_REQUIRED.value:
        return REAUTH_MESSAGE
    return SYNC_FAILED_MESSAGE


class TikTokSyncService:

    def __init__(
        self,
        engine: SyncEngine,
        credential_store: CredentialStore,
        record_store: TikTokRecordStore,
        settings: Settings,
    ):
        self.engine = engine
        self.credential_store = credential_store
        self.record_store = record_store
        self.full_sync_days = settings.TIKTOK_FULL_SYNC_DAYS
        self.first_sync_days = settings.TIKTOK_FIRST_SYNC_DAYS
        self.overlap = timedelta(hours=settings.TIKTOK_INCREMENTAL_OVERLAP_HOURS)

    def compute_window(
        self,
        connection: TikTokConnection,
        full_sync: bool = False,
        now: Optional[datetime] = None,
    ) -> Tuple[datetime, datetime]:
        now = ensure_utc(now) if now else utcnow()
        last_sync_at = ensure_utc(connection.last_sync_at)
        if full_sync:
            start = now - timedelta(days=self.full_sync_days)
        elif last_sync_at:
            start = last_sync_at - self.overlap
        else:
            start = now - timedelta(days=self.first_sync_days)
        return start, now

    def _runner(self, resource: SyncResource):
        return {
            SyncResource.STATEMENT_TRANSACTIONS: self.engine.sync_statement_transactions,
            SyncResource.SETTLEMENTS: self.engine.sync_settlements,
            SyncResource.ORDERS: self.engine.sync_orders,
            SyncResource.AFFILIATE_ORDERS: self.engine.sync_affiliate_orders,
            SyncResource.PRODUCTS: self.engine.sync_products,
        }[resource]

    async def run_connection_sync(
        self,
        connection_id: str,
        resource: SyncResource = SyncResource.ALL,
        full_sync: bool = False,
        cancel_event: Optional[asyncio.Event] = None,
        claimed: bool = False,
    ) -> List[SyncResult]:
        """
        Sync one connection.

        Pass claimed=True when the caller already moved the connection to
        'syncing' with try_claim_for_sync.

        Raises:
            SyncInProgressError: another run owns the connection
            ConnectionNotFoundError: unknown connection
        """
        if not claimed and not await self.credential_store.try_claim_for_sync(connection_id):
            await self.credential_store.get(connection_id)
            raise SyncInProgressError(f"Sync already running for connection {connection_id}")

        started_at = utcnow()
        results: List[SyncResult] = []
        try:
            connection = await self.credential_store.get(connection_id)
            window_start, window_end = self.compute_window(connection, full_sync, now=started_at)
            logger.info(
                f"Starting {'full' if full_sync else 'incremental'} TikTok sync for {connection_id} "
                f"({resource.value}) from {window_start.isoformat()} to {window_end.isoformat()}"
            )

            resources = ALL_RESOURCES if resource == SyncResource.ALL else (resource,)
            for item in resources:
                result = await self._runner(item)(
                    connection_id, window_start, window_end, cancel_event=cancel_event,
                )
                if result.connection_id != connection_id:
                    logger.info(f"Connection {connection_id} was merged into {result.connection_id}")
                    connection_id = result.connection_id
                await self.record_store.record_sync_run(result, started_at=started_at)
                results.append(result)
                if result.errors or result.cancelled:
                    break
        except Exception as e:
            logger.exception(f"TikTok sync crashed for connection {connection_id}")
            await self.credential_store.set_sync_status(
                connection_id, ConnectionSyncStatus.ERROR, error=str(e), kind=SyncErrorKind.SYNC_FAILED,
            )
            raise

        await self._finish(connection_id, results, window_end)
        return results

    async def _finish(self, connection_id: str, results: List[SyncResult], window_end: datetime) -> None:
        if any(result.reauth_required for result in results):
            # The token manager already flagged the connection; keep the kind authoritative
            await self.credential_store.set_sync_status(
                connection_id,
                ConnectionSyncStatus.ERROR,
                error="Reauthorization required",
                kind=SyncErrorKind.REAUTH_REQUIRED,
            )
            return

        errors = [error for result in results for error in result.errors]
        if errors:
            detail = "; ".join(f"{error.kind}: {error.message}" for error in errors)
            logger.error(f"TikTok sync failed for {connection_id}: {detail}")
            await self.credential_store.set_sync_status(
                connection_id, ConnectionSyncStatus.ERROR, error=detail, kind=SyncErrorKind.SYNC_FAILED,
            )
            return

        if any(result.cancelled for result in results):
            # Progress is kept but the window was not covered
            await self.credential_store.set_sync_status(connection_id, ConnectionSyncStatus.IDLE)
            return

        if any(result.page_cap_reached for result in results):
            logger.warning(
                f"TikTok sync for {connection_id} stopped at the page cap; "
                f"keeping last_sync_at so the remaining records are fetched next run"
            )
            await self.credential_store.set_sync_status(connection_id, ConnectionSyncStatus.IDLE)
            return

        await self.credential_store.mark_sync_finished(connection_id, at=window_end)

    @staticmethod
    def _overall(results: List[SyncResult]) -> Optional[SyncOutcome]:
        outcomes = {result.outcome for result in results}
        for outcome in (SyncOutcome.FAILED, SyncOutcome.CANCELLED, SyncOutcome.PARTIAL):
            if outcome in outcomes:
                return outcome
        return SyncOutcome.COMPLETE if outcomes else None

    async def queue_scheduled_sync(self, run_inline: bool = True) -> CronSyncResponse:
        """
        Mark every syncable connection as pending and, with run_inline, work
        through them one at a time. Connections waiting on the member to
        reconnect are not listed, so their dead refresh tokens are never retried.
        """
        connections = await self.credential_store.list_syncable()
        logger.info(f"Scheduled TikTok sync: {len(connections)} connection(s)")

        entries = []
        queued = []
        for connection in connections:
            if connection.sync_status == ConnectionSyncStatus.SYNCING.value:
                entries.append(CronSyncEntry(id=connection.id, shop=connection.shop_name, status="already_syncing"))
                continue
            await self.credential_store.set_sync_status(connection.id, ConnectionSyncStatus.PENDING)
            queued.append(connection)

        for connection in queued:
            if not run_inline:
                entries.append(CronSyncEntry(id=connection.id, shop=connection.shop_name, status="pending"))
                continue
            try:
                results = await self.run_connection_sync(connection.id)
            except SyncInProgressError:
                entries.append(CronSyncEntry(id=connection.id, shop=connection.shop_name, status="already_syncing"))
                continue
            except Exception as e:
                logger.error(f"Scheduled sync failed for connection {connection.id}: {e}")
                entries.append(CronSyncEntry(
                    id=connection.id, shop=connection.shop_name, status="error", outcome=SyncOutcome.FAILED,
                ))
                continue

            outcome = self._overall(results)
            entries.append(CronSyncEntry(
                id=connection.id,
                shop=connection.shop_name,
                status="error" if outcome == SyncOutcome.FAILED else "synced",
                outcome=outcome,
            ))

        return CronSyncResponse(processed=len(connections), results=entries)
