"""
Paginated synchronization of TikTok Shop records into local storage.

A sync run is a bounded unit of work over one connection and one time window:
pages are fetched strictly in cursor order (the cursor is single use), each
page is upserted before the next is requested, and the run stops when the
cursor runs out, the page cap is hit, the caller cancels, or a page fails.
Whatever was fetched before the stop is kept and reported.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Iterator, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from shopbridge.core.enums import SyncOutcome, SyncResource
from shopbridge.core.exceptions import (
    ShopCipherMissingError,
    TikTokAPIError,
    TikTokAuthExpiredError,
    TikTokParseError,
    TikTokServiceError,
    TikTokTransportError,
)
from shopbridge.models.tiktok import TikTokConnection
from shopbridge.schemas.tiktok import (
    Page,
    StatementTransaction,
    SyncErrorEntry,
    SyncResult,
    TypeAggregate,
)
from shopbridge.services.tiktok.classifier import TransactionClassifier, aggregate_by_type
from shopbridge.services.tiktok.client import TikTokClient
from shopbridge.services.tiktok.credential_store import CredentialStore
from shopbridge.services.tiktok.record_store import TikTokRecordStore
from shopbridge.services.tiktok.token_manager import TokenManager

logger = logging.getLogger(__name__)

DEFAULT_PAGE_CAP = 10

FetchPage = Callable[[Optional[str]], Awaitable[Page]]
HandlePage = Callable[[Page], Awaitable[int]]


def _error_entry(page: int, error: Exception) -> SyncErrorEntry:
    if isinstance(error, TikTokAuthExpiredError):
        kind = "auth_expired"
    elif isinstance(error, TikTokTransportError):
        kind = "transport"
    elif isinstance(error, TikTokAPIError):
        kind = "api"
    elif isinstance(error, TikTokParseError):
        kind = "parse"
    elif isinstance(error, ShopCipherMissingError):
        kind = "shop_missing"
    elif isinstance(error, SQLAlchemyError):
        kind = "storage"
    else:
        kind = "error"
    return SyncErrorEntry(
        page=page,
        kind=kind,
        message=str(error),
        code=getattr(error, "code", None) if isinstance(error, TikTokAPIError) else None,
    )


def split_window(start: datetime, end: datetime, days: Optional[int]) -> Iterator[Tuple[datetime, datetime]]:
    """Consecutive [start, end) slices no longer than `days`"""
    if not days:
        yield start, end
        return
    step = timedelta(days=days)
    window_start = start
    while window_start < end:
        window_end = min(window_start + step, end)
        yield window_start, window_end
        window_start = window_end


class SyncEngine:

    def __init__(
        self,
        token_manager: TokenManager,
        client: TikTokClient,
        credential_store: CredentialStore,
        record_store: TikTokRecordStore,
        classifier: Optional[TransactionClassifier] = None,
        page_cap: int = DEFAULT_PAGE_CAP,
        page_size: int = 50,
        statement_page_size: int = 100,
        max_retries: int = 3,
        retry_backoff: float = 1.0,
        order_window_days: int = 30,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.token_manager = token_manager
        self.client = client
        self.credential_store = credential_store
        self.record_store = record_store
        self.classifier = classifier or TransactionClassifier()
        self.page_cap = page_cap
        self.page_size = page_size
        self.statement_page_size = statement_page_size
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self.order_window_days = order_window_days
        self.sleep = sleep

    @classmethod
    def from_settings(cls, settings, token_manager, client, credential_store, record_store) -> "SyncEngine":
        return cls(
            token_manager,
            client,
            credential_store,
            record_store,
            classifier=TransactionClassifier.from_settings(settings),
            page_cap=settings.TIKTOK_SYNC_PAGE_CAP,
            page_size=settings.TIKTOK_SYNC_PAGE_SIZE,
            statement_page_size=settings.TIKTOK_STATEMENT_PAGE_SIZE,
            max_retries=settings.TIKTOK_SYNC_MAX_RETRIES,
            retry_backoff=settings.TIKTOK_SYNC_RETRY_BACKOFF,
            order_window_days=settings.TIKTOK_ORDER_WINDOW_DAYS,
        )

    # Public entry points

    async def sync_statement_transactions(
        self,
        connection_id: str,
        window_start: datetime,
        window_end: datetime,
        page_cap: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> SyncResult:
        result = SyncResult(
            connection_id=connection_id,
            resource=SyncResource.STATEMENT_TRANSACTIONS,
            window_start=window_start,
            window_end=window_end,
        )
        prepared = await self._prepare(result)
        if prepared is None:
            return result
        access_token, connection = prepared

        async def fetch(cursor: Optional[str]) -> Page:
            return await self.client.fetch_statement_transactions(
                access_token, connection.shop_cipher, window_start, window_end,
                self.statement_page_size, cursor,
            )

        async def handle(page: Page) -> int:
            transactions = [StatementTransaction.from_payload(item, self.classifier) for item in page.items]
            upserted = await self.record_store.upsert_statement_transactions(connection, transactions)
            for type_name, aggregate in aggregate_by_type(transactions).items():
                total = result.by_type.setdefault(type_name, TypeAggregate())
                total.count += aggregate.count
                total.total_amount += aggregate.total_amount
            return upserted

        await self._paginate(result, fetch, handle, page_cap, cancel_event)
        self._log_result(result)
        return result

    async def sync_settlements(
        self,
        connection_id: str,
        window_start: datetime,
        window_end: datetime,
        page_cap: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> SyncResult:
        result = SyncResult(
            connection_id=connection_id,
            resource=SyncResource.SETTLEMENTS,
            window_start=window_start,
            window_end=window_end,
        )
        prepared = await self._prepare(result)
        if prepared is None:
            return result
        access_token, connection = prepared

        async def fetch(cursor: Optional[str]) -> Page:
            return await self.client.fetch_settlements(
                access_token, connection.shop_cipher, window_start, window_end,
                self.page_size, cursor,
            )

        async def handle(page: Page) -> int:
            return await self.record_store.upsert_settlements(connection, page.items)

        await self._paginate(result, fetch, handle, page_cap, cancel_event)
        self._log_result(result)
        return result

    async def sync_orders(
        self,
        connection_id: str,
        window_start: datetime,
        window_end: datetime,
        page_cap: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> SyncResult:
        """Orders are searched in sub-windows; the platform limits the range per request."""
        result = SyncResult(
            connection_id=connection_id,
            resource=SyncResource.ORDERS,
            window_start=window_start,
            window_end=window_end,
        )
        prepared = await self._prepare(result)
        if prepared is None:
            return result
        access_token, connection = prepared

        async def handle(page: Page) -> int:
            return await self.record_store.upsert_orders(connection, page.items)

        for sub_start, sub_end in split_window(window_start, window_end, self.order_window_days):
            logger.info(f"[sync] Orders window {sub_start.isoformat()} to {sub_end.isoformat()} for {connection_id}")

            async def fetch(cursor: Optional[str], sub_start=sub_start, sub_end=sub_end) -> Page:
                return await self.client.fetch_orders(
                    access_token, connection.shop_cipher, sub_start, sub_end,
                    self.page_size, cursor,
                )

            await self._paginate(result, fetch, handle, page_cap, cancel_event)
            if result.errors or result.cancelled or result.page_cap_reached:
                break

        self._log_result(result)
        return result

    async def sync_affiliate_orders(
        self,
        connection_id: str,
        window_start: datetime,
        window_end: datetime,
        page_cap: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> SyncResult:
        """
        Affiliate orders need a scope not every shop grants. A platform refusal
        on the first page marks the run skipped instead of failed.
        """
        result = SyncResult(
            connection_id=connection_id,
            resource=SyncResource.AFFILIATE_ORDERS,
            window_start=window_start,
            window_end=window_end,
        )
        prepared = await self._prepare(result)
        if prepared is None:
            return result
        access_token, connection = prepared

        async def fetch(cursor: Optional[str]) -> Page:
            return await self.client.fetch_affiliate_orders(
                access_token, connection.shop_cipher, window_start, window_end,
                self.page_size, cursor,
            )

        async def handle(page: Page) -> int:
            return await self.record_store.upsert_affiliate_orders(connection, page.items)

        await self._paginate(result, fetch, handle, page_cap, cancel_event)
        retryable = tuple(self.client.config.retryable_codes)
        if result.pages_fetched == 0 and result.errors and all(
            error.kind == "api" and error.code not in retryable for error in result.errors
        ):
            logger.warning(
                f"[sync] Affiliate orders unavailable for {connection_id} "
                f"({result.errors[0].code}); skipping"
            )
            result.errors = []
            result.skipped = True
        self._log_result(result)
        return result

    async def sync_products(
        self,
        connection_id: str,
        window_start: datetime,
        window_end: datetime,
        page_cap: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> SyncResult:
        """
        Products are listed in full regardless of the window. Only a listing
        that reached the end of its cursor removes products that dropped out.
        """
        result = SyncResult(
            connection_id=connection_id,
            resource=SyncResource.PRODUCTS,
            window_start=window_start,
            window_end=window_end,
        )
        prepared = await self._prepare(result)
        if prepared is None:
            return result
        access_token, connection = prepared
        live_ids: List[str] = []

        async def fetch(cursor: Optional[str]) -> Page:
            return await self.client.fetch_products(
                access_token, connection.shop_cipher, self.page_size, cursor,
            )

        async def handle(page: Page) -> int:
            live_ids.extend(
                str(product.get("id") or product.get("product_id"))
                for product in page.items
                if product.get("id") or product.get("product_id")
            )
            return await self.record_store.upsert_products(connection, page.items)

        await self._paginate(result, fetch, handle, page_cap, cancel_event)
        if result.outcome == SyncOutcome.COMPLETE:
            try:
                result.records_removed = await self.record_store.remove_stale_products(connection.id, live_ids)
            except SQLAlchemyError as e:
                logger.error(f"[sync] Removing stale products failed for {connection.id}: {e}")
                result.errors.append(_error_entry(result.pages_fetched, e))
        self._log_result(result)
        return result

    # Internals

    async def _prepare(self, result: SyncResult) -> Optional[Tuple[str, TikTokConnection]]:
        """Valid token plus a connection that has a shop cipher, or None with the error recorded"""
        try:
            access_token, connection = await self.token_manager.get_valid_token(result.connection_id)
            if not connection.shop_cipher:
                connection = await self._discover_shop(access_token, connection)
                # Discovery may merge a pending connection into an existing one
                result.connection_id = connection.id
            return access_token, connection
        except TikTokAuthExpiredError as e:
            logger.warning(f"[sync] Connection {result.connection_id} needs re-authorization")
            result.reauth_required = True
            result.errors.append(_error_entry(0, e))
        except (TikTokServiceError, SQLAlchemyError) as e:
            logger.error(f"[sync] Could not prepare connection {result.connection_id}: {e}")
            result.errors.append(_error_entry(0, e))
        return None

    async def _discover_shop(self, access_token: str, connection: TikTokConnection) -> TikTokConnection:
        """Shop listing may only become available after the first authorization"""
        shops = await self.client.get_authorized_shops(access_token)
        shops = [shop for shop in shops if shop.cipher]
        if not shops:
            raise ShopCipherMissingError("No authorized shops found. Please reconnect your TikTok Shop.")
        if len(shops) > 1:
            logger.info(f"Connection {connection.id} has {len(shops)} shops; attaching the first")
        return await self.credential_store.attach_shop(connection.id, shops[0])

    async def _paginate(
        self,
        result: SyncResult,
        fetch: FetchPage,
        handle: HandlePage,
        page_cap: Optional[int],
        cancel_event: Optional[asyncio.Event],
    ) -> None:
        cap = page_cap or self.page_cap
        cursor: Optional[str] = None
        while True:
            if cancel_event is not None and cancel_event.is_set():
                logger.info(f"[sync] Cancelled after {result.pages_fetched} pages for {result.connection_id}")
                result.cancelled = True
                return
            if result.pages_fetched >= cap:
                logger.warning(
                    f"[sync] Page cap {cap} reached for {result.connection_id} "
                    f"({result.resource.value}); stopping with partial results"
                )
                result.page_cap_reached = True
                return

            page_number = result.pages_fetched + 1
            try:
                page = await self._fetch_with_retry(fetch, cursor, page_number)
            except TikTokParseError as e:
                logger.error(f"[sync] Unparseable page {page_number} for {result.connection_id}: {e} raw={e.raw}")
                result.errors.append(_error_entry(page_number, e))
                return
            except TikTokServiceError as e:
                logger.error(f"[sync] Page {page_number} failed for {result.connection_id}: {e}")
                result.errors.append(_error_entry(page_number, e))
                return

            result.pages_fetched += 1
            result.records_fetched += len(page.items)
            try:
                result.records_upserted += await handle(page)
            except SQLAlchemyError as e:
                logger.error(f"[sync] Storing page {page_number} failed for {result.connection_id}: {e}")
                result.errors.append(_error_entry(page_number, e))
                return

            logger.info(
                f"[sync] Page {page_number}: {len(page.items)} records, "
                f"cursor: {'yes' if page.next_cursor else 'no'}"
            )
            if not page.next_cursor:
                return
            cursor = page.next_cursor

    async def _fetch_with_retry(self, fetch: FetchPage, cursor: Optional[str], page_number: int) -> Page:
        attempt = 0
        while True:
            try:
                return await fetch(cursor)
            except (TikTokTransportError, TikTokAPIError) as e:
                if not e.retryable or attempt >= self.max_retries:
                    raise
                delay = self.retry_backoff * (2 ** attempt)
                attempt += 1
                logger.warning(
                    f"[sync] Page {page_number} attempt {attempt} failed ({e}); retrying in {delay:.1f}s"
                )
                await self.sleep(delay)

    def _log_result(self, result: SyncResult) -> None:
        logger.info(
            f"[sync] {result.resource.value} for {result.connection_id}: outcome={result.outcome.value} "
            f"pages={result.pages_fetched} fetched={result.records_fetched} "
            f"upserted={result.records_upserted} removed={result.records_removed} errors={len(result.errors)}"
        )
