# Sync engine unit tests
import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select

from shopbridge.core.enums import SyncOutcome, SyncResource
from shopbridge.core.exceptions import (
    TikTokAPIError,
    TikTokAuthExpiredError,
    TikTokParseError,
    TikTokTransportError,
)
from shopbridge.models.tiktok import TikTokAffiliateOrder, TikTokOrder
from shopbridge.schemas.tiktok import Page, TikTokShop
from shopbridge.services.tiktok.sync import SyncEngine, split_window

WINDOW_START = datetime(2024, 1, 1, tzinfo=timezone.utc)
WINDOW_END = datetime(2024, 2, 1, tzinfo=timezone.utc)


def _tx(tx_id, tx_type="ORDER", amount="10.00"):
    return {"id": tx_id, "type": tx_type, "amount": amount, "currency": "USD", "statement_time": 1704067200}


@pytest.fixture
def mock_client(mocker):
    client = mocker.MagicMock()
    client.fetch_statement_transactions = mocker.AsyncMock()
    client.fetch_settlements = mocker.AsyncMock()
    client.fetch_orders = mocker.AsyncMock()
    client.fetch_affiliate_orders = mocker.AsyncMock()
    client.fetch_products = mocker.AsyncMock()
    client.get_authorized_shops = mocker.AsyncMock()
    client.config.retryable_codes = (429, 36009004)
    return client


@pytest.fixture
def mock_token_manager(mocker, connection):
    token_manager = mocker.MagicMock()
    token_manager.get_valid_token = mocker.AsyncMock(return_value=("tok", connection))
    return token_manager


@pytest.fixture
def mock_sleep(mocker):
    return mocker.AsyncMock()


@pytest.fixture
def engine(mock_token_manager, mock_client, credential_store, record_store, mock_sleep):
    return SyncEngine(
        mock_token_manager, mock_client, credential_store, record_store,
        page_cap=10, max_retries=3, retry_backoff=1.0, sleep=mock_sleep,
    )


"""
1. Pagination Tests
"""

async def test_three_pages_then_end_of_cursor(engine, mock_client, record_store, connection):
    mock_client.fetch_statement_transactions.side_effect = [
        Page(items=[_tx("t1"), _tx("t2")], next_cursor="c1"),
        Page(items=[_tx("t3"), _tx("t4")], next_cursor="c2"),
        Page(items=[_tx("t5")], next_cursor=None),
    ]

    result = await engine.sync_statement_transactions(connection.id, WINDOW_START, WINDOW_END)

    assert result.pages_fetched == 3
    assert result.records_fetched == 5
    assert result.records_upserted == 5
    assert result.errors == []
    assert result.outcome == SyncOutcome.COMPLETE
    cursors = [call.args[5] for call in mock_client.fetch_statement_transactions.call_args_list]
    assert cursors == [None, "c1", "c2"]
    assert await record_store.count_statement_transactions(connection.id) == 5


async def test_never_ending_cursor_stops_at_page_cap(engine, mock_client, connection):
    mock_client.fetch_statement_transactions.side_effect = lambda *args: Page(
        items=[_tx(f"t{mock_client.fetch_statement_transactions.await_count}")], next_cursor="again"
    )

    result = await engine.sync_statement_transactions(connection.id, WINDOW_START, WINDOW_END, page_cap=4)

    assert result.pages_fetched == 4
    assert mock_client.fetch_statement_transactions.await_count == 4
    assert result.page_cap_reached is True
    assert result.errors == []
    assert result.outcome == SyncOutcome.PARTIAL


async def test_rerunning_a_window_is_idempotent(engine, mock_client, record_store, connection):
    pages = [
        Page(items=[_tx("t1"), _tx("t2")], next_cursor="c1"),
        Page(items=[_tx("t3")], next_cursor=None),
    ]
    mock_client.fetch_statement_transactions.side_effect = list(pages)
    first = await engine.sync_statement_transactions(connection.id, WINDOW_START, WINDOW_END)
    rows_after_first = await record_store.list_statement_transactions(connection.id)

    mock_client.fetch_statement_transactions.side_effect = list(pages)
    second = await engine.sync_statement_transactions(connection.id, WINDOW_START, WINDOW_END)
    rows_after_second = await record_store.list_statement_transactions(connection.id)

    assert first.records_upserted == second.records_upserted == 3
    assert len(rows_after_second) == 3
    assert [r.transaction_id for r in rows_after_first] == [r.transaction_id for r in rows_after_second]


async def test_duplicate_ids_within_a_page_are_stored_once(engine, mock_client, record_store, connection):
    mock_client.fetch_statement_transactions.side_effect = [
        Page(items=[_tx("t1", amount="1"), _tx("t1", amount="2")], next_cursor=None),
    ]

    await engine.sync_statement_transactions(connection.id, WINDOW_START, WINDOW_END)

    rows = await record_store.list_statement_transactions(connection.id)
    assert len(rows) == 1
    assert Decimal(str(rows[0].amount)) == Decimal("2")


"""
2. Classification Tests
"""

async def test_unknown_types_are_kept_and_counted(engine, mock_client, record_store, connection):
    mock_client.fetch_statement_transactions.side_effect = [
        Page(items=[
            _tx("t1", "ORDER", "25.00"),
            _tx("t2", "ORDER", "-5.00"),
            {"id": "t3", "amount": "3.50"},
            {"id": "t4", "statement_type": "BRAND_NEW_TYPE", "total_amount": "1.00"},
        ], next_cursor=None),
    ]

    result = await engine.sync_statement_transactions(connection.id, WINDOW_START, WINDOW_END)

    assert result.by_type["ORDER"].count == 2
    assert result.by_type["ORDER"].total_amount == Decimal("30.00")
    assert result.by_type["unknown"].count == 1
    assert result.by_type["BRAND_NEW_TYPE"].count == 1
    rows = {row.transaction_id: row for row in await record_store.list_statement_transactions(connection.id)}
    assert rows["t3"].transaction_type == "unknown"
    assert rows["t3"].raw_data == {"id": "t3", "amount": "3.50"}


async def test_transactions_without_id_get_a_stable_id(engine, mock_client, record_store, connection):
    item = {"type": "ADJUSTMENT", "amount": "4.00", "statement_time": 1704067200}
    mock_client.fetch_statement_transactions.side_effect = [Page(items=[item])]
    await engine.sync_statement_transactions(connection.id, WINDOW_START, WINDOW_END)
    mock_client.fetch_statement_transactions.side_effect = [Page(items=[dict(item)])]
    await engine.sync_statement_transactions(connection.id, WINDOW_START, WINDOW_END)

    rows = await record_store.list_statement_transactions(connection.id)
    assert len(rows) == 1
    assert rows[0].transaction_id.startswith("derived:")


"""
3. Error And Retry Tests
"""

async def test_transient_error_is_retried_with_backoff(engine, mock_client, mock_sleep, connection):
    mock_client.fetch_statement_transactions.side_effect = [
        TikTokTransportError("timeout"),
        TikTokAPIError(36009004, "rate limited", retryable_codes=(36009004,)),
        Page(items=[_tx("t1")], next_cursor=None),
    ]

    result = await engine.sync_statement_transactions(connection.id, WINDOW_START, WINDOW_END)

    assert result.pages_fetched == 1
    assert result.errors == []
    assert [call.args[0] for call in mock_sleep.await_args_list] == [1.0, 2.0]


async def test_retries_are_bounded(engine, mock_client, connection):
    mock_client.fetch_statement_transactions.side_effect = TikTokTransportError("down")

    result = await engine.sync_statement_transactions(connection.id, WINDOW_START, WINDOW_END)

    assert mock_client.fetch_statement_transactions.await_count == 4
    assert result.errors[0].kind == "transport"
    assert result.outcome == SyncOutcome.FAILED


async def test_page_error_keeps_earlier_pages(engine, mock_client, record_store, mock_sleep, connection):
    mock_client.fetch_statement_transactions.side_effect = [
        Page(items=[_tx("t1"), _tx("t2")], next_cursor="c1"),
        TikTokAPIError(36009003, "invalid shop"),
    ]

    result = await engine.sync_statement_transactions(connection.id, WINDOW_START, WINDOW_END)

    assert result.pages_fetched == 1
    assert result.records_upserted == 2
    assert len(result.errors) == 1
    assert result.errors[0].page == 2
    assert result.errors[0].kind == "api"
    assert result.errors[0].code == 36009003
    mock_sleep.assert_not_awaited()
    assert await record_store.count_statement_transactions(connection.id) == 2


async def test_parse_error_is_not_retried(engine, mock_client, mock_sleep, connection):
    mock_client.fetch_statement_transactions.side_effect = TikTokParseError("bad", raw="<html>")

    result = await engine.sync_statement_transactions(connection.id, WINDOW_START, WINDOW_END)

    assert mock_client.fetch_statement_transactions.await_count == 1
    assert result.errors[0].kind == "parse"
    mock_sleep.assert_not_awaited()


async def test_expired_authorization_stops_before_fetching(engine, mock_client, mock_token_manager, connection):
    mock_token_manager.get_valid_token.side_effect = TikTokAuthExpiredError(connection.id)

    result = await engine.sync_statement_transactions(connection.id, WINDOW_START, WINDOW_END)

    assert result.reauth_required is True
    assert result.errors[0].kind == "auth_expired"
    mock_client.fetch_statement_transactions.assert_not_awaited()


"""
4. Cancellation Tests
"""

async def test_cancellation_between_pages_keeps_progress(engine, mock_client, record_store, connection):
    cancel_event = asyncio.Event()

    async def fetch(*args):
        cancel_event.set()
        return Page(items=[_tx("t1")], next_cursor="c1")

    mock_client.fetch_statement_transactions.side_effect = fetch

    result = await engine.sync_statement_transactions(
        connection.id, WINDOW_START, WINDOW_END, cancel_event=cancel_event
    )

    assert result.cancelled is True
    assert result.pages_fetched == 1
    assert result.outcome == SyncOutcome.CANCELLED
    assert await record_store.count_statement_transactions(connection.id) == 1


"""
5. Shop Discovery, Settlements And Orders Tests
"""

async def test_missing_cipher_triggers_shop_discovery(
    mock_client, mock_token_manager, credential_store, record_store, make_connection, mock_sleep
):
    shopless = await make_connection(shop_id=None, shop_cipher=None, user_id="user-2")
    mock_token_manager.get_valid_token.return_value = ("tok", shopless)
    mock_client.get_authorized_shops.return_value = [TikTokShop(id="s9", cipher="cipher-9", name="Found")]
    mock_client.fetch_settlements.side_effect = [Page(items=[], next_cursor=None)]
    engine = SyncEngine(mock_token_manager, mock_client, credential_store, record_store, sleep=mock_sleep)

    result = await engine.sync_settlements(shopless.id, WINDOW_START, WINDOW_END)

    assert result.errors == []
    assert mock_client.fetch_settlements.call_args.args[1] == "cipher-9"
    stored = await credential_store.get(shopless.id)
    assert stored.shop_id == "s9"


async def test_no_authorized_shops_is_recorded(
    mock_client, mock_token_manager, credential_store, record_store, make_connection
):
    shopless = await make_connection(shop_id=None, shop_cipher=None, user_id="user-3")
    mock_token_manager.get_valid_token.return_value = ("tok", shopless)
    mock_client.get_authorized_shops.return_value = []
    engine = SyncEngine(mock_token_manager, mock_client, credential_store, record_store)

    result = await engine.sync_orders(shopless.id, WINDOW_START, WINDOW_END)

    assert result.errors[0].kind == "shop_missing"
    mock_client.fetch_orders.assert_not_awaited()


async def test_settlements_are_upserted(engine, mock_client, connection):
    mock_client.fetch_settlements.side_effect = [
        Page(items=[
            {"id": "st1", "settlement_amount": "100.5", "settlement_time": 1704067200, "currency": "USD"},
            {"settlement_amount": "1"},
        ], next_cursor=None),
    ]

    result = await engine.sync_settlements(connection.id, WINDOW_START, WINDOW_END)

    assert result.records_fetched == 2
    assert result.records_upserted == 1


async def test_orders_are_fetched_in_sub_windows(engine, mock_client, connection):
    start = datetime(2024, 1, 1, tzinfo=timezone.utc)
    end = start + timedelta(days=65)
    mock_client.fetch_orders.side_effect = lambda *args: Page(
        items=[{"id": f"o{mock_client.fetch_orders.await_count}", "line_items": [{"quantity": 2, "sale_price": "5.00"}]}]
    )

    result = await engine.sync_orders(connection.id, start, end)

    assert mock_client.fetch_orders.await_count == 3
    windows = [(call.args[2], call.args[3]) for call in mock_client.fetch_orders.call_args_list]
    assert windows[0] == (start, start + timedelta(days=30))
    assert windows[-1][1] == end
    assert result.records_upserted == 3
    assert result.resource == SyncResource.ORDERS


def test_split_window_covers_range_without_gaps():
    start = datetime(2024, 1, 1, tzinfo=timezone.utc)
    end = start + timedelta(days=61)
    windows = list(split_window(start, end, 30))
    assert windows[0][0] == start
    assert windows[-1][1] == end
    assert all(a[1] == b[0] for a, b in zip(windows, windows[1:]))
    assert list(split_window(start, end, None)) == [(start, end)]


async def test_malformed_payment_block_does_not_crash_the_run(engine, mock_client, session_factory, connection):
    mock_client.fetch_orders.side_effect = [
        Page(items=[
            {"id": "o1", "payment": "n/a", "status": "COMPLETED"},
            {"id": "o2", "payment": {"total_amount": "12.00", "currency": "EUR"}},
        ], next_cursor=None),
    ]

    result = await engine.sync_orders(connection.id, WINDOW_START, WINDOW_START + timedelta(days=1))

    assert result.errors == []
    assert result.records_upserted == 2
    async with session_factory() as session:
        orders = {o.order_id: o for o in (await session.execute(select(TikTokOrder))).scalars().all()}
    assert Decimal(str(orders["o1"].total_amount)) == Decimal("0")
    assert orders["o1"].currency == "USD"
    assert orders["o2"].currency == "EUR"


async def test_discovery_merges_pending_connection_into_linked_shop(
    mock_client, mock_token_manager, credential_store, record_store, make_connection, mock_sleep
):
    linked = await make_connection(user_id="user-4", shop_id="s1", shop_cipher="old-cipher")
    pending = await make_connection(
        user_id="user-4", shop_id=None, shop_cipher=None, access_token="fresh-access", refresh_token="fresh-refresh",
    )
    mock_token_manager.get_valid_token.return_value = ("fresh-access", pending)
    mock_client.get_authorized_shops.return_value = [TikTokShop(id="s1", cipher="new-cipher", name="Shop")]
    mock_client.fetch_settlements.side_effect = [Page(items=[{"id": "st1"}], next_cursor=None)]
    engine = SyncEngine(mock_token_manager, mock_client, credential_store, record_store, sleep=mock_sleep)

    result = await engine.sync_settlements(pending.id, WINDOW_START, WINDOW_END)

    assert result.errors == []
    assert result.connection_id == linked.id
    connections = await credential_store.list_for_user("user-4")
    assert [c.id for c in connections] == [linked.id]
    assert connections[0].access_token == "fresh-access"
    assert connections[0].shop_cipher == "new-cipher"
    assert mock_client.fetch_settlements.call_args.args[1] == "new-cipher"


"""
6. Affiliate Orders And Products Tests
"""

async def test_affiliate_orders_are_keyed_on_order_and_type(engine, mock_client, session_factory, connection):
    mock_client.fetch_affiliate_orders.side_effect = [
        Page(items=[
            {"order_id": "a1", "collaboration_type": "OPEN", "estimated_commission": "1.50"},
            {"order_id": "a1", "collaboration_type": "TARGETED", "estimated_commission": "2.00"},
        ], next_cursor="c1"),
        Page(items=[{"order_id": "a1", "collaboration_type": "OPEN", "estimated_commission": "1.75"}]),
    ]

    result = await engine.sync_affiliate_orders(connection.id, WINDOW_START, WINDOW_END)

    assert result.outcome == SyncOutcome.COMPLETE
    async with session_factory() as session:
        rows = (await session.execute(select(TikTokAffiliateOrder))).scalars().all()
    commissions = {(row.order_id, row.affiliate_type): Decimal(str(row.commission_amount)) for row in rows}
    assert commissions == {("a1", "OPEN"): Decimal("1.75"), ("a1", "TARGETED"): Decimal("2.00")}


async def test_affiliate_scope_refusal_is_skipped_not_failed(engine, mock_client, mock_sleep, connection):
    mock_client.fetch_affiliate_orders.side_effect = TikTokAPIError(105005, "scope not granted")

    result = await engine.sync_affiliate_orders(connection.id, WINDOW_START, WINDOW_END)

    assert result.skipped is True
    assert result.errors == []
    assert result.outcome == SyncOutcome.SKIPPED
    mock_sleep.assert_not_awaited()


async def test_affiliate_transport_failure_is_still_an_error(engine, mock_client, connection):
    mock_client.fetch_affiliate_orders.side_effect = TikTokTransportError("down")

    result = await engine.sync_affiliate_orders(connection.id, WINDOW_START, WINDOW_END)

    assert result.skipped is False
    assert result.outcome == SyncOutcome.FAILED


async def test_complete_product_listing_removes_products_no_longer_live(engine, mock_client, record_store, connection):
    mock_client.fetch_products.side_effect = [
        Page(items=[{"id": "p1", "title": "Mug"}, {"id": "p2", "title": "Cap"}], next_cursor=None),
    ]
    await engine.sync_products(connection.id, WINDOW_START, WINDOW_END)

    mock_client.fetch_products.side_effect = [
        Page(items=[{"id": "p1", "title": "Mug v2", "status": "ACTIVATE", "skus": [{"id": "k1"}]}], next_cursor=None),
    ]
    result = await engine.sync_products(connection.id, WINDOW_START, WINDOW_END)

    assert result.records_removed == 1
    products = await record_store.list_products(connection.id)
    assert [(p.product_id, p.product_name) for p in products] == [("p1", "Mug v2")]
    assert products[0].skus == [{"id": "k1"}]


async def test_capped_product_listing_removes_nothing(engine, mock_client, record_store, connection):
    mock_client.fetch_products.side_effect = [
        Page(items=[{"id": "p1"}, {"id": "p2"}, {"id": "p3"}], next_cursor=None),
    ]
    await engine.sync_products(connection.id, WINDOW_START, WINDOW_END)

    mock_client.fetch_products.side_effect = lambda *args: Page(items=[{"id": "p1"}], next_cursor="more")
    result = await engine.sync_products(connection.id, WINDOW_START, WINDOW_END, page_cap=1)

    assert result.outcome == SyncOutcome.PARTIAL
    assert result.records_removed == 0
    assert len(await record_store.list_products(connection.id)) == 3
