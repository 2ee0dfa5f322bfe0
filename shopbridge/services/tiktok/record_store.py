import logging
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import delete, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shopbridge.core.utils import from_unix, to_decimal, utcnow
from shopbridge.models.tiktok import (
    TikTokAffiliateOrder,
    TikTokConnection,
    TikTokOrder,
    TikTokProduct,
    TikTokSettlement,
    TikTokStatementTransaction,
    TikTokSyncRun,
)
from shopbridge.schemas.tiktok import StatementTransaction, SyncResult

logger = logging.getLogger(__name__)


def _insert_for(session: AsyncSession):
    """ON CONFLICT capable insert for the session's dialect"""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert
    if dialect == "sqlite":
        return sqlite_insert
    raise NotImplementedError(f"Upsert not supported for dialect {dialect}")


def _money(value: Any) -> Decimal:
    return to_decimal(value) or Decimal("0")


def calculate_gmv(order: Dict[str, Any]) -> Decimal:
    """Sum of quantity x sale price over the order's line items"""
    line_items = order.get("line_items") or order.get("order_line_list") or []
    gmv = Decimal("0")
    for item in line_items:
        if not isinstance(item, dict):
            continue
        quantity = to_decimal(item.get("quantity")) or Decimal("1")
        price = None
        for field in ("sale_price", "sku_sale_price", "original_price", "item_price"):
            price = to_decimal(item.get(field))
            if price is not None:
                break
        gmv += quantity * (price or Decimal("0"))
    return gmv


class TikTokRecordStore:
    """
    Local storage for synced platform records.

    Every write is an upsert on (connection_id, platform id), so re-running a
    sync over the same window leaves the same set of rows behind.
    """

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def _upsert(self, model, rows: List[Dict[str, Any]], *keys: str) -> int:
        if not rows:
            return 0
        conflict_keys: Sequence[str] = ("connection_id",) + keys
        # One row per key; the database rejects touching the same row twice in one statement
        unique_rows = list({tuple(row[k] for k in conflict_keys): row for row in rows}.values())
        async with self.session_factory() as session:
            async with session.begin():
                insert = _insert_for(session)
                stmt = insert(model).values(unique_rows)
                update_columns = {
                    column: stmt.excluded[column]
                    for column in unique_rows[0].keys()
                    if column not in conflict_keys
                }
                update_columns["updated_at"] = utcnow()
                stmt = stmt.on_conflict_do_update(
                    index_elements=list(conflict_keys),
                    set_=update_columns,
                )
                await session.execute(stmt)
        return len(unique_rows)

    async def upsert_statement_transactions(
        self,
        connection: TikTokConnection,
        transactions: Iterable[StatementTransaction],
    ) -> int:
        rows = [
            {
                "connection_id": connection.id,
                "user_id": connection.user_id,
                "transaction_id": tx.transaction_id,
                "transaction_type": tx.transaction_type,
                "amount": tx.amount,
                "currency": tx.currency,
                "order_id": tx.order_id,
                "occurred_at": tx.occurred_at,
                "raw_data": tx.raw,
            }
            for tx in transactions
        ]
        return await self._upsert(TikTokStatementTransaction, rows, "transaction_id")

    async def upsert_settlements(self, connection: TikTokConnection, settlements: Iterable[Dict[str, Any]]) -> int:
        rows = []
        for settlement in settlements:
            settlement_id = settlement.get("id") or settlement.get("settlement_id")
            if not settlement_id:
                logger.warning(f"Skipping settlement without id for connection {connection.id}: {settlement}")
                continue
            rows.append({
                "connection_id": connection.id,
                "user_id": connection.user_id,
                "settlement_id": str(settlement_id),
                "settlement_time": from_unix(settlement.get("settlement_time")),
                "settlement_amount": _money(settlement.get("settlement_amount")),
                "revenue": _money(settlement.get("revenue")),
                "platform_fee": _money(settlement.get("platform_fee")),
                "affiliate_commission": _money(settlement.get("affiliate_commission")),
                "shipping_fee_subsidy": _money(settlement.get("shipping_fee_subsidy")),
                "refund_amount": _money(settlement.get("refund_amount")),
                "adjustment": _money(settlement.get("adjustment")),
                "currency": settlement.get("currency") or "USD",
                "raw_data": settlement,
            })
        return await self._upsert(TikTokSettlement, rows, "settlement_id")

    async def upsert_orders(self, connection: TikTokConnection, orders: Iterable[Dict[str, Any]]) -> int:
        rows = []
        for order in orders:
            order_id = order.get("id") or order.get("order_id")
            if not order_id:
                logger.warning(f"Skipping order without id for connection {connection.id}")
                continue
            payment = order.get("payment")
            if not isinstance(payment, dict):
                payment = {}
            line_items = order.get("line_items") or order.get("order_line_list") or []
            rows.append({
                "connection_id": connection.id,
                "user_id": connection.user_id,
                "order_id": str(order_id),
                "order_status": order.get("status"),
                "payment_status": payment.get("status"),
                "total_amount": _money(payment.get("total_amount")),
                "subtotal": _money(payment.get("sub_total")),
                "gmv": calculate_gmv(order),
                "shipping_fee": _money(payment.get("shipping_fee")),
                "platform_discount": _money(payment.get("platform_discount")),
                "seller_discount": _money(payment.get("seller_discount")),
                "refund_amount": _money(order.get("refund_amount")),
                "currency": payment.get("currency") or "USD",
                "order_create_time": from_unix(order.get("create_time")),
                "order_paid_time": from_unix(order.get("paid_time")),
                "items": [
                    {
                        "product_id": item.get("product_id"),
                        "product_name": item.get("product_name"),
                        "sku_id": item.get("sku_id"),
                        "sku_name": item.get("sku_name"),
                        "quantity": item.get("quantity"),
                        "price": item.get("sale_price") or item.get("original_price"),
                    }
                    for item in line_items if isinstance(item, dict)
                ],
                "raw_data": order,
            })
        return await self._upsert(TikTokOrder, rows, "order_id")

    async def upsert_affiliate_orders(self, connection: TikTokConnection, orders: Iterable[Dict[str, Any]]) -> int:
        rows = []
        for order in orders:
            order_id = order.get("order_id") or order.get("id")
            if not order_id:
                logger.warning(f"Skipping affiliate order without id for connection {connection.id}")
                continue
            rows.append({
                "connection_id": connection.id,
                "user_id": connection.user_id,
                "order_id": str(order_id),
                "affiliate_type": str(order.get("collaboration_type") or "unknown"),
                "commission_rate": _money(order.get("commission_rate")),
                "commission_amount": _money(order.get("estimated_commission")),
                "order_amount": _money(order.get("total_payment_amount")),
                "product_id": str(order["product_id"]) if order.get("product_id") else None,
                "product_name": order.get("product_name"),
                "creator_username": order.get("creator_username"),
                "order_create_time": from_unix(order.get("create_time")),
                "raw_data": order,
            })
        return await self._upsert(TikTokAffiliateOrder, rows, "order_id", "affiliate_type")

    async def upsert_products(self, connection: TikTokConnection, products: Iterable[Dict[str, Any]]) -> int:
        rows = []
        for product in products:
            product_id = product.get("id") or product.get("product_id")
            if not product_id:
                logger.warning(f"Skipping product without id for connection {connection.id}")
                continue
            skus = product.get("skus")
            rows.append({
                "connection_id": connection.id,
                "user_id": connection.user_id,
                "product_id": str(product_id),
                "product_name": product.get("title") or product.get("product_name"),
                "product_status": product.get("status"),
                "skus": skus if isinstance(skus, list) else [],
                "raw_data": product,
            })
        return await self._upsert(TikTokProduct, rows, "product_id")

    async def remove_stale_products(self, connection_id: str, live_product_ids: Iterable[str]) -> int:
        """Delete products not in a complete listing of the shop; returns how many went"""
        live = {str(product_id) for product_id in live_product_ids}
        async with self.session_factory() as session:
            async with session.begin():
                stale = await session.execute(
                    select(TikTokProduct.id, TikTokProduct.product_id)
                    .where(TikTokProduct.connection_id == connection_id)
                )
                stale_ids = [row.id for row in stale if row.product_id not in live]
                if stale_ids:
                    await session.execute(delete(TikTokProduct).where(TikTokProduct.id.in_(stale_ids)))
        if stale_ids:
            logger.info(f"Removed {len(stale_ids)} products no longer live for connection {connection_id}")
        return len(stale_ids)

    async def list_products(self, connection_id: str) -> List[TikTokProduct]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(TikTokProduct)
                .where(TikTokProduct.connection_id == connection_id)
                .order_by(TikTokProduct.product_id)
            )
            return list(result.scalars().all())

    async def record_sync_run(self, result: SyncResult, started_at: Optional[Any] = None) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                session.add(TikTokSyncRun(
                    connection_id=result.connection_id,
                    resource=result.resource.value,
                    outcome=result.outcome.value,
                    window_start=result.window_start,
                    window_end=result.window_end,
                    pages_fetched=result.pages_fetched,
                    records_fetched=result.records_fetched,
                    records_upserted=result.records_upserted,
                    page_cap_reached=result.page_cap_reached,
                    by_type={
                        name: {"count": agg.count, "total_amount": str(agg.total_amount)}
                        for name, agg in result.by_type.items()
                    },
                    errors=[error.model_dump() for error in result.errors],
                    started_at=started_at or utcnow(),
                    finished_at=utcnow(),
                ))

    async def count_statement_transactions(self, connection_id: str) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                select(func.count())
                .select_from(TikTokStatementTransaction)
                .where(TikTokStatementTransaction.connection_id == connection_id)
            )
            return int(result.scalar_one())

    async def list_statement_transactions(self, connection_id: str) -> List[TikTokStatementTransaction]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(TikTokStatementTransaction)
                .where(TikTokStatementTransaction.connection_id == connection_id)
                .order_by(TikTokStatementTransaction.transaction_id)
            )
            return list(result.scalars().all())
