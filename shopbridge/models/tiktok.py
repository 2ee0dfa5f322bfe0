# shopbridge/models/tiktok.py
import uuid

from sqlalchemy import (
    Column,
    Integer,
    String,
    Numeric,
    DateTime,
    Boolean,
    JSON,
    ForeignKey,
    Text,
    UniqueConstraint,
)

from shopbridge.database import Base
from shopbridge.core.enums import ConnectionSyncStatus
from shopbridge.core.utils import utcnow


def _new_id() -> str:
    return str(uuid.uuid4())


class TikTokConnection(Base):
    """
    One authorization linking a member to a TikTok Shop.

    Updated in place on every token refresh and keyed on (user_id, shop_id) so
    re-authorizing the same shop never creates a second row. The sync path
    never deletes connections.
    """
    __tablename__ = "tiktok_connections"
    __table_args__ = (
        UniqueConstraint("user_id", "shop_id", name="uq_tiktok_connections_user_shop"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String, nullable=False, index=True)

    # Shop identity - empty until the shop list call succeeds
    shop_id = Column(String, nullable=True)
    shop_cipher = Column(String, nullable=True)
    shop_name = Column(String, nullable=True)
    region = Column(String, nullable=True)

    # Credentials
    access_token = Column(Text, nullable=True)
    token_expires_at = Column(DateTime(timezone=True), nullable=True)
    refresh_token = Column(Text, nullable=True)
    refresh_token_expires_at = Column(DateTime(timezone=True), nullable=True)

    # Bookkeeping
    connected_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    sync_status = Column(String, nullable=False, default=ConnectionSyncStatus.IDLE.value, index=True)
    sync_error = Column(Text, nullable=True)       # operator-facing detail
    sync_error_kind = Column(String, nullable=True)  # member-facing category
    last_sync_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return (f"<TikTokConnection(id={self.id}, user_id='{self.user_id}', shop_id='{self.shop_id}', "
                f"sync_status='{self.sync_status}')>")


class TikTokStatementTransaction(Base):
    """A finance statement line pulled from the platform."""
    __tablename__ = "tiktok_statement_transactions"
    __table_args__ = (
        UniqueConstraint("connection_id", "transaction_id", name="uq_tiktok_statement_tx"),
    )

    id = Column(Integer, primary_key=True, index=True)
    connection_id = Column(String(36), ForeignKey("tiktok_connections.id"), nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    transaction_id = Column(String, nullable=False)

    # Open-ended category; "unknown" is a valid value
    transaction_type = Column(String, nullable=False, index=True)
    amount = Column(Numeric(18, 4), nullable=False, default=0)
    currency = Column(String, nullable=True)
    order_id = Column(String, nullable=True, index=True)
    occurred_at = Column(DateTime(timezone=True), nullable=True)

    raw_data = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class TikTokSettlement(Base):
    __tablename__ = "tiktok_settlements"
    __table_args__ = (
        UniqueConstraint("connection_id", "settlement_id", name="uq_tiktok_settlement"),
    )

    id = Column(Integer, primary_key=True, index=True)
    connection_id = Column(String(36), ForeignKey("tiktok_connections.id"), nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    settlement_id = Column(String, nullable=False)
    settlement_time = Column(DateTime(timezone=True), nullable=True)
    settlement_amount = Column(Numeric(18, 4), default=0)
    revenue = Column(Numeric(18, 4), default=0)
    platform_fee = Column(Numeric(18, 4), default=0)
    affiliate_commission = Column(Numeric(18, 4), default=0)
    shipping_fee_subsidy = Column(Numeric(18, 4), default=0)
    refund_amount = Column(Numeric(18, 4), default=0)
    adjustment = Column(Numeric(18, 4), default=0)
    currency = Column(String, default="USD")
    raw_data = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class TikTokOrder(Base):
    __tablename__ = "tiktok_orders"
    __table_args__ = (
        UniqueConstraint("connection_id", "order_id", name="uq_tiktok_order"),
    )

    id = Column(Integer, primary_key=True, index=True)
    connection_id = Column(String(36), ForeignKey("tiktok_connections.id"), nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    order_id = Column(String, nullable=False)
    order_status = Column(String)
    payment_status = Column(String)
    total_amount = Column(Numeric(18, 4), default=0)
    subtotal = Column(Numeric(18, 4), default=0)
    gmv = Column(Numeric(18, 4), default=0)
    shipping_fee = Column(Numeric(18, 4), default=0)
    platform_discount = Column(Numeric(18, 4), default=0)
    seller_discount = Column(Numeric(18, 4), default=0)
    refund_amount = Column(Numeric(18, 4), default=0)
    currency = Column(String, default="USD")
    order_create_time = Column(DateTime(timezone=True), nullable=True)
    order_paid_time = Column(DateTime(timezone=True), nullable=True)
    items = Column(JSON, nullable=False, default=list)
    raw_data = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class TikTokAffiliateOrder(Base):
    """Creator-driven order with its commission; one row per collaboration type."""
    __tablename__ = "tiktok_affiliate_orders"
    __table_args__ = (
        UniqueConstraint("connection_id", "order_id", "affiliate_type", name="uq_tiktok_affiliate_order"),
    )

    id = Column(Integer, primary_key=True, index=True)
    connection_id = Column(String(36), ForeignKey("tiktok_connections.id"), nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    order_id = Column(String, nullable=False)
    affiliate_type = Column(String, nullable=False)
    commission_rate = Column(Numeric(18, 4), default=0)
    commission_amount = Column(Numeric(18, 4), default=0)
    order_amount = Column(Numeric(18, 4), default=0)
    product_id = Column(String, nullable=True)
    product_name = Column(String, nullable=True)
    creator_username = Column(String, nullable=True)
    order_create_time = Column(DateTime(timezone=True), nullable=True)
    raw_data = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class TikTokProduct(Base):
    """
    A live listing in the shop catalogue.
    Rows for products that drop out of a complete listing are removed.
    """
    __tablename__ = "tiktok_products"
    __table_args__ = (
        UniqueConstraint("connection_id", "product_id", name="uq_tiktok_product"),
    )

    id = Column(Integer, primary_key=True, index=True)
    connection_id = Column(String(36), ForeignKey("tiktok_connections.id"), nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    product_id = Column(String, nullable=False)
    product_name = Column(String, nullable=True)
    product_status = Column(String, nullable=True)
    skus = Column(JSON, nullable=False, default=list)
    raw_data = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class TikTokSyncRun(Base):
    """
    Audit row for one bounded sync run.
    Kept even for failed and partial runs so operators can see what happened.
    """
    __tablename__ = "tiktok_sync_runs"

    id = Column(Integer, primary_key=True, index=True)
    connection_id = Column(String(36), ForeignKey("tiktok_connections.id"), nullable=False, index=True)
    resource = Column(String, nullable=False)
    outcome = Column(String, nullable=False, index=True)
    window_start = Column(DateTime(timezone=True), nullable=True)
    window_end = Column(DateTime(timezone=True), nullable=True)
    pages_fetched = Column(Integer, nullable=False, default=0)
    records_fetched = Column(Integer, nullable=False, default=0)
    records_upserted = Column(Integer, nullable=False, default=0)
    page_cap_reached = Column(Boolean, nullable=False, default=False)
    by_type = Column(JSON, nullable=False, default=dict)
    errors = Column(JSON, nullable=False, default=list)
    started_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    finished_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return (f"<TikTokSyncRun(id={self.id}, connection_id={self.connection_id}, "
                f"resource='{self.resource}', outcome='{self.outcome}')>")
