# alembic/versions/001_create_tiktok_tables.py

"""create tiktok tables

Revision ID: 001_create_tiktok_tables
Revises:
Create Date: 2026-10-18 09:12:40.118310

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001_create_tiktok_tables'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        'tiktok_connections',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('shop_id', sa.String(), nullable=True),
        sa.Column('shop_cipher', sa.String(), nullable=True),
        sa.Column('shop_name', sa.String(), nullable=True),
        sa.Column('region', sa.String(), nullable=True),
        sa.Column('access_token', sa.Text(), nullable=True),
        sa.Column('token_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('refresh_token', sa.Text(), nullable=True),
        sa.Column('refresh_token_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('connected_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('sync_status', sa.String(), nullable=False, server_default='idle'),
        sa.Column('sync_error', sa.Text(), nullable=True),
        sa.Column('sync_error_kind', sa.String(), nullable=True),
        sa.Column('last_sync_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'shop_id', name='uq_tiktok_connections_user_shop'),
    )
    op.create_index('ix_tiktok_connections_user_id', 'tiktok_connections', ['user_id'])
    op.create_index('ix_tiktok_connections_sync_status', 'tiktok_connections', ['sync_status'])

    op.create_table(
        'tiktok_statement_transactions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('connection_id', sa.String(length=36), sa.ForeignKey('tiktok_connections.id'), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('transaction_id', sa.String(), nullable=False),
        sa.Column('transaction_type', sa.String(), nullable=False),
        sa.Column('amount', sa.Numeric(18, 4), nullable=False),
        sa.Column('currency', sa.String(), nullable=True),
        sa.Column('order_id', sa.String(), nullable=True),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('raw_data', sa.JSON(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('connection_id', 'transaction_id', name='uq_tiktok_statement_tx'),
    )
    op.create_index('ix_tiktok_statement_transactions_connection_id', 'tiktok_statement_transactions', ['connection_id'])
    op.create_index('ix_tiktok_statement_transactions_user_id', 'tiktok_statement_transactions', ['user_id'])
    op.create_index('ix_tiktok_statement_transactions_transaction_type', 'tiktok_statement_transactions', ['transaction_type'])
    op.create_index('ix_tiktok_statement_transactions_order_id', 'tiktok_statement_transactions', ['order_id'])

    op.create_table(
        'tiktok_settlements',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('connection_id', sa.String(length=36), sa.ForeignKey('tiktok_connections.id'), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('settlement_id', sa.String(), nullable=False),
        sa.Column('settlement_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('settlement_amount', sa.Numeric(18, 4), nullable=True),
        sa.Column('revenue', sa.Numeric(18, 4), nullable=True),
        sa.Column('platform_fee', sa.Numeric(18, 4), nullable=True),
        sa.Column('affiliate_commission', sa.Numeric(18, 4), nullable=True),
        sa.Column('shipping_fee_subsidy', sa.Numeric(18, 4), nullable=True),
        sa.Column('refund_amount', sa.Numeric(18, 4), nullable=True),
        sa.Column('adjustment', sa.Numeric(18, 4), nullable=True),
        sa.Column('currency', sa.String(), nullable=True),
        sa.Column('raw_data', sa.JSON(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('connection_id', 'settlement_id', name='uq_tiktok_settlement'),
    )
    op.create_index('ix_tiktok_settlements_connection_id', 'tiktok_settlements', ['connection_id'])
    op.create_index('ix_tiktok_settlements_user_id', 'tiktok_settlements', ['user_id'])

    op.create_table(
        'tiktok_orders',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('connection_id', sa.String(length=36), sa.ForeignKey('tiktok_connections.id'), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('order_id', sa.String(), nullable=False),
        sa.Column('order_status', sa.String(), nullable=True),
        sa.Column('payment_status', sa.String(), nullable=True),
        sa.Column('total_amount', sa.Numeric(18, 4), nullable=True),
        sa.Column('subtotal', sa.Numeric(18, 4), nullable=True),
        sa.Column('gmv', sa.Numeric(18, 4), nullable=True),
        sa.Column('shipping_fee', sa.Numeric(18, 4), nullable=True),
        sa.Column('platform_discount', sa.Numeric(18, 4), nullable=True),
        sa.Column('seller_discount', sa.Numeric(18, 4), nullable=True),
        sa.Column('refund_amount', sa.Numeric(18, 4), nullable=True),
        sa.Column('currency', sa.String(), nullable=True),
        sa.Column('order_create_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('order_paid_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('items', sa.JSON(), nullable=False),
        sa.Column('raw_data', sa.JSON(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('connection_id', 'order_id', name='uq_tiktok_order'),
    )
    op.create_index('ix_tiktok_orders_connection_id', 'tiktok_orders', ['connection_id'])
    op.create_index('ix_tiktok_orders_user_id', 'tiktok_orders', ['user_id'])

    op.create_table(
        'tiktok_sync_runs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('connection_id', sa.String(length=36), sa.ForeignKey('tiktok_connections.id'), nullable=False),
        sa.Column('resource', sa.String(), nullable=False),
        sa.Column('outcome', sa.String(), nullable=False),
        sa.Column('window_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('window_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('pages_fetched', sa.Integer(), nullable=False),
        sa.Column('records_fetched', sa.Integer(), nullable=False),
        sa.Column('records_upserted', sa.Integer(), nullable=False),
        sa.Column('page_cap_reached', sa.Boolean(), nullable=False),
        sa.Column('by_type', sa.JSON(), nullable=False),
        sa.Column('errors', sa.JSON(), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('finished_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_tiktok_sync_runs_connection_id', 'tiktok_sync_runs', ['connection_id'])
    op.create_index('ix_tiktok_sync_runs_outcome', 'tiktok_sync_runs', ['outcome'])


def downgrade() -> None:
    op.drop_table('tiktok_sync_runs')
    op.drop_table('tiktok_orders')
    op.drop_table('tiktok_settlements')
    op.drop_table('tiktok_statement_transactions')
    op.drop_table('tiktok_connections')
