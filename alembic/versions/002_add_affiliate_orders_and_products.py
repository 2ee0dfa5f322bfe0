# alembic/versions/002_add_affiliate_orders_and_products.py

"""add affiliate orders and products

Revision ID: 002_affiliate_orders_products
Revises: 001_create_tiktok_tables
Create Date: 2026-10-18 14:03:51.402117

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '002_affiliate_orders_products'
down_revision: Union[str, None] = '001_create_tiktok_tables'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'tiktok_affiliate_orders',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('connection_id', sa.String(length=36), sa.ForeignKey('tiktok_connections.id'), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('order_id', sa.String(), nullable=False),
        sa.Column('affiliate_type', sa.String(), nullable=False),
        sa.Column('commission_rate', sa.Numeric(18, 4), nullable=True),
        sa.Column('commission_amount', sa.Numeric(18, 4), nullable=True),
        sa.Column('order_amount', sa.Numeric(18, 4), nullable=True),
        sa.Column('product_id', sa.String(), nullable=True),
        sa.Column('product_name', sa.String(), nullable=True),
        sa.Column('creator_username', sa.String(), nullable=True),
        sa.Column('order_create_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('raw_data', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('connection_id', 'order_id', 'affiliate_type', name='uq_tiktok_affiliate_order'),
    )
    op.create_index('ix_tiktok_affiliate_orders_connection_id', 'tiktok_affiliate_orders', ['connection_id'])
    op.create_index('ix_tiktok_affiliate_orders_user_id', 'tiktok_affiliate_orders', ['user_id'])

    op.create_table(
        'tiktok_products',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('connection_id', sa.String(length=36), sa.ForeignKey('tiktok_connections.id'), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('product_id', sa.String(), nullable=False),
        sa.Column('product_name', sa.String(), nullable=True),
        sa.Column('product_status', sa.String(), nullable=True),
        sa.Column('skus', sa.JSON(), nullable=False),
        sa.Column('raw_data', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('connection_id', 'product_id', name='uq_tiktok_product'),
    )
    op.create_index('ix_tiktok_products_connection_id', 'tiktok_products', ['connection_id'])
    op.create_index('ix_tiktok_products_user_id', 'tiktok_products', ['user_id'])


def downgrade() -> None:
    op.drop_index('ix_tiktok_products_user_id', table_name='tiktok_products')
    op.drop_index('ix_tiktok_products_connection_id', table_name='tiktok_products')
    op.drop_table('tiktok_products')
    op.drop_index('ix_tiktok_affiliate_orders_user_id', table_name='tiktok_affiliate_orders')
    op.drop_index('ix_tiktok_affiliate_orders_connection_id', table_name='tiktok_affiliate_orders')
    op.drop_table('tiktok_affiliate_orders')
