"""Create connector tables: catalog, customers, orders, sync jobs and sync log

Revision ID: storesync_initial_001
Revises:
Create Date: 2026-10-18

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision = 'storesync_initial_001'
down_revision = None
branch_labels = None
depends_on = None


def _json():
    return sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), 'postgresql')


def _sync_columns():
    return [
        sa.Column('platform_id', sa.String(length=64), nullable=True, unique=True),
        sa.Column('sync_status', sa.String(length=16), nullable=False, server_default='PENDING'),
        sa.Column('last_sync_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade():
    conn = op.get_bind()
    inspector = inspect(conn)
    tables = set(inspector.get_table_names())

    if 'categories' not in tables:
        op.create_table(
            'categories',
            sa.Column('id', sa.String(length=36), primary_key=True),
            sa.Column('name', sa.String(length=255), nullable=False),
            sa.Column('slug', sa.String(length=255), nullable=False, unique=True),
            sa.Column('description', sa.Text(), nullable=True),
            sa.Column('parent_id', sa.String(length=36),
                      sa.ForeignKey('categories.id', ondelete='SET NULL'), nullable=True),
            *_sync_columns(),
        )
        op.create_index('idx_categories_parent', 'categories', ['parent_id'])

    if 'shipping_classes' not in tables:
        op.create_table(
            'shipping_classes',
            sa.Column('id', sa.String(length=36), primary_key=True),
            sa.Column('name', sa.String(length=255), nullable=False),
            sa.Column('slug', sa.String(length=255), nullable=False, unique=True),
            sa.Column('description', sa.Text(), nullable=True),
            *_sync_columns(),
        )

    if 'customers' not in tables:
        op.create_table(
            'customers',
            sa.Column('id', sa.String(length=36), primary_key=True),
            sa.Column('code', sa.String(length=32), nullable=False, unique=True),
            sa.Column('customer_type', sa.String(length=8), nullable=False, server_default='B2C'),
            sa.Column('first_name', sa.String(length=255), nullable=True),
            sa.Column('last_name', sa.String(length=255), nullable=True),
            sa.Column('business_name', sa.String(length=255), nullable=True),
            sa.Column('email', sa.String(length=255), nullable=True),
            sa.Column('phone', sa.String(length=64), nullable=True),
            sa.Column('billing_address', _json(), nullable=True),
            sa.Column('shipping_address', _json(), nullable=True),
            *_sync_columns(),
        )
        op.create_index('idx_customers_email', 'customers', ['email'])

    if 'products' not in tables:
        op.create_table(
            'products',
            sa.Column('id', sa.String(length=36), primary_key=True),
            sa.Column('sku', sa.String(length=128), nullable=False, unique=True),
            sa.Column('name', sa.String(length=500), nullable=False),
            sa.Column('description', sa.Text(), nullable=True),
            sa.Column('short_description', sa.Text(), nullable=True),
            sa.Column('price', sa.Numeric(12, 2), nullable=False, server_default='0'),
            sa.Column('regular_price', sa.Numeric(12, 2), nullable=True),
            sa.Column('sale_price', sa.Numeric(12, 2), nullable=True),
            sa.Column('weight', sa.Numeric(10, 3), nullable=True),
            sa.Column('stock_quantity', sa.Integer(), nullable=True),
            sa.Column('category_id', sa.String(length=36),
                      sa.ForeignKey('categories.id', ondelete='SET NULL'), nullable=True),
            sa.Column('shipping_class_id', sa.String(length=36),
                      sa.ForeignKey('shipping_classes.id', ondelete='SET NULL'), nullable=True),
            sa.Column('web_active', sa.Boolean(), nullable=False, server_default=sa.false()),
            *_sync_columns(),
        )
        op.create_index('idx_products_category', 'products', ['category_id'])

    if 'orders' not in tables:
        op.create_table(
            'orders',
            sa.Column('id', sa.String(length=36), primary_key=True),
            sa.Column('order_number', sa.String(length=64), nullable=False, unique=True),
            sa.Column('customer_id', sa.String(length=36), sa.ForeignKey('customers.id'), nullable=False),
            sa.Column('source', sa.String(length=32), nullable=False, server_default='PLATFORM'),
            sa.Column('status', sa.String(length=32), nullable=False, server_default='PENDING'),
            sa.Column('platform_status', sa.String(length=32), nullable=True),
            sa.Column('payment_status', sa.String(length=32), nullable=False, server_default='pending'),
            sa.Column('payment_method', sa.String(length=128), nullable=True),
            sa.Column('subtotal', sa.Numeric(12, 2), nullable=False, server_default='0'),
            sa.Column('discount', sa.Numeric(12, 2), nullable=False, server_default='0'),
            sa.Column('tax', sa.Numeric(12, 2), nullable=False, server_default='0'),
            sa.Column('shipping', sa.Numeric(12, 2), nullable=False, server_default='0'),
            sa.Column('total', sa.Numeric(12, 2), nullable=False, server_default='0'),
            sa.Column('currency', sa.String(length=8), nullable=False, server_default='EUR'),
            sa.Column('billing_address', _json(), nullable=True),
            sa.Column('shipping_address', _json(), nullable=True),
            sa.Column('customer_note', sa.Text(), nullable=True),
            sa.Column('order_date', sa.DateTime(timezone=True), nullable=True),
            *_sync_columns(),
        )
        op.create_index('idx_orders_customer', 'orders', ['customer_id'])
        op.create_index('idx_orders_status', 'orders', ['status'])

    if 'order_items' not in tables:
        op.create_table(
            'order_items',
            sa.Column('id', sa.String(length=36), primary_key=True),
            sa.Column('order_id', sa.String(length=36),
                      sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False),
            sa.Column('product_id', sa.String(length=36), sa.ForeignKey('products.id'), nullable=True),
            sa.Column('product_name', sa.String(length=500), nullable=False),
            sa.Column('sku', sa.String(length=128), nullable=True),
            sa.Column('quantity', sa.Integer(), nullable=False, server_default='1'),
            sa.Column('unit_price', sa.Numeric(12, 2), nullable=False, server_default='0'),
            sa.Column('subtotal', sa.Numeric(12, 2), nullable=False, server_default='0'),
            sa.Column('tax', sa.Numeric(12, 2), nullable=False, server_default='0'),
            sa.Column('total', sa.Numeric(12, 2), nullable=False, server_default='0'),
            sa.Column('platform_line_item_id', sa.String(length=64), nullable=True),
        )
        op.create_index('idx_order_items_order', 'order_items', ['order_id'])

    if 'connector_settings' not in tables:
        op.create_table(
            'connector_settings',
            sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column('base_url', sa.String(length=500), nullable=True),
            sa.Column('consumer_key', sa.String(length=255), nullable=True),
            sa.Column('consumer_secret', sa.Text(), nullable=True),
            sa.Column('webhook_secret', sa.Text(), nullable=True),
            sa.Column('sync_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        )

    if 'sync_jobs' not in tables:
        op.create_table(
            'sync_jobs',
            sa.Column('id', sa.String(length=36), primary_key=True),
            sa.Column('kind', sa.String(length=32), nullable=False),
            sa.Column('status', sa.String(length=32), nullable=False),
            sa.Column('current_page', sa.Integer(), nullable=False, server_default='1'),
            sa.Column('total_pages', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('total_items', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('imported_count', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('updated_count', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('error_count', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('error_log', _json(), nullable=True),
            sa.Column('started_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.Column('paused_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('resumed_from_job_id', sa.String(length=36),
                      sa.ForeignKey('sync_jobs.id', ondelete='SET NULL'), nullable=True),
            sa.Column('created_by', sa.String(length=255), nullable=True),
            sa.Column('result_json', _json(), nullable=True),
            sa.Column('failure_reason', sa.Text(), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        )
        op.create_index('idx_sync_jobs_kind_status', 'sync_jobs', ['kind', 'status'])
        op.create_index('idx_sync_jobs_created', 'sync_jobs', ['created_at'])

    if 'sync_log_entries' not in tables:
        op.create_table(
            'sync_log_entries',
            sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column('direction', sa.String(length=16), nullable=False),
            sa.Column('entity_type', sa.String(length=32), nullable=False),
            sa.Column('entity_id', sa.String(length=64), nullable=True),
            sa.Column('action', sa.String(length=16), nullable=False),
            sa.Column('outcome', sa.String(length=16), nullable=False),
            sa.Column('request_snapshot', _json(), nullable=True),
            sa.Column('response_snapshot', _json(), nullable=True),
            sa.Column('error', sa.Text(), nullable=True),
            sa.Column('duration_ms', sa.Integer(), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        )
        op.create_index('idx_sync_log_entity', 'sync_log_entries', ['entity_type', 'entity_id'])
        op.create_index('idx_sync_log_outcome', 'sync_log_entries', ['outcome'])
        op.create_index('idx_sync_log_created', 'sync_log_entries', ['created_at'])


def downgrade():
    conn = op.get_bind()
    inspector = inspect(conn)
    tables = set(inspector.get_table_names())

    for table in (
        'sync_log_entries',
        'sync_jobs',
        'connector_settings',
        'order_items',
        'orders',
        'products',
        'customers',
        'shipping_classes',
        'categories',
    ):
        if table in tables:
            op.drop_table(table)
