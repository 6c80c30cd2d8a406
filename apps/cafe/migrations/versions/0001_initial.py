from alembic import op
import sqlalchemy as sa
import os

# revision identifiers, used by Alembic.
revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None


def _schema():
    url = os.getenv('CAFE_DB_URL') or os.getenv('DB_URL') or ''
    return None if url.startswith('sqlite') else os.getenv('DB_SCHEMA')


def upgrade() -> None:
    schema = _schema()
    now = sa.text('CURRENT_TIMESTAMP')
    op.create_table(
        'products',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.Column('category', sa.String(length=64), nullable=True),
        sa.Column('price_cents', sa.BigInteger(), nullable=False),
        sa.Column('stock', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('min_stock', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=now),
        sa.CheckConstraint('stock >= 0', name='ck_products_stock_nonneg'),
        schema=schema
    )
    op.create_table(
        'orders',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('order_number', sa.String(length=32), nullable=False, unique=True),
        sa.Column('business_day', sa.Date(), nullable=False),
        sa.Column('sequence_no', sa.Integer(), nullable=False),
        sa.Column('order_type', sa.String(length=16), nullable=False),
        sa.Column('table_number', sa.Integer(), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('payment_status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('payment_method', sa.String(length=32), nullable=True),
        sa.Column('subtotal_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('tax_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=now),
        sa.Column('taken_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('prepared_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('served_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancel_reason', sa.String(length=255), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=now),
        sa.Column('version_id', sa.Integer(), nullable=False),
        sa.UniqueConstraint('business_day', 'sequence_no', name='uq_orders_day_sequence'),
        schema=schema
    )
    op.create_index('ix_orders_business_day', 'orders', ['business_day'], schema=schema)
    op.create_index('ix_orders_status', 'orders', ['status'], schema=schema)
    op.create_index('ix_orders_created_at', 'orders', ['created_at'], schema=schema)
    op.create_table(
        'order_items',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('order_id', sa.String(length=36), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('product_name', sa.String(length=200), nullable=False),
        sa.Column('unit_price_cents', sa.BigInteger(), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('line_total_cents', sa.BigInteger(), nullable=False),
        sa.Column('kitchen_status', sa.String(length=16), nullable=False, server_default='queued'),
        sa.Column('reserved_qty', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('notes', sa.String(length=255), nullable=True),
        sa.ForeignKeyConstraint(['order_id'], [f"{schema}.orders.id" if schema else 'orders.id']),
        sa.CheckConstraint('quantity > 0', name='ck_order_items_quantity_pos'),
        schema=schema
    )
    op.create_index('ix_order_items_order_id', 'order_items', ['order_id'], schema=schema)
    op.create_table(
        'app_settings',
        sa.Column('key', sa.String(length=100), primary_key=True),
        sa.Column('value', sa.Text(), nullable=False),
        sa.Column('value_type', sa.String(length=16), nullable=False, server_default='string'),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=now),
        schema=schema
    )
    op.create_table(
        'order_sequences',
        sa.Column('business_day', sa.Date(), primary_key=True),
        sa.Column('last_value', sa.Integer(), nullable=False, server_default='0'),
        schema=schema
    )
    op.create_table(
        'order_idempotency',
        sa.Column('key', sa.String(length=120), primary_key=True),
        sa.Column('order_id', sa.String(length=36), nullable=False),
        sa.Column('request_hash', sa.String(length=64), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=now),
        schema=schema
    )


def downgrade() -> None:
    schema = _schema()
    op.drop_table('order_idempotency', schema=schema)
    op.drop_table('order_sequences', schema=schema)
    op.drop_table('app_settings', schema=schema)
    op.drop_index('ix_order_items_order_id', table_name='order_items', schema=schema)
    op.drop_table('order_items', schema=schema)
    op.drop_index('ix_orders_created_at', table_name='orders', schema=schema)
    op.drop_index('ix_orders_status', table_name='orders', schema=schema)
    op.drop_index('ix_orders_business_day', table_name='orders', schema=schema)
    op.drop_table('orders', schema=schema)
    op.drop_table('products', schema=schema)
