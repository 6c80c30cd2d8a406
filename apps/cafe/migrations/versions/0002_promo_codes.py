from alembic import op
import sqlalchemy as sa
import os

# revision identifiers, used by Alembic.
revision = '0002_promo_codes'
down_revision = '0001_initial'
branch_labels = None
depends_on = None


def _schema():
    url = os.getenv('CAFE_DB_URL') or os.getenv('DB_URL') or ''
    return None if url.startswith('sqlite') else os.getenv('DB_SCHEMA')


def upgrade() -> None:
    schema = _schema()
    op.create_table(
        'promo_codes',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('code', sa.String(length=32), nullable=False, unique=True),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.Column('discount_type', sa.String(length=16), nullable=False),
        sa.Column('percent_off', sa.Float(), nullable=True),
        sa.Column('amount_off_cents', sa.BigInteger(), nullable=True),
        sa.Column('min_order_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('max_uses', sa.Integer(), nullable=True),
        sa.Column('uses_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('valid_from', sa.DateTime(timezone=True), nullable=True),
        sa.Column('valid_until', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.CheckConstraint('uses_count >= 0', name='ck_promo_codes_uses_nonneg'),
        schema=schema
    )
    # orders keep a snapshot of the code; no foreign key so SQLite can add the columns in place
    op.add_column('orders', sa.Column('discount_cents', sa.BigInteger(), nullable=False, server_default='0'), schema=schema)
    op.add_column('orders', sa.Column('promo_code_id', sa.Integer(), nullable=True), schema=schema)
    op.add_column('orders', sa.Column('promo_code', sa.String(length=32), nullable=True), schema=schema)


def downgrade() -> None:
    schema = _schema()
    with op.batch_alter_table('orders', schema=schema) as batch:
        batch.drop_column('promo_code')
        batch.drop_column('promo_code_id')
        batch.drop_column('discount_cents')
    op.drop_table('promo_codes', schema=schema)
