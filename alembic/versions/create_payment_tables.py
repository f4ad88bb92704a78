"""Create payment reconciliation tables.

Revision ID: create_payment_tables
Revises:
Create Date: 2026-10-16
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = 'create_payment_tables'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True),
                  server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True),
                  server_default=sa.func.now(), onupdate=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        'products',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('product_type', sa.String(50), nullable=False, index=True),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('price', sa.Numeric(10, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='ILS'),
        sa.Column('is_published', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('access_days', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True),
                  server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        'coupons',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('code', sa.String(50), nullable=False, unique=True, index=True),
        sa.Column('discount_type', sa.String(20), nullable=False, server_default='percentage'),
        sa.Column('discount_value', sa.Numeric(10, 2), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('valid_until', sa.DateTime(timezone=True), nullable=True),
        sa.Column('usage_limit', sa.Integer(), nullable=True),
        sa.Column('usage_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('minimum_amount', sa.Numeric(10, 2), nullable=True),
        sa.Column('max_discount_cap', sa.Numeric(10, 2), nullable=True),
        sa.Column('stackable_with', sa.JSON(), nullable=False, server_default='[]'),
        sa.Column('priority_level', sa.Integer(), nullable=False, server_default='5'),
        sa.Column('target_entity_types', sa.JSON(), nullable=False, server_default='[]'),
        sa.Column('created_at', sa.DateTime(timezone=True),
                  server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        'subscriptions',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False, index=True),
        sa.Column('plan_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending', index=True),
        sa.Column('provider_status', sa.String(50), nullable=True),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('activated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failed_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        'payment_sessions',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False, index=True),
        sa.Column('purchase_intents', sa.JSON(), nullable=False),
        sa.Column('subscription_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('total_amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('original_amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('discount_amount', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('applied_coupons', sa.JSON(), nullable=False, server_default='[]'),
        sa.Column('currency', sa.String(3), nullable=False, server_default='ILS'),
        sa.Column('session_status', sa.String(20), nullable=False,
                  server_default='created', index=True),
        sa.Column('page_request_uid', sa.String(255), nullable=True, index=True),
        sa.Column('payment_page_url', sa.Text(), nullable=True),
        sa.Column('return_url', sa.Text(), nullable=True),
        sa.Column('callback_url', sa.Text(), nullable=True),
        sa.Column('environment', sa.String(20), nullable=False, server_default='production'),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False, index=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        'transactions',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('session_id', postgresql.UUID(as_uuid=True), nullable=False, index=True),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False, index=True),
        sa.Column('amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='ILS'),
        sa.Column('payment_method', sa.String(50), nullable=False, server_default='payplus'),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending', index=True),
        sa.Column('page_request_uid', sa.String(255), nullable=True, unique=True),
        sa.Column('provider_transaction_uid', sa.String(255), nullable=True),
        sa.Column('provider_response', sa.JSON(), nullable=True),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('environment', sa.String(20), nullable=False, server_default='production'),
        sa.Column('resolution_method', sa.String(50), nullable=True, index=True),
        sa.Column('polling_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_polled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('next_poll_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('lock_version', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('refund_reason', sa.Text(), nullable=True),
        *_timestamps(),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('refunded_at', sa.DateTime(timezone=True), nullable=True),
    )

    # Polling selection: pending rows under the attempt cap, oldest first
    op.create_index(
        'ix_transactions_polling',
        'transactions',
        ['status', 'polling_attempts', 'created_at'],
    )

    op.create_table(
        'purchases',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False, index=True),
        sa.Column('transaction_id', postgresql.UUID(as_uuid=True), nullable=False, index=True),
        sa.Column('session_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('entity_type', sa.String(50), nullable=False),
        sa.Column('entity_id', postgresql.UUID(as_uuid=True), nullable=False, index=True),
        sa.Column('amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='ILS'),
        sa.Column('payment_status', sa.String(20), nullable=False, server_default='completed'),
        sa.Column('access_starts_at', sa.DateTime(timezone=True),
                  server_default=sa.func.now(), nullable=False),
        sa.Column('access_until', sa.DateTime(timezone=True), nullable=True),
        sa.Column('polling_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_polled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('resolution_method', sa.String(50), nullable=True, index=True),
        *_timestamps(),
        sa.UniqueConstraint('transaction_id', 'entity_type', 'entity_id',
                            name='uq_purchases_transaction_entity'),
    )

    op.create_table(
        'webhook_logs',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('provider', sa.String(50), nullable=False, server_default='payplus', index=True),
        sa.Column('event_type', sa.String(100), nullable=False, server_default='unknown'),
        sa.Column('page_request_uid', sa.String(255), nullable=True, index=True),
        sa.Column('provider_transaction_uid', sa.String(255), nullable=True, index=True),
        sa.Column('request_method', sa.String(10), nullable=False, server_default='POST'),
        sa.Column('request_headers', sa.JSON(), nullable=False),
        sa.Column('sender_ip', sa.String(64), nullable=True),
        sa.Column('user_agent', sa.String(500), nullable=True),
        sa.Column('raw_body', sa.Text(), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('status_code', sa.String(20), nullable=True),
        sa.Column('status_name', sa.String(50), nullable=True),
        sa.Column('processing_status', sa.String(20), nullable=False,
                  server_default='pending', index=True),
        sa.Column('process_log', sa.JSON(), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('error_stack', sa.Text(), nullable=True),
        sa.Column('transaction_id', postgresql.UUID(as_uuid=True), nullable=True, index=True),
        sa.Column('session_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('resolution_outcome', sa.String(20), nullable=True),
        sa.Column('processing_duration_ms', sa.Integer(), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True),
                  server_default=sa.func.now(), nullable=False, index=True),
        sa.Column('updated_at', sa.DateTime(timezone=True),
                  server_default=sa.func.now(), onupdate=sa.func.now(), nullable=False),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        'customer_tokens',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False, index=True),
        sa.Column('provider_customer_uid', sa.String(255), nullable=True),
        sa.Column('token_value', sa.String(255), nullable=False),
        sa.Column('card_mask', sa.String(20), nullable=True),
        sa.Column('card_brand', sa.String(30), nullable=True),
        sa.Column('expiry_month', sa.Integer(), nullable=True),
        sa.Column('expiry_year', sa.Integer(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('is_default', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('last_used_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('provider_response', sa.JSON(), nullable=True),
        sa.Column('environment', sa.String(20), nullable=False, server_default='production'),
        *_timestamps(),
    )
    op.create_index(
        'ix_customer_tokens_user_active',
        'customer_tokens',
        ['user_id', 'is_active'],
    )
    # At most one default card per user
    op.create_index(
        'uq_customer_tokens_user_default',
        'customer_tokens',
        ['user_id'],
        unique=True,
        postgresql_where=sa.text('is_default'),
    )


def downgrade() -> None:
    op.drop_index('uq_customer_tokens_user_default', table_name='customer_tokens')
    op.drop_index('ix_customer_tokens_user_active', table_name='customer_tokens')
    op.drop_table('customer_tokens')
    op.drop_table('webhook_logs')
    op.drop_table('purchases')
    op.drop_index('ix_transactions_polling', table_name='transactions')
    op.drop_table('transactions')
    op.drop_table('payment_sessions')
    op.drop_table('subscriptions')
    op.drop_table('coupons')
    op.drop_table('products')
