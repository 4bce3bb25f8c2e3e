"""initial call recovery schema: jobs, checkouts, settings, billing ledger, tool call log

Revision ID: 3f1c9a7b2d10
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '3f1c9a7b2d10'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
    ]


def upgrade():
    op.create_table(
        'call_jobs',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('shop', sa.String(length=255), nullable=False),
        sa.Column('checkout_id', sa.String(length=255), nullable=False),
        sa.Column('status', sa.String(length=16), server_default=sa.text("'QUEUED'"), nullable=False),
        sa.Column('attempts', sa.Integer(), server_default=sa.text('0'), nullable=False),
        sa.Column('scheduled_for', sa.DateTime(), nullable=False),
        sa.Column('provider', sa.String(length=32), nullable=True),
        sa.Column('provider_call_id', sa.String(length=128), nullable=True),
        sa.Column('phone', sa.String(length=32), nullable=True),
        sa.Column('outcome', sa.String(length=2000), nullable=True),
        sa.Column('ended_reason', sa.String(length=200), nullable=True),
        sa.Column('transcript', sa.Text(), nullable=True),
        sa.Column('recording_url', sa.String(length=2000), nullable=True),
        sa.Column('meta', sa.JSON(), nullable=False),
        *_timestamps(),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.CheckConstraint("status IN ('QUEUED','CALLING','COMPLETED','FAILED')", name='ck_call_jobs_status'),
        sa.CheckConstraint('attempts >= 0', name='ck_call_jobs_attempts_nonneg'),
        sa.PrimaryKeyConstraint('id'),
    )
    with op.batch_alter_table('call_jobs', schema=None) as batch_op:
        batch_op.create_index('ix_call_jobs_shop', ['shop'], unique=False)
        batch_op.create_index('ix_call_jobs_checkout_id', ['checkout_id'], unique=False)
        batch_op.create_index('ix_call_jobs_provider_call_id', ['provider_call_id'], unique=False)
        batch_op.create_index('ix_call_jobs_status_scheduled_for', ['status', 'scheduled_for'], unique=False)

    op.create_table(
        'checkouts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('shop', sa.String(length=255), nullable=False),
        sa.Column('checkout_id', sa.String(length=255), nullable=False),
        sa.Column('email', sa.String(length=320), nullable=True),
        sa.Column('phone', sa.String(length=32), nullable=True),
        sa.Column('customer_name', sa.String(length=255), nullable=True),
        sa.Column('value', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('recovery_url', sa.String(length=2000), nullable=True),
        sa.Column('raw', sa.JSON(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('shop', 'checkout_id', name='uq_checkouts_shop_checkout_id'),
    )
    with op.batch_alter_table('checkouts', schema=None) as batch_op:
        batch_op.create_index('ix_checkouts_shop', ['shop'], unique=False)

    op.create_table(
        'shop_settings',
        sa.Column('shop', sa.String(length=255), nullable=False),
        sa.Column('enabled', sa.Boolean(), server_default=sa.text('true'), nullable=False),
        sa.Column('call_window_start', sa.String(length=5), server_default=sa.text("'09:00'"), nullable=False),
        sa.Column('call_window_end', sa.String(length=5), server_default=sa.text("'19:00'"), nullable=False),
        sa.Column('call_timezone', sa.String(length=64), server_default=sa.text("'UTC'"), nullable=False),
        sa.Column('retry_minutes', sa.Integer(), server_default=sa.text('180'), nullable=False),
        sa.Column('max_attempts', sa.Integer(), server_default=sa.text('2'), nullable=False),
        sa.Column('followup_sms_enabled', sa.Boolean(), server_default=sa.text('false'), nullable=False),
        sa.Column('discount_enabled', sa.Boolean(), server_default=sa.text('false'), nullable=False),
        sa.Column('max_discount_percent', sa.Integer(), server_default=sa.text('10'), nullable=False),
        sa.Column('min_cart_value_for_discount', sa.Numeric(precision=12, scale=2), nullable=True),
        sa.Column('free_shipping_enabled', sa.Boolean(), server_default=sa.text('false'), nullable=False),
        sa.Column('coupon_prefix', sa.String(length=32), nullable=True),
        sa.Column('coupon_validity_hours', sa.Integer(), server_default=sa.text('24'), nullable=False),
        sa.Column('sms_template_offer', sa.String(length=1000), nullable=True),
        sa.Column('sms_template_no_offer', sa.String(length=1000), nullable=True),
        sa.Column('brevo_sms_sender', sa.String(length=32), nullable=True),
        sa.Column('vapi_assistant_id', sa.String(length=64), nullable=True),
        sa.Column('vapi_phone_number_id', sa.String(length=64), nullable=True),
        *_timestamps(),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.PrimaryKeyConstraint('shop'),
    )

    op.create_table(
        'shop_sessions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('shop', sa.String(length=255), nullable=False),
        sa.Column('access_token', sa.String(length=255), nullable=False),
        sa.Column('scope', sa.String(length=1000), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    with op.batch_alter_table('shop_sessions', schema=None) as batch_op:
        batch_op.create_index('ix_shop_sessions_shop', ['shop'], unique=True)

    op.create_table(
        'shop_billing',
        sa.Column('shop', sa.String(length=255), nullable=False),
        sa.Column('plan', sa.String(length=16), server_default=sa.text("'FREE'"), nullable=False),
        sa.Column('status', sa.String(length=16), server_default=sa.text("'NONE'"), nullable=False),
        sa.Column('currency_code', sa.String(length=3), server_default=sa.text("'EUR'"), nullable=False),
        sa.Column('subscription_id', sa.String(length=255), nullable=True),
        sa.Column('usage_line_item_id', sa.String(length=255), nullable=True),
        sa.Column('recurring_line_item_id', sa.String(length=255), nullable=True),
        sa.Column('current_period_start', sa.DateTime(), nullable=True),
        sa.Column('current_period_end', sa.DateTime(), nullable=True),
        sa.Column('included_seconds_used', sa.Integer(), server_default=sa.text('0'), nullable=False),
        sa.Column('free_seconds_used', sa.Integer(), server_default=sa.text('0'), nullable=False),
        sa.Column('pending_plan', sa.String(length=16), nullable=True),
        sa.Column('pending_coupon_code', sa.String(length=64), nullable=True),
        sa.Column('pending_coupon_percent', sa.Numeric(precision=6, scale=2), nullable=True),
        sa.Column('pending_coupon_intervals', sa.Integer(), nullable=True),
        *_timestamps(),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.CheckConstraint("plan IN ('FREE','STARTER','PRO','SCALE','PAYG')", name='ck_shop_billing_plan'),
        sa.CheckConstraint("status IN ('NONE','PENDING','ACTIVE','CANCELLED')", name='ck_shop_billing_status'),
        sa.CheckConstraint('included_seconds_used >= 0', name='ck_shop_billing_included_nonneg'),
        sa.CheckConstraint('free_seconds_used >= 0', name='ck_shop_billing_free_nonneg'),
        sa.PrimaryKeyConstraint('shop'),
    )

    op.create_table(
        'call_charges',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('shop', sa.String(length=255), nullable=False),
        sa.Column('call_job_id', sa.String(length=36), nullable=False),
        sa.Column('connected_seconds', sa.Integer(), nullable=False),
        sa.Column('minutes_billed', sa.Integer(), nullable=False),
        sa.Column('amount_cents', sa.Integer(), server_default=sa.text('0'), nullable=False),
        sa.Column('currency_code', sa.String(length=3), nullable=False),
        sa.Column('usage_record_id', sa.String(length=255), nullable=True),
        sa.Column('idempotency_key', sa.String(length=255), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(['shop'], ['shop_billing.shop'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    with op.batch_alter_table('call_charges', schema=None) as batch_op:
        batch_op.create_index('ix_call_charges_call_job_id', ['call_job_id'], unique=True)
        batch_op.create_index('ix_call_charges_idempotency_key', ['idempotency_key'], unique=True)
        batch_op.create_index('ix_call_charges_shop_created_at', ['shop', 'created_at'], unique=False)

    op.create_table(
        'billing_coupons',
        sa.Column('code', sa.String(length=64), nullable=False),
        sa.Column('is_active', sa.Boolean(), server_default=sa.text('true'), nullable=False),
        sa.Column('kind', sa.String(length=16), server_default=sa.text("'PERCENT'"), nullable=False),
        sa.Column('value', sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column('duration_intervals', sa.Integer(), nullable=True),
        sa.Column('applies_to_plan', sa.String(length=16), nullable=True),
        sa.Column('starts_at', sa.DateTime(), nullable=True),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('max_total_uses', sa.Integer(), nullable=True),
        sa.Column('max_uses_per_shop', sa.Integer(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("kind IN ('PERCENT','AMOUNT')", name='ck_billing_coupons_kind'),
        sa.PrimaryKeyConstraint('code'),
    )

    op.create_table(
        'billing_coupon_redemptions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('coupon_code', sa.String(length=64), nullable=False),
        sa.Column('shop', sa.String(length=255), nullable=False),
        sa.Column('plan', sa.String(length=16), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(['coupon_code'], ['billing_coupons.code'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    with op.batch_alter_table('billing_coupon_redemptions', schema=None) as batch_op:
        batch_op.create_index('ix_billing_coupon_redemptions_code_shop', ['coupon_code', 'shop'], unique=False)

    op.create_table(
        'tool_call_logs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('shop', sa.String(length=255), nullable=False),
        sa.Column('call_job_id', sa.String(length=36), nullable=False),
        sa.Column('tool_call_id', sa.String(length=120), nullable=False),
        sa.Column('status', sa.String(length=16), server_default=sa.text("'processing'"), nullable=False),
        sa.Column('result', sa.JSON(), nullable=True),
        sa.Column('error', sa.String(length=800), nullable=True),
        sa.Column('retries', sa.Integer(), server_default=sa.text('0'), nullable=False),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('call_job_id', 'tool_call_id', name='uq_tool_call_logs_job_tool_call'),
    )
    with op.batch_alter_table('tool_call_logs', schema=None) as batch_op:
        batch_op.create_index('ix_tool_call_logs_shop', ['shop'], unique=False)


def downgrade():
    op.drop_table('tool_call_logs')
    op.drop_table('billing_coupon_redemptions')
    op.drop_table('billing_coupons')
    op.drop_table('call_charges')
    op.drop_table('shop_billing')
    op.drop_table('shop_sessions')
    op.drop_table('shop_settings')
    op.drop_table('checkouts')
    op.drop_table('call_jobs')
