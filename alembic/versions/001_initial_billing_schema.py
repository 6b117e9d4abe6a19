"""Initial billing schema: plans, businesses, payment methods, subscriptions,
payments, discount codes and the billing audit log

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Plan catalog
    op.create_table(
        'subscription_plans',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('name', sa.String(64), nullable=False),
        sa.Column('display_name', sa.String(128), nullable=False),
        sa.Column('price', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='TRY'),
        sa.Column('billing_interval', sa.String(16), nullable=False),
        sa.Column('trial_days', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('features', postgresql.JSON(astext_type=sa.Text()), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_subscription_plans_name', 'subscription_plans', ['name'])

    # Businesses (owned by the business profile service; billing reads contact details)
    op.create_table(
        'businesses',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('owner_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('owner_first_name', sa.String(), nullable=True),
        sa.Column('owner_last_name', sa.String(), nullable=True),
        sa.Column('owner_phone', sa.String(), nullable=True),
        sa.Column('email', sa.String(), nullable=True),
        sa.Column('phone', sa.String(), nullable=True),
        sa.Column('city', sa.String(), nullable=True),
        sa.Column('country', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_businesses_owner_id', 'businesses', ['owner_id'])

    # Tokenized payment methods
    op.create_table(
        'stored_payment_methods',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('business_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('provider_token', sa.String(), nullable=False),
        sa.Column('cardholder_name', sa.String(), nullable=True),
        sa.Column('last_four', sa.String(4), nullable=False),
        sa.Column('brand', sa.String(32), nullable=True),
        sa.Column('expiry_month', sa.String(2), nullable=False),
        sa.Column('expiry_year', sa.String(4), nullable=False),
        sa.Column('is_default', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['business_id'], ['businesses.id'], ),
    )
    op.create_index('ix_stored_payment_methods_business_id', 'stored_payment_methods', ['business_id'])
    op.create_index('ix_stored_payment_methods_is_default', 'stored_payment_methods', ['is_default'])

    # One subscription row per business
    op.create_table(
        'business_subscriptions',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('business_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('plan_id', sa.String(64), nullable=False),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('current_period_start', sa.DateTime(), nullable=True),
        sa.Column('current_period_end', sa.DateTime(), nullable=True),
        sa.Column('trial_start', sa.DateTime(), nullable=True),
        sa.Column('trial_end', sa.DateTime(), nullable=True),
        sa.Column('auto_renewal', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('canceled_at', sa.DateTime(), nullable=True),
        sa.Column('payment_method_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('failed_payment_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_failure_at', sa.DateTime(), nullable=True),
        sa.Column('next_retry_at', sa.DateTime(), nullable=True),
        sa.Column('escalated_at', sa.DateTime(), nullable=True),
        sa.Column('next_billing_date', sa.DateTime(), nullable=True),
        sa.Column('pending_discount_data', postgresql.JSON(astext_type=sa.Text()), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['business_id'], ['businesses.id'], ),
        sa.ForeignKeyConstraint(['plan_id'], ['subscription_plans.id'], ),
        sa.ForeignKeyConstraint(['payment_method_id'], ['stored_payment_methods.id'], ),
    )
    op.create_index('ix_business_subscriptions_business_id', 'business_subscriptions', ['business_id'], unique=True)
    op.create_index('ix_business_subscriptions_status', 'business_subscriptions', ['status'])
    op.create_index('ix_business_subscriptions_current_period_end', 'business_subscriptions', ['current_period_end'])
    op.create_index('ix_business_subscriptions_trial_end', 'business_subscriptions', ['trial_end'])

    # Payment ledger
    op.create_table(
        'payments',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('subscription_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('original_amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('status', sa.String(16), nullable=False),
        sa.Column('trigger', sa.String(32), nullable=False),
        sa.Column('provider', sa.String(32), nullable=False),
        sa.Column('provider_payment_id', sa.String(), nullable=True),
        sa.Column('conversation_id', sa.String(), nullable=False, unique=True),
        sa.Column('payment_method_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('discount_code', sa.String(64), nullable=True),
        sa.Column('failure_message', sa.Text(), nullable=True),
        sa.Column('failure_metadata', postgresql.JSON(astext_type=sa.Text()), nullable=True),
        sa.Column('refunded_amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('refund_reason', sa.Text(), nullable=True),
        sa.Column('refunded_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['subscription_id'], ['business_subscriptions.id'], ),
    )
    op.create_index('ix_payments_subscription_id', 'payments', ['subscription_id'])
    op.create_index('ix_payments_status', 'payments', ['status'])
    op.create_index('ix_payments_provider_payment_id', 'payments', ['provider_payment_id'])
    op.create_index('ix_payments_created_at', 'payments', ['created_at'])

    # Discount codes
    op.create_table(
        'discount_codes',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('code', sa.String(64), nullable=False),
        sa.Column('name', sa.String(), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('discount_type', sa.String(16), nullable=False),
        sa.Column('discount_value', sa.Numeric(12, 2), nullable=False),
        sa.Column('valid_from', sa.DateTime(), nullable=False),
        sa.Column('valid_until', sa.DateTime(), nullable=True),
        sa.Column('max_usages', sa.Integer(), nullable=True),
        sa.Column('current_usages', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('per_user_limit', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('min_purchase_amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('applicable_plans', postgresql.JSON(astext_type=sa.Text()), nullable=False),
        sa.Column('is_recurring', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('max_recurring_uses', sa.Integer(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_discount_codes_code', 'discount_codes', ['code'], unique=True)
    op.create_index('ix_discount_codes_is_active', 'discount_codes', ['is_active'])

    op.create_table(
        'discount_code_usages',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('discount_code_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('subscription_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('payment_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('sequence', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('original_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('discount_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('final_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('trigger', sa.String(32), nullable=True),
        sa.Column('used_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['discount_code_id'], ['discount_codes.id'], ),
        sa.ForeignKeyConstraint(['subscription_id'], ['business_subscriptions.id'], ),
        sa.ForeignKeyConstraint(['payment_id'], ['payments.id'], ),
    )
    op.create_index('ix_discount_code_usages_discount_code_id', 'discount_code_usages', ['discount_code_id'])
    op.create_index('ix_discount_code_usages_user_id', 'discount_code_usages', ['user_id'])
    op.create_index('ix_discount_code_usages_subscription_id', 'discount_code_usages', ['subscription_id'])
    op.create_index('ix_discount_code_usages_payment_id', 'discount_code_usages', ['payment_id'])

    # Billing audit log
    op.create_table(
        'billing_audit_logs',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('event_type', sa.String(48), nullable=False),
        sa.Column('business_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('subscription_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('payment_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('details', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_billing_audit_logs_event_type', 'billing_audit_logs', ['event_type'])
    op.create_index('ix_billing_audit_logs_business_id', 'billing_audit_logs', ['business_id'])
    op.create_index('ix_billing_audit_logs_subscription_id', 'billing_audit_logs', ['subscription_id'])
    op.create_index('ix_billing_audit_logs_created_at', 'billing_audit_logs', ['created_at'])


def downgrade() -> None:
    op.drop_table('billing_audit_logs')
    op.drop_table('discount_code_usages')
    op.drop_table('discount_codes')
    op.drop_table('payments')
    op.drop_table('business_subscriptions')
    op.drop_table('stored_payment_methods')
    op.drop_table('businesses')
    op.drop_table('subscription_plans')
