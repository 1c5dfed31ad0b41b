"""initial_schema

Revision ID: 3f1c9a2e7b10
Revises:
Create Date: 2026-10-19 09:12:44.201387

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '3f1c9a2e7b10'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")

company_category = sa.Enum('customer', 'prospect', 'distributor', 'partner', name='company_category')
marketing_status = sa.Enum('subscribed', 'unsubscribed', 'pending', 'bounced', name='marketing_status')
user_role = sa.Enum('director', 'sales_rep', 'admin', name='user_role')
pricing_tier = sa.Enum('tier_1', 'tier_2', 'tier_3', name='pricing_tier')
subscription_status = sa.Enum('trial', 'active', 'cancelled', name='subscription_status')
product_type = sa.Enum('tool', 'consumable', 'other', name='product_type')
payment_status = sa.Enum('unpaid', 'paid', 'void', name='payment_status')
outbox_job_status = sa.Enum('pending', 'processing', 'completed', 'failed', 'dead', name='outbox_job_status')


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        'companies',
        sa.Column('company_id', sa.String(length=50), primary_key=True),
        sa.Column('company_name', sa.String(length=255), nullable=False),
        sa.Column('category', company_category, nullable=False),
        sa.Column('account_owner', sa.String(length=50), nullable=True),
        sa.Column('country', sa.String(length=100), nullable=True),
        sa.Column('website', sa.String(length=255), nullable=True),
        sa.Column('last_invoice_at', sa.Date(), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_companies_company_name', 'companies', ['company_name'])
    op.create_index('ix_companies_category', 'companies', ['category'])
    op.create_index('ix_companies_account_owner', 'companies', ['account_owner'])
    op.create_index('ix_companies_last_invoice_at', 'companies', ['last_invoice_at'])

    op.create_table(
        'contacts',
        sa.Column('contact_id', sa.String(length=50), primary_key=True),
        sa.Column('company_id', sa.String(length=50),
                  sa.ForeignKey('companies.company_id', ondelete='CASCADE'), nullable=False),
        sa.Column('full_name', sa.String(length=255), nullable=True),
        sa.Column('first_name', sa.String(length=100), nullable=True),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('marketing_status', marketing_status, nullable=False),
        sa.Column('gdpr_consent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('crm_contact_id', sa.String(length=100), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_contacts_company_id', 'contacts', ['company_id'])
    op.create_index('ix_contacts_email', 'contacts', ['email'])
    op.create_index('ix_contacts_marketing_status', 'contacts', ['marketing_status'])

    op.create_table(
        'users',
        sa.Column('user_id', sa.String(length=50), primary_key=True),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('full_name', sa.String(length=255), nullable=True),
        sa.Column('role', user_role, nullable=False),
        sa.Column('sales_rep_id', sa.String(length=50), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)
    op.create_index('ix_users_sales_rep_id', 'users', ['sales_rep_id'])

    op.create_table(
        'distributors',
        sa.Column('code', sa.String(length=50), primary_key=True),
        sa.Column('company_id', sa.String(length=50),
                  sa.ForeignKey('companies.company_id', ondelete='SET NULL'), nullable=True),
        sa.Column('company_name', sa.String(length=255), nullable=False),
        sa.Column('country', sa.String(length=100), nullable=True),
        sa.Column('pricing_tier', pricing_tier, nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_distributors_company_id', 'distributors', ['company_id'])

    op.create_table(
        'subscriptions',
        sa.Column('subscription_id', sa.String(length=50), primary_key=True),
        sa.Column('company_id', sa.String(length=50),
                  sa.ForeignKey('companies.company_id', ondelete='CASCADE'), nullable=False),
        sa.Column('contact_id', sa.String(length=50), nullable=True),
        sa.Column('monthly_price', sa.Numeric(10, 2), nullable=False),
        sa.Column('ratchet_max', sa.Numeric(10, 2), nullable=True),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='GBP'),
        sa.Column('tools', JSON, nullable=True),
        sa.Column('status', subscription_status, nullable=False),
        sa.Column('trial_start_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('trial_end_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancellation_reason', sa.Text(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_subscriptions_company_id', 'subscriptions', ['company_id'])
    op.create_index('ix_subscriptions_status', 'subscriptions', ['status'])

    op.create_table(
        'products',
        sa.Column('product_code', sa.String(length=50), primary_key=True),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.Column('type', product_type, nullable=False),
    )

    op.create_table(
        'invoices',
        sa.Column('invoice_id', sa.String(length=50), primary_key=True),
        sa.Column('company_id', sa.String(length=50),
                  sa.ForeignKey('companies.company_id', ondelete='CASCADE'), nullable=False),
        sa.Column('payment_status', payment_status, nullable=False),
        sa.Column('invoice_date', sa.Date(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='GBP'),
    )
    op.create_index('ix_invoices_company_id', 'invoices', ['company_id'])
    op.create_index('ix_invoices_payment_status', 'invoices', ['payment_status'])
    op.create_index('ix_invoices_invoice_date', 'invoices', ['invoice_date'])

    op.create_table(
        'invoice_items',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('invoice_id', sa.String(length=50),
                  sa.ForeignKey('invoices.invoice_id', ondelete='CASCADE'), nullable=False),
        sa.Column('product_code', sa.String(length=50),
                  sa.ForeignKey('products.product_code'), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('unit_price', sa.Numeric(10, 2), nullable=False),
    )
    op.create_index('ix_invoice_items_invoice_id', 'invoice_items', ['invoice_id'])

    op.create_table(
        'outbox',
        sa.Column('job_id', sa.Uuid(), primary_key=True),
        sa.Column('job_type', sa.String(length=50), nullable=False),
        sa.Column('status', outbox_job_status, nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_attempts', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('payload', JSON, nullable=True, comment='Handler input, schema selected by job_type'),
        sa.Column('result', JSON, nullable=True, comment='Handler output and per-recipient progress'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('scheduled_for', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('locked_until', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_outbox_job_type', 'outbox', ['job_type'])
    op.create_index('ix_outbox_status_scheduled_for', 'outbox', ['status', 'scheduled_for'])

    op.create_table(
        'engagement_events',
        sa.Column('event_id', sa.Uuid(), primary_key=True),
        sa.Column('event_type', sa.String(length=100), nullable=False),
        sa.Column('source', sa.String(length=50), nullable=False, server_default='system'),
        sa.Column('company_id', sa.String(length=50), nullable=True),
        sa.Column('contact_id', sa.String(length=50), nullable=True),
        sa.Column('campaign_key', sa.String(length=100), nullable=True),
        sa.Column('offer_key', sa.String(length=100), nullable=True),
        sa.Column('url', sa.Text(), nullable=True),
        sa.Column('value', sa.Numeric(12, 2), nullable=True),
        sa.Column('meta', JSON, nullable=True),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_engagement_events_event_type', 'engagement_events', ['event_type'])
    op.create_index('ix_engagement_events_company_id', 'engagement_events', ['company_id'])
    op.create_index('ix_engagement_events_campaign_key', 'engagement_events', ['campaign_key'])
    op.create_index('ix_engagement_events_occurred_at', 'engagement_events', ['occurred_at'])


def downgrade() -> None:
    """Downgrade schema."""
    for table in (
        'engagement_events',
        'outbox',
        'invoice_items',
        'invoices',
        'products',
        'subscriptions',
        'distributors',
        'users',
        'contacts',
        'companies',
    ):
        op.drop_table(table)

    bind = op.get_bind()
    for enum_type in (
        outbox_job_status,
        payment_status,
        product_type,
        subscription_status,
        pricing_tier,
        user_role,
        marketing_status,
        company_category,
    ):
        enum_type.drop(bind, checkfirst=True)
