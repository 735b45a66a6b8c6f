"""create users and stripe billing tables

Revision ID: a1c2e3f4b501
Revises:
Create Date: 2026-10-19 10:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'a1c2e3f4b501'
down_revision = None
branch_labels = None
depends_on = None

STRIPE_MODE = sa.Enum('test', 'live', name='stripe_mode')


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('plan', sa.Enum('free', 'pro', name='user_plan'), nullable=False),
        sa.Column('is_pro', sa.Boolean(), nullable=False),
        sa.Column('pro_valid_until', sa.DateTime(), nullable=True, comment='Pro有効期限 (暫定値。Webhookで確定)'),
        sa.Column('last_login_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'stripe_customers',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('stripe_customer_id', sa.String(255), nullable=False),
        sa.Column('mode', STRIPE_MODE, nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id'),
    )
    op.create_index('ix_stripe_customers_stripe_customer_id', 'stripe_customers', ['stripe_customer_id'], unique=True)

    op.create_table(
        'stripe_subscriptions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('stripe_subscription_id', sa.String(255), nullable=False),
        sa.Column('stripe_customer_id', sa.String(255), nullable=False),
        sa.Column('stripe_product_id', sa.String(255), nullable=True),
        sa.Column('stripe_price_id', sa.String(255), nullable=True),
        sa.Column('status', sa.String(50), nullable=False, comment='Stripe subscription.status'),
        sa.Column('current_period_start', sa.DateTime(), nullable=True),
        sa.Column('current_period_end', sa.DateTime(), nullable=True),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False),
        sa.Column('canceled_at', sa.DateTime(), nullable=True),
        sa.Column('ended_at', sa.DateTime(), nullable=True),
        sa.Column('trial_end', sa.DateTime(), nullable=True),
        sa.Column('mode', STRIPE_MODE, nullable=False),
        sa.Column('latest_invoice_id', sa.String(255), nullable=True),
        sa.Column('latest_invoice_status', sa.String(50), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id'),
    )
    op.create_index('ix_stripe_subscriptions_stripe_subscription_id', 'stripe_subscriptions', ['stripe_subscription_id'])
    op.create_index('ix_stripe_subscriptions_stripe_customer_id', 'stripe_subscriptions', ['stripe_customer_id'])

    # webhook冪等性台帳
    op.create_table(
        'stripe_webhook_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('event_id', sa.String(255), nullable=False),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('mode', STRIPE_MODE, nullable=False),
        sa.Column('processed_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('event_id', 'mode', name='uq_stripe_webhook_events_event_id_mode'),
    )

    op.create_table(
        'pending_checkouts',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('encrypted_email', sa.String(512), nullable=False, comment='AES-256-GCM暗号化メール'),
        sa.Column('email_lookup_hash', sa.String(64), nullable=False),
        sa.Column('token_hash', sa.String(64), nullable=False),
        sa.Column('mode', STRIPE_MODE, nullable=False),
        sa.Column('checkout_session_id', sa.String(255), nullable=True),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('used_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('token_hash'),
        sa.UniqueConstraint('checkout_session_id'),
    )
    op.create_index('ix_pending_checkouts_email_lookup_hash', 'pending_checkouts', ['email_lookup_hash'])
    op.create_index('ix_pending_checkouts_expires_at', 'pending_checkouts', ['expires_at'])


def downgrade() -> None:
    op.drop_index('ix_pending_checkouts_expires_at', 'pending_checkouts')
    op.drop_index('ix_pending_checkouts_email_lookup_hash', 'pending_checkouts')
    op.drop_table('pending_checkouts')
    op.drop_table('stripe_webhook_events')
    op.drop_index('ix_stripe_subscriptions_stripe_customer_id', 'stripe_subscriptions')
    op.drop_index('ix_stripe_subscriptions_stripe_subscription_id', 'stripe_subscriptions')
    op.drop_table('stripe_subscriptions')
    op.drop_index('ix_stripe_customers_stripe_customer_id', 'stripe_customers')
    op.drop_table('stripe_customers')
    op.drop_index('ix_users_email', 'users')
    op.drop_table('users')
