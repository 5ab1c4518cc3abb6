"""initial schema

Revision ID: 2026_10_19_0000
Revises:
Create Date: 2026-10-19 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_19_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create initial database schema."""

    # ========================================================================
    # Create subscription_plans table
    # ========================================================================
    plans = op.create_table(
        'subscription_plans',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('key', sa.String(64), nullable=False),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('monthly_tokens', sa.Integer(), nullable=False),
        sa.Column('monthly_price_usd', sa.Numeric(10, 2), nullable=False),
        sa.Column('scan_price_usd', sa.Numeric(10, 4), nullable=False),

        sa.CheckConstraint('monthly_tokens > 0', name='ck_plan_monthly_tokens_positive'),
        sa.UniqueConstraint('key', name='uq_subscription_plans_key'),
    )

    op.bulk_insert(
        plans,
        [
            {'id': 'basic', 'key': 'basic', 'name': 'Basic', 'monthly_tokens': 10,
             'monthly_price_usd': 0.99, 'scan_price_usd': 0.099},
            {'id': 'standard', 'key': 'standard', 'name': 'Standard', 'monthly_tokens': 110,
             'monthly_price_usd': 9.90, 'scan_price_usd': 0.09},
            {'id': 'pro', 'key': 'pro', 'name': 'Pro', 'monthly_tokens': 230,
             'monthly_price_usd': 19.99, 'scan_price_usd': 0.087},
            {'id': 'business', 'key': 'business', 'name': 'Business', 'monthly_tokens': 1500,
             'monthly_price_usd': 29.00, 'scan_price_usd': 0.019},
        ],
    )

    # ========================================================================
    # Create profiles table
    # ========================================================================
    op.create_table(
        'profiles',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('email', sa.String(255), nullable=False, server_default=''),
        sa.Column('full_name', sa.String(255), nullable=True),
        sa.Column('avatar_url', sa.Text(), nullable=True),
        sa.Column('subscription_plan_id', sa.String(64), nullable=True),
        sa.Column('subscription_status', sa.String(20), nullable=False, server_default='inactive'),
        sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('tokens_remaining', sa.Integer(), nullable=True, server_default='0'),
        sa.Column('tokens_used_total', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_scan_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('tokens_remaining >= 0', name='ck_tokens_remaining_non_negative'),
        sa.CheckConstraint('tokens_used_total >= 0', name='ck_tokens_used_total_non_negative'),
        sa.CheckConstraint(
            "subscription_status IN ('active', 'canceled', 'past_due', 'inactive')",
            name='ck_subscription_status',
        ),
    )

    op.create_index('idx_profiles_email', 'profiles', ['email'])

    # ========================================================================
    # Create scans_history table
    # ========================================================================
    op.create_table(
        'scans_history',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('content_type', sa.String(10), nullable=False),
        sa.Column('risk_score', sa.String(8), nullable=False, server_default='0'),
        sa.Column('classification', sa.String(255), nullable=False, server_default='Unknown'),
        sa.Column('explanation', sa.Text(), nullable=False, server_default=''),
        sa.Column('recommendations', sa.Text(), nullable=False, server_default=''),
        sa.Column('tokens_used', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint(
            "content_type IN ('text', 'url', 'email', 'qr', 'wallet')",
            name='ck_scan_content_type',
        ),
        sa.CheckConstraint('tokens_used > 0', name='ck_scan_tokens_used_positive'),
        sa.ForeignKeyConstraint(['user_id'], ['profiles.id'], name='fk_scans_history_profile', ondelete='CASCADE'),
    )

    op.create_index('idx_scans_history_user_created', 'scans_history', ['user_id', 'created_at'])

    # ========================================================================
    # Create qr_scans table
    # ========================================================================
    op.create_table(
        'qr_scans',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('wallet_address', sa.String(42), nullable=False),
        sa.Column('ens_domain', sa.String(255), nullable=True),
        sa.Column('scan_type', sa.String(10), nullable=False, server_default='other'),
        sa.Column('scanned_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('metadata', JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint("scan_type IN ('ethereum', 'other')", name='ck_qr_scan_type'),
        sa.ForeignKeyConstraint(['user_id'], ['profiles.id'], name='fk_qr_scans_profile', ondelete='CASCADE'),
    )

    op.create_index('idx_qr_scans_user_scanned', 'qr_scans', ['user_id', 'scanned_at'])

    # ========================================================================
    # Create subscription_history table
    # ========================================================================
    op.create_table(
        'subscription_history',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('plan_id', sa.String(64), nullable=True),
        sa.Column('action', sa.String(20), nullable=False),
        sa.Column('tokens_added', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('tokens_remaining', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('metadata', JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint(
            "action IN ('subscribed', 'canceled', 'tokens_refilled')",
            name='ck_subscription_history_action',
        ),
        sa.ForeignKeyConstraint(['user_id'], ['profiles.id'], name='fk_subscription_history_profile', ondelete='CASCADE'),
    )

    op.create_index(
        'idx_subscription_history_user_created', 'subscription_history', ['user_id', 'created_at']
    )


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('subscription_history')
    op.drop_table('qr_scans')
    op.drop_table('scans_history')
    op.drop_table('profiles')
    op.drop_table('subscription_plans')
