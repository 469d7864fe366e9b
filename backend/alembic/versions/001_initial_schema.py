"""Initial schema - identities, catalog, subscriptions, provider accounts, content

Revision ID: 001
Revises:
Create Date: 2026-10-19

WHY: Creates every table the entitlement engine reads or writes. Enum columns
store member names, matching SQLAlchemy's default Enum persistence.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


role_name = sa.Enum('CLIENT', 'PUBLISHER', 'SUPERADMIN', name='rolename')
billing_cycle = sa.Enum('DAILY', 'WEEKLY', 'MONTHLY', 'YEARLY', name='billingcycle')
subscription_status = sa.Enum(
    'PENDING_PAYMENT', 'ON_HOLD', 'ACTIVE', 'PAUSED', 'CANCELLED', 'EXPIRED',
    name='subscriptionstatus',
)
post_status = sa.Enum('DRAFT', 'PUBLISHED', 'INACTIVE', 'ARCHIVED', name='poststatus')
cancellation_type = sa.Enum('FIXED', 'PERCENTAGE', name='cancellationtype')
booking_status = sa.Enum('PENDING', 'CONFIRMED', 'COMPLETED', 'CANCELLED', name='bookingstatus')
operation_status = sa.Enum('RUNNING', 'COMPLETED', 'FAILED', name='operationstatus')


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
    ]


def upgrade() -> None:
    """
    Create all tables.

    WHY: user_subscriptions.provider_subscription_id is unique so a webhook can
    only ever match one record; operation_progress.operation_id is unique so
    a retried plan change resumes the same saga row.
    """
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('phone', sa.String(length=50), nullable=True),
        sa.Column('external_identity_id', sa.String(length=255), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('external_identity_id'),
    )
    op.create_index('ix_users_id', 'users', ['id'])
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'role_assignments',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('role_name', role_name, nullable=False),
        sa.Column('assigned_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('assigned_by', sa.String(length=50), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'role_name', name='uq_role_assignment_user_role'),
    )
    op.create_index('ix_role_assignments_id', 'role_assignments', ['id'])
    op.create_index('ix_role_assignments_user_id', 'role_assignments', ['user_id'])

    op.create_table(
        'subscription_plans',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.String(length=1000), nullable=True),
        sa.Column('price', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='ARS'),
        sa.Column('billing_cycle', billing_cycle, nullable=False, server_default='MONTHLY'),
        sa.Column('max_posts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_bookings', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('features', sa.JSON(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('is_visible', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('provider_plan_id', sa.String(length=255), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_subscription_plans_id', 'subscription_plans', ['id'])
    op.create_index('ix_subscription_plans_provider_plan_id', 'subscription_plans', ['provider_plan_id'])

    op.create_table(
        'user_subscriptions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('plan_id', sa.Integer(), nullable=True),
        sa.Column('plan_name', sa.String(length=255), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='ARS'),
        sa.Column('billing_cycle', billing_cycle, nullable=False, server_default='MONTHLY'),
        sa.Column('status', subscription_status, nullable=False, server_default='PENDING_PAYMENT'),
        sa.Column('provider_subscription_id', sa.String(length=255), nullable=True),
        sa.Column('provider_status', sa.String(length=50), nullable=True),
        sa.Column('provider_last_modified', sa.DateTime(), nullable=True),
        sa.Column('payment_last_updated', sa.DateTime(), nullable=True),
        sa.Column('status_checked_at', sa.DateTime(), nullable=True),
        sa.Column('start_date', sa.DateTime(), nullable=True),
        sa.Column('end_date', sa.DateTime(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['plan_id'], ['subscription_plans.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_user_subscriptions_id', 'user_subscriptions', ['id'])
    op.create_index('ix_user_subscriptions_user_id', 'user_subscriptions', ['user_id'])
    op.create_index('ix_user_subscriptions_plan_id', 'user_subscriptions', ['plan_id'])
    op.create_index('ix_user_subscriptions_status', 'user_subscriptions', ['status'])
    op.create_index(
        'ix_user_subscriptions_provider_subscription_id',
        'user_subscriptions',
        ['provider_subscription_id'],
        unique=True,
    )

    op.create_table(
        'provider_accounts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('provider_user_id', sa.String(length=255), nullable=False),
        sa.Column('access_token_encrypted', sa.Text(), nullable=False),
        sa.Column('refresh_token_encrypted', sa.Text(), nullable=True),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('scope', sa.String(length=500), nullable=True),
        sa.Column('profile_snapshot', sa.JSON(), nullable=False),
        sa.Column('last_validated_at', sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_provider_accounts_id', 'provider_accounts', ['id'])
    op.create_index('ix_provider_accounts_user_id', 'provider_accounts', ['user_id'])
    op.create_index('ix_provider_accounts_provider_user_id', 'provider_accounts', ['provider_user_id'])
    op.create_index('ix_provider_accounts_is_active', 'provider_accounts', ['is_active'])

    op.create_table(
        'posts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('status', post_status, nullable=False, server_default='DRAFT'),
        sa.Column('deactivated_at', sa.DateTime(), nullable=True),
        sa.Column('deactivation_reason', sa.String(length=100), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_posts_id', 'posts', ['id'])
    op.create_index('ix_posts_user_id', 'posts', ['user_id'])
    op.create_index('ix_posts_status', 'posts', ['status'])

    op.create_table(
        'cancellation_policies',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('post_id', sa.Integer(), nullable=False),
        sa.Column('days_quantity', sa.Integer(), nullable=False),
        sa.Column('cancellation_type', cancellation_type, nullable=False),
        sa.Column('cancellation_amount', sa.Numeric(12, 2), nullable=False),
        sa.ForeignKeyConstraint(['post_id'], ['posts.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_cancellation_policies_id', 'cancellation_policies', ['id'])
    op.create_index('ix_cancellation_policies_post_id', 'cancellation_policies', ['post_id'])

    op.create_table(
        'bookings',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('post_id', sa.Integer(), nullable=True),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('publisher_id', sa.Integer(), nullable=True),
        sa.Column('start_date', sa.DateTime(), nullable=False),
        sa.Column('total_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='ARS'),
        sa.Column('status', booking_status, nullable=False, server_default='PENDING'),
        *_timestamps(),
        sa.ForeignKeyConstraint(['post_id'], ['posts.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['publisher_id'], ['users.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_bookings_id', 'bookings', ['id'])
    op.create_index('ix_bookings_post_id', 'bookings', ['post_id'])
    op.create_index('ix_bookings_user_id', 'bookings', ['user_id'])
    op.create_index('ix_bookings_publisher_id', 'bookings', ['publisher_id'])
    op.create_index('ix_bookings_status', 'bookings', ['status'])

    op.create_table(
        'notifications',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('is_read', sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_notifications_id', 'notifications', ['id'])
    op.create_index('ix_notifications_user_id', 'notifications', ['user_id'])

    op.create_table(
        'favorites',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('post_id', sa.Integer(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['post_id'], ['posts.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_favorites_id', 'favorites', ['id'])
    op.create_index('ix_favorites_user_id', 'favorites', ['user_id'])

    op.create_table(
        'operation_progress',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('operation_id', sa.String(length=255), nullable=False),
        sa.Column('kind', sa.String(length=50), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=True),
        sa.Column('furthest_step', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_steps', sa.Integer(), nullable=False),
        sa.Column('status', operation_status, nullable=False, server_default='RUNNING'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('context', sa.JSON(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_operation_progress_id', 'operation_progress', ['id'])
    op.create_index('ix_operation_progress_operation_id', 'operation_progress', ['operation_id'], unique=True)
    op.create_index('ix_operation_progress_user_id', 'operation_progress', ['user_id'])


def downgrade() -> None:
    """Drop all tables and enum types in reverse dependency order."""
    for table in (
        'operation_progress',
        'favorites',
        'notifications',
        'bookings',
        'cancellation_policies',
        'posts',
        'provider_accounts',
        'user_subscriptions',
        'subscription_plans',
        'role_assignments',
        'users',
    ):
        op.drop_table(table)

    bind = op.get_bind()
    for enum_type in (
        operation_status,
        booking_status,
        cancellation_type,
        post_status,
        subscription_status,
        billing_cycle,
        role_name,
    ):
        enum_type.drop(bind, checkfirst=True)
