"""Initial schema

Revision ID: 001_initial
Revises:
Create Date: 2026-01-01 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """
    Create the pipeline schema:
    - teams, short_links: links and their quota-bound owners
    - ip_whitelist, rate_limits, blocked_domains: admission state
    - link_schedules, link_variants, smart_redirects, link_masking: per-link configuration
    - link_clicks, webhooks: analytics facts and event subscribers
    """
    op.create_table(
        'teams',
        sa.Column('id', sa.Integer(), nullable=False, autoincrement=True),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('usage_quota', sa.Integer(), nullable=True),
        sa.Column('current_usage', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('usage_reset_date', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )

    op.create_table(
        'short_links',
        sa.Column('id', sa.Integer(), nullable=False, autoincrement=True),
        sa.Column('short_code', sa.String(length=20), nullable=False),
        sa.Column('long_url', sa.Text(), nullable=False),
        sa.Column('owner_id', sa.Integer(), nullable=True),
        sa.Column('team_id', sa.Integer(), nullable=True),
        sa.Column('is_public', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('password_hash', sa.String(length=100), nullable=True),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('hits', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_archived', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['team_id'], ['teams.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_short_links_short_code', 'short_links', ['short_code'], unique=True)
    op.create_index('ix_short_links_owner_id', 'short_links', ['owner_id'])
    op.create_index('ix_short_links_team_id', 'short_links', ['team_id'])
    op.create_index('ix_short_links_created_at', 'short_links', ['created_at'])

    op.create_table(
        'ip_whitelist',
        sa.Column('id', sa.Integer(), nullable=False, autoincrement=True),
        sa.Column('ip_address', sa.String(length=50), nullable=False),
        sa.Column('team_id', sa.Integer(), nullable=True),
        sa.Column('user_id', sa.Integer(), nullable=True),
        sa.Column('description', sa.String(length=200), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_ip_whitelist_team_id', 'ip_whitelist', ['team_id'])
    op.create_index('ix_ip_whitelist_user_id', 'ip_whitelist', ['user_id'])

    op.create_table(
        'rate_limits',
        sa.Column('id', sa.Integer(), nullable=False, autoincrement=True),
        sa.Column('identifier', sa.String(length=255), nullable=False),
        sa.Column('action', sa.String(length=50), nullable=False),
        sa.Column('count', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('window_start', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_rate_limits_key_window', 'rate_limits', ['identifier', 'action', 'window_start'])

    op.create_table(
        'blocked_domains',
        sa.Column('id', sa.Integer(), nullable=False, autoincrement=True),
        sa.Column('domain', sa.String(length=255), nullable=False),
        sa.Column('last_updated', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_blocked_domains_domain', 'blocked_domains', ['domain'], unique=True)
    op.create_index('ix_blocked_domains_last_updated', 'blocked_domains', ['last_updated'])

    op.create_table(
        'link_schedules',
        sa.Column('id', sa.Integer(), nullable=False, autoincrement=True),
        sa.Column('link_id', sa.Integer(), nullable=False),
        sa.Column('active_from', sa.DateTime(), nullable=True),
        sa.Column('active_until', sa.DateTime(), nullable=True),
        sa.Column('timezone', sa.String(length=50), nullable=False, server_default='UTC'),
        sa.Column('fallback_url', sa.Text(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['link_id'], ['short_links.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_link_schedules_link_id', 'link_schedules', ['link_id'])

    op.create_table(
        'link_variants',
        sa.Column('id', sa.Integer(), nullable=False, autoincrement=True),
        sa.Column('link_id', sa.Integer(), nullable=False),
        sa.Column('variant_url', sa.Text(), nullable=False),
        sa.Column('traffic_percentage', sa.Integer(), nullable=False, server_default='50'),
        sa.Column('clicks', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('conversions', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_winner', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['link_id'], ['short_links.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_link_variants_link_id', 'link_variants', ['link_id'])

    op.create_table(
        'smart_redirects',
        sa.Column('id', sa.Integer(), nullable=False, autoincrement=True),
        sa.Column('link_id', sa.Integer(), nullable=False),
        sa.Column('rule_type', sa.String(length=20), nullable=False),
        sa.Column('condition', sa.String(length=50), nullable=False),
        sa.Column('target_url', sa.Text(), nullable=False),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['link_id'], ['short_links.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_smart_redirects_link_priority', 'smart_redirects', ['link_id', 'priority'])

    op.create_table(
        'link_masking',
        sa.Column('id', sa.Integer(), nullable=False, autoincrement=True),
        sa.Column('link_id', sa.Integer(), nullable=False),
        sa.Column('enable_frame', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('enable_splash', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('splash_duration_ms', sa.Integer(), nullable=False, server_default='3000'),
        sa.Column('splash_html', sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(['link_id'], ['short_links.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('link_id')
    )

    op.create_table(
        'link_clicks',
        sa.Column('id', sa.Integer(), nullable=False, autoincrement=True),
        sa.Column('link_id', sa.Integer(), nullable=False),
        sa.Column('ip_address', sa.String(length=45), nullable=True),
        sa.Column('user_agent', sa.String(length=500), nullable=True),
        sa.Column('referer', sa.Text(), nullable=True),
        sa.Column('device_type', sa.String(length=20), nullable=False, server_default='unknown'),
        sa.Column('browser', sa.String(length=50), nullable=False, server_default='unknown'),
        sa.Column('os', sa.String(length=50), nullable=False, server_default='unknown'),
        sa.Column('country', sa.String(length=100), nullable=True),
        sa.Column('city', sa.String(length=100), nullable=True),
        sa.Column('clicked_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['link_id'], ['short_links.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_link_clicks_link_id', 'link_clicks', ['link_id'])
    op.create_index('ix_link_clicks_clicked_at', 'link_clicks', ['clicked_at'])

    op.create_table(
        'webhooks',
        sa.Column('id', sa.Integer(), nullable=False, autoincrement=True),
        sa.Column('owner_id', sa.Integer(), nullable=False),
        sa.Column('url', sa.Text(), nullable=False),
        sa.Column('secret', sa.String(length=128), nullable=False),
        sa.Column('events', sa.JSON(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('last_triggered_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_webhooks_owner_id', 'webhooks', ['owner_id'])


def downgrade() -> None:
    """Drop all tables, children before parents."""
    for table in (
        'webhooks',
        'link_clicks',
        'link_masking',
        'smart_redirects',
        'link_variants',
        'link_schedules',
        'blocked_domains',
        'rate_limits',
        'ip_whitelist',
        'short_links',
        'teams',
    ):
        op.drop_table(table)
