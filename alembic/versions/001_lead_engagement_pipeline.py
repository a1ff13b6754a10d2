"""Lead engagement pipeline schema

Revision ID: 001_lead_engagement_pipeline
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001_lead_engagement_pipeline'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'reddit_accounts',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('reddit_username', sa.String()),

        # Fernet-encrypted tokens; expires_at is epoch seconds
        sa.Column('access_token_encrypted', sa.Text(), nullable=False),
        sa.Column('refresh_token_encrypted', sa.Text(), nullable=False),
        sa.Column('expires_at', sa.Float(), nullable=False),
        sa.Column('scopes', sa.JSON()),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),

        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
    )
    op.create_index('ix_reddit_accounts_user_id', 'reddit_accounts', ['user_id'], unique=True)

    op.create_table(
        'leads',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('username', sa.String(), nullable=False),
        sa.Column('agent_id', sa.String()),
        sa.Column('platform', sa.String(), nullable=False, server_default='reddit'),
        sa.Column('source_post_id', sa.String()),
        sa.Column('subreddit', sa.String()),
        sa.Column('qualification_score', sa.Float()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
    )
    op.create_index('ix_leads_user_id', 'leads', ['user_id'])
    op.create_index('idx_lead_user_username', 'leads', ['user_id', 'username'])

    op.create_table(
        'conversations',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('lead_id', sa.String(), sa.ForeignKey('leads.id', ondelete='SET NULL')),
        sa.Column('lead_username', sa.String(), nullable=False),
        sa.Column('stage', sa.String(32), nullable=False, server_default='building_rapport'),
        sa.Column('collected_email', sa.String()),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('last_message_at', sa.DateTime(timezone=True)),
    )
    op.create_index('ix_conversations_user_id', 'conversations', ['user_id'])
    op.create_index('ix_conversations_lead_id', 'conversations', ['lead_id'])
    op.create_index('ix_conversations_stage', 'conversations', ['stage'])
    op.create_index('idx_conversation_user_lead_username', 'conversations', ['user_id', 'lead_username'])
    op.create_index('idx_conversation_user_stage', 'conversations', ['user_id', 'stage'])

    op.create_table(
        'conversation_messages',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('conversation_id', sa.String(), sa.ForeignKey('conversations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('sender', sa.String(16), nullable=False),
        sa.Column('text', sa.Text(), nullable=False),
        sa.Column('sentiment', sa.String(32)),
        sa.Column('platform_message_id', sa.String()),
        sa.Column('in_reply_to', sa.String()),
        sa.Column('delivered', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint('conversation_id', 'sequence', name='uq_conversation_message_sequence'),
    )
    op.create_index('ix_conversation_messages_conversation_id', 'conversation_messages', ['conversation_id'])
    op.create_index('ix_conversation_messages_platform_message_id', 'conversation_messages', ['platform_message_id'])

    op.create_table(
        'moderation_items',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('user_id', sa.String()),
        sa.Column('post_id', sa.String()),
        sa.Column('parent_id', sa.String()),
        sa.Column('comment_text', sa.Text()),
        sa.Column('subreddit', sa.String()),
        sa.Column('post_title', sa.Text()),
        sa.Column('post_content', sa.Text()),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),

        sa.Column('ai_approved', sa.Boolean()),
        sa.Column('ai_score', sa.Float()),
        sa.Column('ai_reason', sa.String(200)),
        sa.Column('ai_reviewed_at', sa.DateTime(timezone=True)),

        sa.Column('user_approved', sa.Boolean()),
        sa.Column('user_decided_at', sa.DateTime(timezone=True)),

        sa.Column('remote_id', sa.String()),
        sa.Column('permalink', sa.String()),
        sa.Column('posted_at', sa.DateTime(timezone=True)),
        sa.Column('failure_reason', sa.Text()),

        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_moderation_items_user_id', 'moderation_items', ['user_id'])
    op.create_index('ix_moderation_items_status', 'moderation_items', ['status'])
    op.create_index('idx_moderation_user_status', 'moderation_items', ['user_id', 'status'])

    op.create_table(
        'agent_inbox_items',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('item_type', sa.String(32), nullable=False),
        sa.Column('moderation_item_id', sa.String(), sa.ForeignKey('moderation_items.id', ondelete='CASCADE')),
        sa.Column('title', sa.String()),
        sa.Column('payload', sa.JSON()),
        sa.Column('is_read', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_agent_inbox_items_user_id', 'agent_inbox_items', ['user_id'])
    op.create_index('ix_agent_inbox_items_moderation_item_id', 'agent_inbox_items', ['moderation_item_id'])

    op.create_table(
        'knowledge_items',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('title', sa.String()),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_knowledge_items_user_id', 'knowledge_items', ['user_id'])

    op.create_table(
        'billing_cycles',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('period_start', sa.DateTime(timezone=True), nullable=False),
        sa.Column('period_end', sa.DateTime(timezone=True), nullable=False),
        sa.Column('status', sa.String(16), nullable=False, server_default='active'),
        sa.Column('qualified_lead_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('interest_expressed_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('target_match_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('link_clicked_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('amount_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
        sa.UniqueConstraint('user_id', 'period_start', name='uq_billing_cycle_user_period'),
    )
    op.create_index('ix_billing_cycles_user_id', 'billing_cycles', ['user_id'])

    # One billable qualification per (user, lead); the constraint is the idempotency key
    op.create_table(
        'qualified_lead_events',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('lead_id', sa.String(), nullable=False),
        sa.Column('agent_id', sa.String()),
        sa.Column('qualification_type', sa.String(32), nullable=False),
        sa.Column('billing_status', sa.String(16), nullable=False, server_default='unbilled'),
        sa.Column('billing_cycle_id', sa.String(), sa.ForeignKey('billing_cycles.id')),
        sa.Column('invoice_id', sa.String()),
        sa.Column('metadata', sa.JSON()),
        sa.Column('qualified_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
        sa.UniqueConstraint('user_id', 'lead_id', name='uq_qualified_lead_user_lead'),
    )
    op.create_index('ix_qualified_lead_events_user_id', 'qualified_lead_events', ['user_id'])
    op.create_index('ix_qualified_lead_events_lead_id', 'qualified_lead_events', ['lead_id'])
    op.create_index('ix_qualified_lead_events_billing_status', 'qualified_lead_events', ['billing_status'])
    op.create_index('ix_qualified_lead_events_billing_cycle_id', 'qualified_lead_events', ['billing_cycle_id'])

    op.create_table(
        'billing_events',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('billing_cycle_id', sa.String()),
        sa.Column('qualified_lead_event_id', sa.String()),
        sa.Column('lead_id', sa.String()),
        sa.Column('event_type', sa.String(32), nullable=False),
        sa.Column('amount_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('metadata', sa.JSON()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_billing_events_user_id', 'billing_events', ['user_id'])

    op.create_table(
        'link_click_events',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('lead_id', sa.String(), nullable=False),
        sa.Column('user_id', sa.String()),
        sa.Column('url', sa.Text(), nullable=False),
        sa.Column('tracking_url', sa.Text()),
        sa.Column('ip_address', sa.String()),
        sa.Column('user_agent', sa.Text()),
        sa.Column('referrer', sa.Text()),
        sa.Column('tracked', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('qualification_event_id', sa.String()),
        sa.Column('clicked_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_link_click_events_lead_id', 'link_click_events', ['lead_id'])
    op.create_index('ix_link_click_events_user_id', 'link_click_events', ['user_id'])


def downgrade() -> None:
    op.drop_table('link_click_events')
    op.drop_table('billing_events')
    op.drop_table('qualified_lead_events')
    op.drop_table('billing_cycles')
    op.drop_table('knowledge_items')
    op.drop_table('agent_inbox_items')
    op.drop_table('moderation_items')
    op.drop_table('conversation_messages')
    op.drop_table('conversations')
    op.drop_table('leads')
    op.drop_table('reddit_accounts')
