"""add conversation memory tables

Revision ID: c7d2f9a4e813
Revises: a1c3e5f70b21
Create Date: 2026-10-02 16:40:00

"""

from collections.abc import Sequence

import sqlalchemy as sa
import sqlmodel.sql.sqltypes
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "c7d2f9a4e813"
down_revision: str | Sequence[str] | None = "a1c3e5f70b21"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create conversation sessions, messages, context cache and preferences."""
    op.create_table(
        "conversation_sessions",
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("owner_id", sqlmodel.sql.sqltypes.AutoString(length=64), nullable=False),
        sa.Column("agent_id", sqlmodel.sql.sqltypes.AutoString(length=32), nullable=False),
        sa.Column(
            "status", sa.String(length=16), server_default=sa.text("'active'"), nullable=False
        ),
        sa.Column("title", sqlmodel.sql.sqltypes.AutoString(length=255), nullable=False),
        sa.Column("context_summary", sa.Text(), nullable=True),
        sa.Column("last_activity_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_conversation_sessions_owner_agent_status",
        "conversation_sessions",
        ["owner_id", "agent_id", "status"],
        unique=False,
    )
    op.create_index(
        op.f("ix_conversation_sessions_last_activity_at"),
        "conversation_sessions",
        ["last_activity_at"],
        unique=False,
    )
    # At most one active session per (owner, agent)
    op.create_index(
        "ux_conversation_sessions_active",
        "conversation_sessions",
        ["owner_id", "agent_id"],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
    )

    op.create_table(
        "conversation_messages",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("session_id", sa.Uuid(), nullable=False),
        sa.Column("owner_id", sqlmodel.sql.sqltypes.AutoString(length=64), nullable=False),
        sa.Column("agent_id", sqlmodel.sql.sqltypes.AutoString(length=32), nullable=False),
        sa.Column("role", sqlmodel.sql.sqltypes.AutoString(length=16), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("message_type", sqlmodel.sql.sqltypes.AutoString(length=16), nullable=False),
        sa.Column(
            "context_data",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("is_context_relevant", sa.Boolean(), nullable=False),
        sa.Column("token_count", sa.Integer(), nullable=False),
        sa.Column("parent_message_id", sa.Uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["parent_message_id"], ["conversation_messages.id"]),
        sa.ForeignKeyConstraint(["session_id"], ["conversation_sessions.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_conversation_messages_session_created",
        "conversation_messages",
        ["session_id", "created_at"],
        unique=False,
    )
    op.create_index(
        "ix_conversation_messages_owner_agent",
        "conversation_messages",
        ["owner_id", "agent_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "conversation_context_cache",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("cache_key", sqlmodel.sql.sqltypes.AutoString(length=96), nullable=False),
        sa.Column("agent_id", sqlmodel.sql.sqltypes.AutoString(length=32), nullable=False),
        sa.Column("owner_id", sqlmodel.sql.sqltypes.AutoString(length=64), nullable=False),
        sa.Column("session_id", sa.Uuid(), nullable=True),
        sa.Column("context_summary", sa.Text(), nullable=False),
        sa.Column("message_count", sa.Integer(), nullable=False),
        sa.Column("total_tokens", sa.Integer(), nullable=False),
        sa.Column("last_updated_at", sa.DateTime(), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("cache_key", "agent_id", name="uq_context_cache_key_agent"),
    )
    op.create_index(
        op.f("ix_conversation_context_cache_owner_id"),
        "conversation_context_cache",
        ["owner_id"],
        unique=False,
    )
    op.create_index(
        op.f("ix_conversation_context_cache_expires_at"),
        "conversation_context_cache",
        ["expires_at"],
        unique=False,
    )

    op.create_table(
        "agent_memory_preferences",
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("owner_id", sqlmodel.sql.sqltypes.AutoString(length=64), nullable=False),
        sa.Column("agent_id", sqlmodel.sql.sqltypes.AutoString(length=32), nullable=False),
        sa.Column("max_context_messages", sa.Integer(), nullable=False),
        sa.Column("max_context_tokens", sa.Integer(), nullable=False),
        sa.Column("auto_summarize_threshold", sa.Integer(), nullable=False),
        sa.Column("retain_system_messages", sa.Boolean(), nullable=False),
        sa.Column("retain_error_messages", sa.Boolean(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("owner_id", "agent_id", name="uq_memory_preferences_owner_agent"),
    )


def downgrade() -> None:
    """Drop conversation memory tables."""
    op.drop_table("agent_memory_preferences")
    op.drop_index(
        op.f("ix_conversation_context_cache_expires_at"), table_name="conversation_context_cache"
    )
    op.drop_index(
        op.f("ix_conversation_context_cache_owner_id"), table_name="conversation_context_cache"
    )
    op.drop_table("conversation_context_cache")
    op.drop_index("ix_conversation_messages_owner_agent", table_name="conversation_messages")
    op.drop_index("ix_conversation_messages_session_created", table_name="conversation_messages")
    op.drop_table("conversation_messages")
    op.drop_index("ux_conversation_sessions_active", table_name="conversation_sessions")
    op.drop_index(
        op.f("ix_conversation_sessions_last_activity_at"), table_name="conversation_sessions"
    )
    op.drop_index("ix_conversation_sessions_owner_agent_status", table_name="conversation_sessions")
    op.drop_table("conversation_sessions")
