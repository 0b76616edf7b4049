"""add agent jobs tables

Revision ID: a1c3e5f70b21
Revises:
Create Date: 2026-09-28 10:12:00

"""

from collections.abc import Sequence

import sqlalchemy as sa
import sqlmodel.sql.sqltypes
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "a1c3e5f70b21"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create agent_jobs and job_artifacts."""
    op.create_table(
        "agent_jobs",
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("owner_id", sqlmodel.sql.sqltypes.AutoString(length=64), nullable=False),
        sa.Column("task_type", sqlmodel.sql.sqltypes.AutoString(length=32), nullable=False),
        sa.Column(
            "status", sa.String(length=16), server_default=sa.text("'pending'"), nullable=False
        ),
        sa.Column("progress", sa.Integer(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("input_data", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("output_data", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False),
        sa.Column("max_retries", sa.Integer(), nullable=False),
        sa.Column("attempt", sa.Integer(), nullable=False),
        sa.Column("started_at", sa.DateTime(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_agent_jobs_owner_id"), "agent_jobs", ["owner_id"], unique=False)
    op.create_index(op.f("ix_agent_jobs_task_type"), "agent_jobs", ["task_type"], unique=False)
    op.create_index(
        "ix_agent_jobs_owner_created", "agent_jobs", ["owner_id", "created_at"], unique=False
    )
    op.create_index(
        "ix_agent_jobs_status_updated", "agent_jobs", ["status", "updated_at"], unique=False
    )

    op.create_table(
        "job_artifacts",
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("owner_id", sqlmodel.sql.sqltypes.AutoString(length=64), nullable=False),
        sa.Column("job_id", sa.Uuid(), nullable=False),
        sa.Column("kind", sqlmodel.sql.sqltypes.AutoString(length=32), nullable=False),
        sa.Column("natural_key", sqlmodel.sql.sqltypes.AutoString(length=512), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["agent_jobs.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("owner_id", "kind", "natural_key", name="uq_job_artifacts_natural_key"),
    )
    op.create_index(op.f("ix_job_artifacts_owner_id"), "job_artifacts", ["owner_id"], unique=False)
    op.create_index("ix_job_artifacts_job", "job_artifacts", ["job_id"], unique=False)


def downgrade() -> None:
    """Drop agent_jobs and job_artifacts."""
    op.drop_index("ix_job_artifacts_job", table_name="job_artifacts")
    op.drop_index(op.f("ix_job_artifacts_owner_id"), table_name="job_artifacts")
    op.drop_table("job_artifacts")
    op.drop_index("ix_agent_jobs_status_updated", table_name="agent_jobs")
    op.drop_index("ix_agent_jobs_owner_created", table_name="agent_jobs")
    op.drop_index(op.f("ix_agent_jobs_task_type"), table_name="agent_jobs")
    op.drop_index(op.f("ix_agent_jobs_owner_id"), table_name="agent_jobs")
    op.drop_table("agent_jobs")
