"""SQLModel schemas for SharpFlow storage.

This module defines the tables for:
- Agent jobs and the artifacts their pipelines produce
- Conversation sessions, messages, cached summaries and memory preferences

Architecture:
- Job: durable record of one asynchronous unit of work
- JobArtifact: pipeline output rows, unique per (owner, kind, natural key)
- ConversationSession: at most one active session per (owner, agent)
- ConversationMessage: append-only dialogue history
- ContextCache: TTL-bound summaries, always re-derivable from messages
- MemoryPreferences: per (owner, agent) context window overrides
"""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column, Index, String, Text, UniqueConstraint, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlmodel import Field, SQLModel

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow_naive() -> datetime:
    """Get current UTC time as naive datetime (for TIMESTAMP WITHOUT TIME ZONE)."""
    return datetime.now(UTC).replace(tzinfo=None)


# =============================================================================
# Enums
# =============================================================================


class TaskType(StrEnum):
    """Kinds of work a job can request."""

    LEAD_GENERATION = "lead_generation"
    PROFILE_RESEARCH = "profile_research"
    MESSAGE_CAMPAIGN = "message_campaign"
    INBOX_MONITORING = "inbox_monitoring"


class JobStatus(StrEnum):
    """Lifecycle status of a job."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class ArtifactKind(StrEnum):
    """Kinds of rows produced by pipelines."""

    LEAD = "lead"
    RESEARCH_REPORT = "research_report"
    MESSAGE_DELIVERY = "message_delivery"
    INBOX_MESSAGE = "inbox_message"
    USAGE = "usage"


class SessionStatus(StrEnum):
    """Status of a conversation session."""

    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


class MessageRole(StrEnum):
    """Author of a conversation message."""

    user = "user"
    assistant = "assistant"
    system = "system"


class MessageType(StrEnum):
    """Classification of a conversation message."""

    chat = "chat"
    command = "command"
    result = "result"
    error = "error"
    system = "system"


# =============================================================================
# Base Model
# =============================================================================


class TimestampMixin(SQLModel):
    """Mixin for created/updated timestamps."""

    created_at: datetime = Field(
        default_factory=utcnow_naive,
        description="When this record was created",
    )
    updated_at: datetime = Field(
        default_factory=utcnow_naive,
        description="When this record was last updated",
        sa_column_kwargs={"onupdate": utcnow_naive},
    )


# =============================================================================
# Job - durable record of submitted work
# =============================================================================


class Job(TimestampMixin, table=True):
    """A submitted unit of asynchronous work.

    Status and progress are only ever changed through compare-and-set
    updates in ``JobStore``; never assign them on a loaded instance.
    """

    __tablename__ = "agent_jobs"
    __table_args__ = (
        Index("ix_agent_jobs_owner_created", "owner_id", "created_at"),
        Index("ix_agent_jobs_status_updated", "status", "updated_at"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    owner_id: str = Field(max_length=64, index=True, description="Requesting principal")
    task_type: str = Field(max_length=32, index=True, description="See TaskType")

    # Status - stored as string to avoid async enum issues
    status: str = Field(
        default=JobStatus.PENDING.value,
        sa_column=Column(
            String(16),
            nullable=False,
            server_default=text("'pending'"),
        ),
        description="Current lifecycle status (see JobStatus)",
    )
    progress: int = Field(default=0, ge=0, le=100, description="Percent complete")
    priority: int = Field(default=1, ge=0, description="Queue priority class (lower runs sooner)")

    input_data: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSONType, nullable=False),
        description="Validated submission payload",
    )
    output_data: dict[str, Any] | None = Field(
        default=None,
        sa_column=Column(JSONType, nullable=True),
        description="Pipeline result, immutable once written",
    )
    error_message: str | None = Field(
        default=None,
        sa_column=Column(Text, nullable=True),
        description="Latest captured error",
    )

    retry_count: int = Field(default=0, ge=0, description="Retries consumed so far")
    max_retries: int = Field(default=3, ge=0, description="Retries allowed after the first attempt")
    attempt: int = Field(default=0, ge=0, description="Latest delivery attempt number")

    started_at: datetime | None = Field(default=None)
    completed_at: datetime | None = Field(default=None)

    @property
    def job_status(self) -> JobStatus:
        return JobStatus(self.status)

    def to_summary(self) -> dict[str, Any]:
        """Serialize for API responses and push events."""
        return {
            "id": str(self.id),
            "task_type": self.task_type,
            "status": self.status,
            "progress": self.progress,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "error": self.error_message,
            "result": self.output_data,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    def __repr__(self) -> str:
        return f"<Job {self.id} {self.task_type} status={self.status} progress={self.progress}>"


class JobArtifact(TimestampMixin, table=True):
    """A result row produced by a pipeline step.

    Writes are upserts on (owner_id, kind, natural_key), so re-running a
    partially completed pipeline overwrites rather than duplicates.
    """

    __tablename__ = "job_artifacts"
    __table_args__ = (
        UniqueConstraint("owner_id", "kind", "natural_key", name="uq_job_artifacts_natural_key"),
        Index("ix_job_artifacts_job", "job_id"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    owner_id: str = Field(max_length=64, index=True)
    job_id: UUID = Field(foreign_key="agent_jobs.id", description="Job that last wrote this row")
    kind: str = Field(max_length=32, description="See ArtifactKind")
    natural_key: str = Field(max_length=512, description="Stable business identity")
    payload: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSONType, nullable=False),
    )

    def __repr__(self) -> str:
        return f"<JobArtifact {self.kind}:{self.natural_key}>"


# =============================================================================
# Conversation memory
# =============================================================================


class ConversationSession(TimestampMixin, table=True):
    """A dialogue between one owner and one agent."""

    __tablename__ = "conversation_sessions"
    __table_args__ = (
        Index("ix_conversation_sessions_owner_agent_status", "owner_id", "agent_id", "status"),
        # At most one active session per (owner, agent)
        Index(
            "ux_conversation_sessions_active",
            "owner_id",
            "agent_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    owner_id: str = Field(max_length=64)
    agent_id: str = Field(max_length=32)
    status: str = Field(
        default=SessionStatus.ACTIVE.value,
        sa_column=Column(String(16), nullable=False, server_default=text("'active'")),
    )
    title: str = Field(max_length=255)
    context_summary: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    last_activity_at: datetime = Field(default_factory=utcnow_naive, index=True)

    def __repr__(self) -> str:
        return f"<ConversationSession {self.id} {self.agent_id} status={self.status}>"


class ConversationMessage(SQLModel, table=True):
    """One message in a session. Append-only."""

    __tablename__ = "conversation_messages"
    __table_args__ = (
        Index("ix_conversation_messages_session_created", "session_id", "created_at"),
        Index("ix_conversation_messages_owner_agent", "owner_id", "agent_id", "created_at"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    session_id: UUID = Field(foreign_key="conversation_sessions.id")
    owner_id: str = Field(max_length=64)
    agent_id: str = Field(max_length=32)
    role: str = Field(max_length=16, description="See MessageRole")
    content: str = Field(sa_column=Column(Text, nullable=False))
    message_type: str = Field(default=MessageType.chat.value, max_length=16)
    context_data: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSONType, nullable=False),
    )
    is_context_relevant: bool = Field(default=True)
    token_count: int = Field(default=0, ge=0)
    parent_message_id: UUID | None = Field(default=None, foreign_key="conversation_messages.id")
    created_at: datetime = Field(default_factory=utcnow_naive)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "session_id": str(self.session_id),
            "role": self.role,
            "content": self.content,
            "message_type": self.message_type,
            "is_context_relevant": self.is_context_relevant,
            "token_count": self.token_count,
            "parent_message_id": str(self.parent_message_id) if self.parent_message_id else None,
            "created_at": self.created_at.isoformat(),
        }


class ContextCache(SQLModel, table=True):
    """Cached summary of the part of a conversation outside the context window."""

    __tablename__ = "conversation_context_cache"
    __table_args__ = (
        UniqueConstraint("cache_key", "agent_id", name="uq_context_cache_key_agent"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    cache_key: str = Field(max_length=96, description="Session id or owner-wide scope")
    agent_id: str = Field(max_length=32)
    owner_id: str = Field(max_length=64, index=True)
    session_id: UUID | None = Field(default=None)
    context_summary: str = Field(sa_column=Column(Text, nullable=False))
    message_count: int = Field(default=0, ge=0, description="Messages covered by the summary")
    total_tokens: int = Field(default=0, ge=0)
    last_updated_at: datetime = Field(default_factory=utcnow_naive)
    expires_at: datetime = Field(index=True)


class MemoryPreferences(TimestampMixin, table=True):
    """Per (owner, agent) overrides of the context window."""

    __tablename__ = "agent_memory_preferences"
    __table_args__ = (
        UniqueConstraint("owner_id", "agent_id", name="uq_memory_preferences_owner_agent"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    owner_id: str = Field(max_length=64)
    agent_id: str = Field(max_length=32)
    max_context_messages: int = Field(ge=1, le=500)
    max_context_tokens: int = Field(ge=1, le=200_000)
    auto_summarize_threshold: int = Field(default=50, ge=5)
    retain_system_messages: bool = Field(default=True)
    retain_error_messages: bool = Field(default=False)
