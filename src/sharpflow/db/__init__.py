"""SharpFlow database module - job store and conversation memory tables.

This module provides:
- SQLModel schemas for jobs, artifacts and conversation memory
- Async connection management with SQLAlchemy 2.0

Usage:
    from sharpflow.db import Database, Job

    db = Database.from_settings(settings)
    async with db.session() as session:
        job = await session.get(Job, job_id)
"""

from sharpflow.db.connection import Database
from sharpflow.db.models import (
    ArtifactKind,
    ContextCache,
    ConversationMessage,
    ConversationSession,
    Job,
    JobArtifact,
    JobStatus,
    MemoryPreferences,
    MessageRole,
    MessageType,
    SessionStatus,
    TaskType,
    utcnow_naive,
)

__all__ = [
    # Connection
    "Database",
    # Models
    "ContextCache",
    "ConversationMessage",
    "ConversationSession",
    "Job",
    "JobArtifact",
    "MemoryPreferences",
    # Enums
    "ArtifactKind",
    "JobStatus",
    "MessageRole",
    "MessageType",
    "SessionStatus",
    "TaskType",
    # Helpers
    "utcnow_naive",
]
