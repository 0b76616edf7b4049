"""WebSocket event type constants.

Centralizes event names to prevent typos causing silent failures.
Dashboard clients switch on these strings.
"""

from enum import StrEnum


class JobEvent(StrEnum):
    """Events pushed to an owner's live connections."""

    JOB_STARTED = "job_started"
    JOB_PROGRESS = "job_progress"
    JOB_COMPLETED = "job_completed"
    JOB_FAILED = "job_failed"
    JOB_CANCELLED = "job_cancelled"
    CONNECTION_ESTABLISHED = "connection_established"
    JOBS_SNAPSHOT = "jobs_snapshot"
