"""Durable job records with compare-and-set lifecycle updates.

Every status or progress change is a single conditional UPDATE. A write
that loses the race (job already terminal, progress already further along)
affects zero rows and the caller learns so from the return value; nothing
is ever blindly overwritten.

Allowed transitions:
    pending -> processing -> completed | failed
    pending | processing -> cancelled
    pending -> failed (retries exhausted before a worker got it)
"""

from collections.abc import Sequence
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import update
from sqlmodel import col, select

from sharpflow.db import Database, Job, JobStatus, TaskType, utcnow_naive
from sharpflow.errors import JobNotFoundError

log = structlog.get_logger()

_ACTIVE = (JobStatus.PENDING.value, JobStatus.PROCESSING.value)


class JobStore:
    """Owner-scoped access to ``agent_jobs``."""

    def __init__(self, db: Database) -> None:
        self.db = db

    async def _cas(self, job_id: UUID, owner_id: str, *conditions: Any, **values: Any) -> bool:
        stmt = (
            update(Job)
            .where(col(Job.id) == job_id, col(Job.owner_id) == owner_id, *conditions)
            .values(updated_at=utcnow_naive(), **values)
            .execution_options(synchronize_session=False)
        )
        async with self.db.session() as session:
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount > 0

    # =========================================================================
    # Creation and queries
    # =========================================================================

    async def create(
        self,
        owner_id: str,
        task_type: TaskType,
        input_data: dict[str, Any],
        *,
        priority: int,
        max_retries: int,
    ) -> Job:
        """Insert a pending job and commit it."""
        job = Job(
            owner_id=owner_id,
            task_type=task_type.value,
            input_data=input_data,
            priority=priority,
            max_retries=max_retries,
        )
        async with self.db.session() as session:
            session.add(job)
            await session.commit()
        log.info("job_created", job_id=str(job.id), task_type=job.task_type, owner_id=owner_id)
        return job

    async def get(self, job_id: UUID, owner_id: str) -> Job:
        async with self.db.session() as session:
            result = await session.execute(
                select(Job).where(col(Job.id) == job_id, col(Job.owner_id) == owner_id)
            )
            job = result.scalar_one_or_none()
        if job is None:
            raise JobNotFoundError(str(job_id))
        return job

    async def find(self, job_id: UUID, owner_id: str) -> Job | None:
        try:
            return await self.get(job_id, owner_id)
        except JobNotFoundError:
            return None

    async def list_for_owner(
        self,
        owner_id: str,
        *,
        status: JobStatus | None = None,
        task_type: TaskType | None = None,
        limit: int = 50,
    ) -> Sequence[Job]:
        """Most recent jobs first."""
        stmt = select(Job).where(col(Job.owner_id) == owner_id)
        if status is not None:
            stmt = stmt.where(col(Job.status) == status.value)
        if task_type is not None:
            stmt = stmt.where(col(Job.task_type) == task_type.value)
        stmt = stmt.order_by(col(Job.created_at).desc()).limit(limit)
        async with self.db.session() as session:
            result = await session.execute(stmt)
            return result.scalars().all()

    async def is_cancelled(self, job_id: UUID, owner_id: str) -> bool:
        async with self.db.session() as session:
            result = await session.execute(
                select(Job.status).where(col(Job.id) == job_id, col(Job.owner_id) == owner_id)
            )
            status = result.scalar_one_or_none()
        return status == JobStatus.CANCELLED.value

    async def find_stale_pending(self, older_than: datetime, *, limit: int = 100) -> Sequence[Job]:
        """Pending jobs no worker has touched since ``older_than``.

        Used by the reconciliation sweep; deliberately not owner-scoped.
        """
        stmt = (
            select(Job)
            .where(
                col(Job.status) == JobStatus.PENDING.value,
                col(Job.attempt) == 0,
                col(Job.updated_at) < older_than,
            )
            .order_by(col(Job.created_at))
            .limit(limit)
        )
        async with self.db.session() as session:
            result = await session.execute(stmt)
            return result.scalars().all()

    # =========================================================================
    # Compare-and-set writes
    # =========================================================================

    async def touch(self, job_id: UUID, owner_id: str) -> bool:
        """Bump updated_at on a pending job so the sweep waits another grace period."""
        return await self._cas(job_id, owner_id, col(Job.status) == JobStatus.PENDING.value)

    async def record_attempt(self, job_id: UUID, owner_id: str, attempt: int) -> bool:
        """Mirror the delivery attempt number onto the job."""
        return await self._cas(
            job_id,
            owner_id,
            col(Job.status).in_(_ACTIVE),
            col(Job.attempt) < attempt,
            attempt=attempt,
        )

    async def mark_processing(self, job_id: UUID, owner_id: str) -> bool:
        """pending -> processing. False if the job was not pending."""
        now = utcnow_naive()
        return await self._cas(
            job_id,
            owner_id,
            col(Job.status) == JobStatus.PENDING.value,
            status=JobStatus.PROCESSING.value,
            started_at=now,
        )

    async def advance_progress(self, job_id: UUID, owner_id: str, progress: int) -> bool:
        """Raise progress while processing. Never lowers it."""
        progress = max(0, min(100, progress))
        return await self._cas(
            job_id,
            owner_id,
            col(Job.status) == JobStatus.PROCESSING.value,
            col(Job.progress) < progress,
            progress=progress,
        )

    async def complete(self, job_id: UUID, owner_id: str, output: dict[str, Any]) -> bool:
        """processing -> completed with the final output."""
        return await self._cas(
            job_id,
            owner_id,
            col(Job.status) == JobStatus.PROCESSING.value,
            status=JobStatus.COMPLETED.value,
            progress=100,
            output_data=output,
            error_message=None,
            completed_at=utcnow_naive(),
        )

    async def fail(self, job_id: UUID, owner_id: str, error: str) -> bool:
        """pending | processing -> failed, capturing the last error."""
        return await self._cas(
            job_id,
            owner_id,
            col(Job.status).in_(_ACTIVE),
            status=JobStatus.FAILED.value,
            error_message=error,
            completed_at=utcnow_naive(),
        )

    async def cancel(self, job_id: UUID, owner_id: str) -> bool:
        """pending | processing -> cancelled."""
        return await self._cas(
            job_id,
            owner_id,
            col(Job.status).in_(_ACTIVE),
            status=JobStatus.CANCELLED.value,
            completed_at=utcnow_naive(),
        )

    async def record_retry(self, job_id: UUID, owner_id: str, error: str) -> bool:
        """Consume one retry and record the error that caused it.

        False when the retry budget is already spent or the job is no
        longer active; the caller should then fail the job instead.
        """
        return await self._cas(
            job_id,
            owner_id,
            col(Job.status).in_(_ACTIVE),
            col(Job.retry_count) < col(Job.max_retries),
            retry_count=Job.retry_count + 1,
            error_message=error,
        )


def stale_cutoff(grace_seconds: float) -> datetime:
    return utcnow_naive() - timedelta(seconds=grace_seconds)
