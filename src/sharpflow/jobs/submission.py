"""Job submission, owner-facing job queries and the reconciliation sweep.

A job is committed as pending before its descriptor is enqueued. If the
enqueue then fails the job is not lost: ``reconcile_pending`` finds pending
jobs no worker has touched and enqueues them again.
"""

from collections.abc import Sequence
from typing import Any
from uuid import UUID

import structlog

from sharpflow.api.event_types import JobEvent
from sharpflow.api.pubsub import EventPublisher
from sharpflow.config import Settings
from sharpflow.db.models import Job, JobStatus, TaskType
from sharpflow.errors import ValidationFault
from sharpflow.jobs.broker import TaskBroker
from sharpflow.jobs.descriptors import TaskDescriptor
from sharpflow.jobs.schemas import parse_task_type, validate_payload
from sharpflow.jobs.store import JobStore, stale_cutoff
from sharpflow.routing.intents import IntentResult

log = structlog.get_logger()


class JobSubmissionService:
    """Creates jobs and hands them to the broker.

    Usage:
        service = JobSubmissionService(settings, store, broker, publisher=manager)
        job_id = await service.submit(owner_id, "lead_generation", {...})
    """

    def __init__(
        self,
        settings: Settings,
        store: JobStore,
        broker: TaskBroker,
        publisher: EventPublisher | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.broker = broker
        self.publisher = publisher

    async def submit(
        self,
        owner_id: str,
        task_type: TaskType | str,
        input_data: dict[str, Any] | None,
        priority: int | None = None,
    ) -> UUID:
        """Validate, persist as pending, then enqueue. Returns the job id.

        Raises:
            ValidationFault: unknown task type or invalid payload (nothing is persisted)
            PersistenceFault: the job store is unavailable
        """
        if not owner_id:
            raise ValidationFault("Owner id is required")
        task = parse_task_type(task_type)
        payload = validate_payload(task, input_data or {})
        policy = self.settings.retry_policy_for(task.value)
        if priority is not None and priority < 0:
            raise ValidationFault("Priority must be >= 0", details={"priority": priority})

        job = await self.store.create(
            owner_id,
            task,
            payload,
            priority=policy.priority if priority is None else priority,
            max_retries=policy.max_retries,
        )
        await self._enqueue(job)
        return job.id

    async def submit_from_intent(self, owner_id: str, intent: IntentResult) -> UUID:
        """Submit the job a classified intent asks for."""
        task_type = intent.type.task_type
        if task_type is None:
            raise ValidationFault(
                "Request does not map to a task", details={"intent": intent.type.value}
            )
        if intent.missing_parameters:
            raise ValidationFault(
                f"Missing parameters for {task_type.value}: "
                + ", ".join(intent.missing_parameters),
                details={"task_type": task_type.value, "fields": intent.missing_parameters},
            )
        return await self.submit(owner_id, task_type, intent.parameters)

    async def _enqueue(self, job: Job) -> bool:
        descriptor = TaskDescriptor(
            job_id=job.id,
            owner_id=job.owner_id,
            task_type=TaskType(job.task_type),
            parameters=job.input_data,
            priority=job.priority,
        )
        try:
            await self.broker.enqueue(descriptor)
        except Exception as e:
            # The job row is committed; the reconciliation sweep will enqueue it
            log.error(
                "job_enqueue_failed",
                job_id=str(job.id),
                task_type=job.task_type,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        log.info("job_enqueued", job_id=str(job.id), task_type=job.task_type)
        return True

    async def reconcile_pending(self, grace_seconds: float | None = None) -> int:
        """Re-enqueue pending jobs that no worker has picked up within the grace period."""
        grace = self.settings.reconcile_grace_seconds if grace_seconds is None else grace_seconds
        stale = await self.store.find_stale_pending(stale_cutoff(grace))
        requeued = 0
        for job in stale:
            if await self._enqueue(job):
                await self.store.touch(job.id, job.owner_id)
                requeued += 1
        if stale:
            log.info("pending_jobs_reconciled", found=len(stale), requeued=requeued)
        return requeued

    # =========================================================================
    # Owner-facing queries
    # =========================================================================

    async def get_job(self, owner_id: str, job_id: UUID) -> Job:
        return await self.store.get(job_id, owner_id)

    async def list_jobs(
        self,
        owner_id: str,
        *,
        status: JobStatus | None = None,
        task_type: TaskType | None = None,
        limit: int = 50,
    ) -> Sequence[Job]:
        return await self.store.list_for_owner(
            owner_id, status=status, task_type=task_type, limit=max(1, min(limit, 200))
        )

    async def cancel_job(self, owner_id: str, job_id: UUID) -> Job:
        """Cancel a pending or processing job.

        Raises:
            JobNotFoundError: no such job for this owner
            ValidationFault: the job already finished
        """
        job = await self.store.get(job_id, owner_id)
        if not await self.store.cancel(job_id, owner_id):
            current = await self.store.get(job_id, owner_id)
            raise ValidationFault(
                f"Job is already {current.status}", details={"status": current.status}
            )
        log.info("job_cancelled", job_id=str(job_id), owner_id=owner_id)
        if self.publisher is not None:
            try:
                await self.publisher.publish(
                    JobEvent.JOB_CANCELLED.value,
                    {"job_id": str(job_id), "task_type": job.task_type},
                    owner_id=owner_id,
                )
            except Exception as e:
                log.debug("event_publish_failed", event=JobEvent.JOB_CANCELLED.value, error=str(e))
        return await self.store.get(job_id, owner_id)

