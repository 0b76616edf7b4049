"""Workers that claim task deliveries and run their pipelines.

A TaskWorker handles one task type. For every delivery:

    claim -> load job (ack and skip if missing or terminal)
          -> mirror attempt -> pending -> processing (job_started)
          -> steps, each followed by a cancellation check and a progress CAS
          -> processing -> completed (job_completed) -> ack

Events are emitted only after the store write they describe committed, so
an owner never sees progress go backwards. Faults are classified at the
pipeline boundary and never escape ``process``:

    TransientFault                        -> retry with backoff while budget remains
    ValidationFault, TerminalPipelineFault -> fail, ack
    PersistenceFault                      -> leave unacked, pause; visibility timeout redelivers
    JobCancelled                          -> ack

A delivery whose attempt exceeds max_retries + 1 (redelivered after worker
crashes or expired visibility) fails the job instead of running again.
"""

import asyncio
import contextlib
import random
from collections.abc import Iterable
from typing import Any
from uuid import UUID

import structlog
from pydantic import ValidationError

from sharpflow.adapters.execution import Capabilities
from sharpflow.api.event_types import JobEvent
from sharpflow.api.pubsub import EventPublisher
from sharpflow.config import Settings
from sharpflow.db.models import JobStatus, TaskType
from sharpflow.errors import (
    JobCancelled,
    PersistenceFault,
    SharpFlowError,
    TerminalPipelineFault,
    TransientFault,
    ValidationFault,
    classify_exception,
)
from sharpflow.jobs.artifacts import ArtifactStore
from sharpflow.jobs.broker import TaskBroker
from sharpflow.jobs.descriptors import TASK_WORKERS, Delivery, RetryPolicy
from sharpflow.jobs.pipelines import PIPELINES, Pipeline, PipelineContext
from sharpflow.jobs.store import JobStore

log = structlog.get_logger()


class TaskWorker:
    """Runs pipelines for a single task type.

    Usage:
        worker = TaskWorker(TaskType.LEAD_GENERATION, store=store, artifacts=artifacts,
                            broker=broker, publisher=manager, capabilities=caps,
                            settings=settings)
        while await worker.run_once():
            ...
    """

    def __init__(
        self,
        task_type: TaskType,
        *,
        store: JobStore,
        artifacts: ArtifactStore,
        broker: TaskBroker,
        publisher: EventPublisher | None,
        capabilities: Capabilities,
        settings: Settings,
        worker_id: str | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.task_type = task_type
        self.store = store
        self.artifacts = artifacts
        self.broker = broker
        self.publisher = publisher
        self.capabilities = capabilities
        self.settings = settings
        self.worker_id = worker_id or f"{TASK_WORKERS[task_type]}-{task_type.value}"
        self.pipeline: Pipeline = PIPELINES[task_type]
        self.retry_policy = RetryPolicy.from_config(settings.retry_policy_for(task_type.value))
        self._rng = rng

    async def run_once(self) -> bool:
        """Claim and process one delivery. False when the queue had nothing ready."""
        delivery = await self.broker.claim(
            self.task_type, self.settings.visibility_timeout_seconds
        )
        if delivery is None:
            return False
        await self.process(delivery)
        return True

    async def process(self, delivery: Delivery) -> None:
        descriptor = delivery.descriptor
        try:
            await self._execute(delivery)
        except Exception as exc:
            await self._handle_fault(delivery, classify_exception(exc))
        else:
            await self.broker.ack(delivery)
        finally:
            structlog.contextvars.unbind_contextvars("job_id", "attempt")
        log.debug("delivery_processed", job_id=str(descriptor.job_id))

    # =========================================================================
    # Pipeline execution
    # =========================================================================

    async def _execute(self, delivery: Delivery) -> None:
        descriptor = delivery.descriptor
        job_id, owner_id = descriptor.job_id, descriptor.owner_id
        structlog.contextvars.bind_contextvars(job_id=str(job_id), attempt=descriptor.attempt)

        job = await self.store.find(job_id, owner_id)
        if job is None or job.job_status.is_terminal:
            log.info(
                "delivery_skipped",
                worker=self.worker_id,
                reason="missing" if job is None else job.status,
            )
            return

        if descriptor.attempt > job.max_retries + 1:
            # Redelivered after crashes or expired visibility, past the attempt limit
            raise TerminalPipelineFault(
                f"Retries exhausted after redelivery (attempt {descriptor.attempt})",
                details={"last_error": job.error_message},
            )

        try:
            payload = self.pipeline.payload_model.model_validate(job.input_data)
        except ValidationError as e:
            raise ValidationFault(
                "Stored job input is invalid", details={"errors": e.errors(include_url=False)}
            ) from e

        await self.store.record_attempt(job_id, owner_id, descriptor.attempt)

        if job.job_status is JobStatus.PENDING:
            if await self.store.mark_processing(job_id, owner_id):
                log.info("job_started", worker=self.worker_id, task_type=self.task_type)
                await self._emit(
                    JobEvent.JOB_STARTED,
                    owner_id,
                    {"job_id": str(job_id), "task_type": self.task_type.value},
                )
            elif await self.store.is_cancelled(job_id, owner_id):
                raise JobCancelled("Job was cancelled before it started")

        async def report_progress(progress: int) -> None:
            await self._advance(job_id, owner_id, progress)

        async def check_cancelled() -> None:
            if await self.store.is_cancelled(job_id, owner_id):
                raise JobCancelled("Job was cancelled")

        ctx = PipelineContext(
            job_id=job_id,
            owner_id=owner_id,
            attempt=descriptor.attempt,
            payload=payload,
            capabilities=self.capabilities,
            artifacts=self.artifacts,
            report_progress=report_progress,
            check_cancelled=check_cancelled,
        )

        await report_progress(self.pipeline.start_progress)
        for step in self.pipeline.steps:
            await check_cancelled()
            log.debug("pipeline_step_started", step=step.name)
            await step.run(ctx)
            await check_cancelled()
            await report_progress(step.progress)

        result = self.pipeline.result(ctx)
        if await self.store.complete(job_id, owner_id, result):
            log.info("job_completed", worker=self.worker_id, task_type=self.task_type)
            await self._emit(
                JobEvent.JOB_COMPLETED,
                owner_id,
                {"job_id": str(job_id), "task_type": self.task_type.value, "result": result},
            )
        else:
            await check_cancelled()
            log.warning("job_completion_lost", worker=self.worker_id)

    async def _advance(self, job_id: UUID, owner_id: str, progress: int) -> None:
        if await self.store.advance_progress(job_id, owner_id, progress):
            await self._emit(
                JobEvent.JOB_PROGRESS, owner_id, {"job_id": str(job_id), "progress": progress}
            )

    # =========================================================================
    # Fault handling
    # =========================================================================

    async def _handle_fault(self, delivery: Delivery, fault: SharpFlowError) -> None:
        descriptor = delivery.descriptor
        job_id, owner_id = descriptor.job_id, descriptor.owner_id

        if isinstance(fault, JobCancelled):
            log.info("job_cancelled_during_run", worker=self.worker_id)
            await self.broker.ack(delivery)
            return

        if isinstance(fault, PersistenceFault):
            # Unacked: the visibility timeout hands it out again
            log.error("job_store_unavailable", worker=self.worker_id, error=fault.message)
            await asyncio.sleep(self.settings.persistence_pause_seconds)
            return

        try:
            if isinstance(fault, TransientFault) and await self.store.record_retry(
                job_id, owner_id, fault.message
            ):
                delay = self.retry_policy.delay_for(descriptor.attempt, rng=self._rng)
                await self.broker.retry(delivery, delay)
                log.warning(
                    "job_retry_scheduled",
                    worker=self.worker_id,
                    error=fault.message,
                    delay=round(delay, 2),
                )
                return

            if await self.store.fail(job_id, owner_id, fault.message):
                log.error(
                    "job_failed",
                    worker=self.worker_id,
                    task_type=self.task_type,
                    error_type=type(fault).__name__,
                    error=fault.message,
                )
                await self._emit(
                    JobEvent.JOB_FAILED,
                    owner_id,
                    {
                        "job_id": str(job_id),
                        "task_type": self.task_type.value,
                        "error": fault.message,
                    },
                )
            await self.broker.ack(delivery)
        except PersistenceFault as e:
            log.error("job_fault_not_recorded", worker=self.worker_id, error=e.message)
            await asyncio.sleep(self.settings.persistence_pause_seconds)

    async def _emit(self, event: JobEvent, owner_id: str, data: dict[str, Any]) -> None:
        """Publish an event; delivery is best-effort and never fails the job."""
        if self.publisher is None:
            return
        try:
            await self.publisher.publish(event.value, data, owner_id=owner_id)
        except Exception as e:
            log.debug("event_publish_failed", event=event.value, error=str(e))


class WorkerPool:
    """N independent TaskWorkers per task type plus the redelivery sweep.

    Usage:
        pool = WorkerPool(settings, store=store, artifacts=artifacts, broker=broker,
                          publisher=manager, capabilities=caps)
        await pool.start()
        ...
        await pool.stop()
    """

    def __init__(
        self,
        settings: Settings,
        *,
        store: JobStore,
        artifacts: ArtifactStore,
        broker: TaskBroker,
        publisher: EventPublisher | None,
        capabilities: Capabilities,
        task_types: Iterable[TaskType] | None = None,
        concurrency: int | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.settings = settings
        self.broker = broker
        self.concurrency = concurrency or settings.worker_concurrency
        self.workers: list[TaskWorker] = [
            TaskWorker(
                task_type,
                store=store,
                artifacts=artifacts,
                broker=broker,
                publisher=publisher,
                capabilities=capabilities,
                settings=settings,
                worker_id=f"{TASK_WORKERS[task_type]}-{task_type.value}-{n}",
                rng=rng,
            )
            for task_type in (task_types or list(TaskType))
            for n in range(self.concurrency)
        ]
        self._stop = asyncio.Event()
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def start(self) -> None:
        if self._tasks:
            return
        self._stop.clear()
        for worker in self.workers:
            self._tasks.append(asyncio.create_task(self._loop(worker), name=worker.worker_id))
        self._tasks.append(asyncio.create_task(self._sweep(), name="redelivery-sweep"))
        log.info("worker_pool_started", workers=len(self.workers))

    async def stop(self) -> None:
        self._stop.set()
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()
        log.info("worker_pool_stopped")

    async def run_until_idle(self, max_rounds: int = 100) -> int:
        """Process deliveries without background tasks until nothing is ready.

        Returns the number of deliveries processed. Tests and one-shot CLI use.
        """
        processed = 0
        for _ in range(max_rounds):
            await self.broker.redeliver_expired()
            handled = [await worker.run_once() for worker in self.workers]
            if not any(handled):
                break
            processed += sum(handled)
        return processed

    async def _loop(self, worker: TaskWorker) -> None:
        while not self._stop.is_set():
            try:
                handled = await worker.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Broker unavailable; keep the loop alive
                log.error("worker_claim_failed", worker=worker.worker_id, error=str(e))
                handled = False
            if not handled:
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(
                        self._stop.wait(), timeout=self.settings.worker_poll_delay
                    )

    async def _sweep(self) -> None:
        while not self._stop.is_set():
            try:
                redelivered = await self.broker.redeliver_expired()
                if redelivered:
                    log.info("expired_deliveries_redelivered", count=redelivered)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.error("redelivery_sweep_failed", error=str(e))
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(
                    self._stop.wait(), timeout=self.settings.redelivery_sweep_seconds
                )
