"""Tests for TaskWorker pipelines, retries, redelivery and cancellation."""

import random
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest

from sharpflow.db import ArtifactKind, JobStatus, TaskType
from sharpflow.errors import PersistenceFault, TransientFault
from sharpflow.jobs.descriptors import TaskDescriptor
from sharpflow.jobs.worker import TaskWorker, WorkerPool

OWNER = "owner-a"


class SimulatedCrash(BaseException):
    """Stands in for the worker process dying mid-pipeline."""


@pytest.fixture
def make_worker(store, artifacts, broker, publisher, capabilities, settings):
    def _make(task_type: TaskType, **overrides) -> TaskWorker:
        kwargs = {
            "store": store,
            "artifacts": artifacts,
            "broker": broker,
            "publisher": publisher,
            "capabilities": capabilities,
            "settings": settings,
            "rng": random.Random(7),
        }
        kwargs.update(overrides)
        return TaskWorker(task_type, **kwargs)

    return _make


class TestLeadGeneration:
    """A lead job from submission to completion."""

    @pytest.mark.asyncio
    async def test_runs_to_completion_with_monotonic_progress(
        self, submission, store, make_worker, publisher, lead_payload
    ) -> None:
        """Pending -> processing at 10 -> completed at 100 with a result summary."""
        job_id = await submission.submit(OWNER, "lead_generation", lead_payload)
        job = await store.get(job_id, OWNER)
        assert job.status == JobStatus.PENDING
        assert job.progress == 0

        assert await make_worker(TaskType.LEAD_GENERATION).run_once() is True

        job = await store.get(job_id, OWNER)
        assert job.status == JobStatus.COMPLETED
        assert job.progress == 100
        assert job.started_at is not None
        assert job.completed_at is not None
        assert job.output_data["leadsFound"] == 2

        names = publisher.names()
        assert names[0] == "job_started"
        assert names[-1] == "job_completed"
        assert publisher.progress() == [10, 50, 80, 90]
        assert all(owner == OWNER for _, _, owner in publisher.events)

    @pytest.mark.asyncio
    async def test_duplicate_leads_stored_once(
        self, submission, artifacts, make_worker, lead_payload
    ) -> None:
        """Leads with the same natural key collapse into one artifact row."""
        job_id = await submission.submit(OWNER, "lead_generation", lead_payload)
        await make_worker(TaskType.LEAD_GENERATION).run_once()

        assert await artifacts.count(OWNER, ArtifactKind.LEAD) == 2
        assert await artifacts.count(OWNER, ArtifactKind.USAGE, job_id=job_id) == 1

    @pytest.mark.asyncio
    async def test_empty_queue_returns_false(self, make_worker) -> None:
        """run_once reports when nothing was ready."""
        assert await make_worker(TaskType.LEAD_GENERATION).run_once() is False


class TestRetries:
    """Transient faults retry with backoff; exhausted budgets fail the job."""

    @pytest.mark.asyncio
    async def test_two_timeouts_then_success(
        self, submission, store, make_worker, capabilities, clock, lead_payload
    ) -> None:
        """Attempts 1 and 2 time out, attempt 3 succeeds."""
        capabilities.lead_search.failures = [
            TransientFault("lead_search timed out after 30s"),
            TransientFault("lead_search timed out after 30s"),
        ]
        job_id = await submission.submit(OWNER, "lead_generation", lead_payload)
        worker = make_worker(TaskType.LEAD_GENERATION)

        assert await worker.run_once() is True
        # Backoff delay keeps the retry invisible until it elapses
        assert await worker.run_once() is False
        clock.advance(10)
        assert await worker.run_once() is True
        clock.advance(10)
        assert await worker.run_once() is True

        job = await store.get(job_id, OWNER)
        assert job.status == JobStatus.COMPLETED
        assert job.retry_count == 2
        assert job.attempt == 3
        assert capabilities.lead_search.calls == 3

    @pytest.mark.asyncio
    async def test_fourth_timeout_fails_with_last_error(
        self, submission, store, broker, make_worker, capabilities, clock, publisher, lead_payload
    ) -> None:
        """max_retries=3 allows four attempts; the fourth failure is terminal."""
        capabilities.lead_search.failures = [
            TransientFault(f"lead_search timed out (attempt {n})") for n in range(1, 5)
        ]
        job_id = await submission.submit(OWNER, "lead_generation", lead_payload)
        worker = make_worker(TaskType.LEAD_GENERATION)

        for _ in range(4):
            assert await worker.run_once() is True
            clock.advance(60)

        job = await store.get(job_id, OWNER)
        assert job.status == JobStatus.FAILED
        assert job.retry_count == 3
        assert job.error_message == "lead_search timed out (attempt 4)"
        assert publisher.names().count("job_failed") == 1
        assert await worker.run_once() is False
        stats = await broker.stats()
        assert stats["lead_generation"] == {"ready": 0, "delayed": 0, "inflight": 0}

    @pytest.mark.asyncio
    async def test_terminal_fault_fails_without_retry(
        self, submission, store, make_worker, capabilities
    ) -> None:
        """A profile that does not exist fails the job on the first attempt."""
        capabilities.profile_fetcher.profile = {}
        job_id = await submission.submit(
            OWNER, "profile_research", {"linkedinUrl": "https://linkedin.com/in/ghost"}
        )
        await make_worker(TaskType.PROFILE_RESEARCH).run_once()

        job = await store.get(job_id, OWNER)
        assert job.status == JobStatus.FAILED
        assert job.retry_count == 0
        assert job.error_message == "Profile not found"

    @pytest.mark.asyncio
    async def test_unknown_exception_is_retried(
        self, submission, store, make_worker, capabilities, clock, lead_payload
    ) -> None:
        """Unclassified errors get the bounded retry treatment."""
        capabilities.lead_search.failures = [RuntimeError("socket hiccup")]
        job_id = await submission.submit(OWNER, "lead_generation", lead_payload)
        worker = make_worker(TaskType.LEAD_GENERATION)

        await worker.run_once()
        job = await store.get(job_id, OWNER)
        assert job.status == JobStatus.PROCESSING
        assert job.retry_count == 1
        assert "socket hiccup" in job.error_message

        clock.advance(10)
        await worker.run_once()
        assert (await store.get(job_id, OWNER)).status == JobStatus.COMPLETED


class TestRedelivery:
    """At-least-once delivery must not duplicate side effects."""

    @pytest.mark.asyncio
    async def test_crashed_campaign_resumes_without_resending(
        self, submission, store, artifacts, broker, make_worker, capabilities, clock, settings
    ) -> None:
        """Leads already messaged before the crash are skipped on redelivery."""
        delivery = capabilities.message_delivery
        delivery.fail_for["L2"] = SimulatedCrash()
        job_id = await submission.submit(
            OWNER, "message_campaign", {"campaignId": "CMP-7", "leadIds": ["L1", "L2", "L3"]}
        )
        worker = make_worker(TaskType.MESSAGE_CAMPAIGN)

        with pytest.raises(SimulatedCrash):
            await worker.run_once()
        assert delivery.delivered == ["L1"]

        clock.advance(settings.visibility_timeout_seconds + 1)
        assert await broker.redeliver_expired() == 1
        assert await worker.run_once() is True

        job = await store.get(job_id, OWNER)
        assert job.status == JobStatus.COMPLETED
        assert job.attempt == 2
        assert delivery.delivered == ["L1", "L2", "L3"]
        assert job.output_data == {
            "campaignId": "CMP-7",
            "totalLeads": 3,
            "sent": 2,
            "alreadySent": 1,
            "failed": 0,
        }
        assert await artifacts.count(OWNER, ArtifactKind.MESSAGE_DELIVERY) == 3

    @pytest.mark.asyncio
    async def test_rerun_after_crash_does_not_double_count_usage(
        self, submission, store, artifacts, broker, make_worker, clock, settings, lead_payload
    ) -> None:
        """Usage is one row per job however often the pipeline reruns."""

        class CrashAfterUsage:
            def __init__(self) -> None:
                self.crashed = False

            async def publish(self, event, data, *, owner_id) -> None:
                if data.get("progress") == 90 and not self.crashed:
                    self.crashed = True
                    raise SimulatedCrash()

        job_id = await submission.submit(OWNER, "lead_generation", lead_payload)
        worker = make_worker(TaskType.LEAD_GENERATION, publisher=CrashAfterUsage())

        with pytest.raises(SimulatedCrash):
            await worker.run_once()
        assert await artifacts.count(OWNER, ArtifactKind.USAGE, job_id=job_id) == 1

        clock.advance(settings.visibility_timeout_seconds + 1)
        await broker.redeliver_expired()
        assert await worker.run_once() is True

        assert (await store.get(job_id, OWNER)).status == JobStatus.COMPLETED
        assert await artifacts.count(OWNER, ArtifactKind.USAGE, job_id=job_id) == 1
        assert await artifacts.count(OWNER, ArtifactKind.LEAD) == 2

    @pytest.mark.asyncio
    async def test_repeated_crashes_fail_the_job(
        self, submission, store, broker, make_worker, capabilities, clock, settings, publisher,
        lead_payload,
    ) -> None:
        """A job whose worker dies every time stops after max_retries + 1 attempts."""
        capabilities.lead_search.failures = [SimulatedCrash() for _ in range(10)]
        job_id = await submission.submit(OWNER, "lead_generation", lead_payload)
        worker = make_worker(TaskType.LEAD_GENERATION)

        for _ in range(4):
            with pytest.raises(SimulatedCrash):
                await worker.run_once()
            clock.advance(settings.visibility_timeout_seconds + 1)
            assert await broker.redeliver_expired() == 1

        assert await worker.run_once() is True

        job = await store.get(job_id, OWNER)
        assert job.status == JobStatus.FAILED
        assert "Retries exhausted" in job.error_message
        assert capabilities.lead_search.calls == 4
        assert publisher.names().count("job_failed") == 1
        stats = await broker.stats()
        assert stats["lead_generation"] == {"ready": 0, "delayed": 0, "inflight": 0}

    @pytest.mark.asyncio
    async def test_duplicate_delivery_of_finished_job_is_skipped(
        self, submission, broker, make_worker, capabilities, lead_payload
    ) -> None:
        """A second descriptor for a completed job never re-runs the pipeline."""
        job_id = await submission.submit(OWNER, "lead_generation", lead_payload)
        worker = make_worker(TaskType.LEAD_GENERATION)
        await worker.run_once()

        await broker.enqueue(
            TaskDescriptor(
                job_id=job_id, owner_id=OWNER, task_type=TaskType.LEAD_GENERATION, attempt=2
            )
        )
        assert await worker.run_once() is True
        assert capabilities.lead_search.calls == 1

    @pytest.mark.asyncio
    async def test_delivery_for_missing_job_is_acked(self, broker, make_worker) -> None:
        """A descriptor whose job row does not exist is dropped."""
        await broker.enqueue(
            TaskDescriptor(job_id=uuid4(), owner_id=OWNER, task_type=TaskType.INBOX_MONITORING)
        )
        assert await make_worker(TaskType.INBOX_MONITORING).run_once() is True
        stats = await broker.stats()
        assert stats["inbox_monitoring"]["inflight"] == 0


class TestCancellation:
    """Owner cancellation stops pipelines at step boundaries."""

    @pytest.mark.asyncio
    async def test_cancel_during_step_stops_pipeline(
        self, submission, store, broker, make_worker, capabilities, publisher, lead_payload
    ) -> None:
        job_id = await submission.submit(OWNER, "lead_generation", lead_payload)

        async def cancel_mid_search() -> None:
            await submission.cancel_job(OWNER, job_id)

        capabilities.lead_search.on_search = cancel_mid_search
        await make_worker(TaskType.LEAD_GENERATION).run_once()

        job = await store.get(job_id, OWNER)
        assert job.status == JobStatus.CANCELLED
        assert job.progress == 10
        assert "job_completed" not in publisher.names()
        assert "job_cancelled" in publisher.names()
        stats = await broker.stats()
        assert stats["lead_generation"]["inflight"] == 0

    @pytest.mark.asyncio
    async def test_cancelled_before_start_is_skipped(
        self, submission, store, make_worker, capabilities, lead_payload
    ) -> None:
        job_id = await submission.submit(OWNER, "lead_generation", lead_payload)
        await submission.cancel_job(OWNER, job_id)

        assert await make_worker(TaskType.LEAD_GENERATION).run_once() is True
        assert capabilities.lead_search.calls == 0
        assert (await store.get(job_id, OWNER)).status == JobStatus.CANCELLED


class TestPersistenceFaults:
    """A store outage leaves the delivery for the visibility timeout."""

    @pytest.mark.asyncio
    async def test_store_outage_leaves_delivery_unacked(
        self, broker, make_worker, clock, settings
    ) -> None:
        failing_store = MagicMock()
        failing_store.find = AsyncMock(side_effect=PersistenceFault("Store unavailable"))
        worker = make_worker(TaskType.PROFILE_RESEARCH, store=failing_store)
        await broker.enqueue(
            TaskDescriptor(job_id=uuid4(), owner_id=OWNER, task_type=TaskType.PROFILE_RESEARCH)
        )

        assert await worker.run_once() is True
        stats = await broker.stats()
        assert stats["profile_research"]["inflight"] == 1

        clock.advance(settings.visibility_timeout_seconds + 1)
        assert await broker.redeliver_expired() == 1
        redelivered = await broker.claim(TaskType.PROFILE_RESEARCH, 30)
        assert redelivered is not None
        assert redelivered.descriptor.attempt == 2


class TestOtherPipelines:
    """Profile research and inbox monitoring end to end."""

    @pytest.mark.asyncio
    async def test_profile_research_uses_company_domain(
        self, submission, store, artifacts, make_worker, capabilities, publisher
    ) -> None:
        job_id = await submission.submit(
            OWNER, "profile_research", {"linkedinUrl": "https://linkedin.com/in/adapark/"}
        )
        await make_worker(TaskType.PROFILE_RESEARCH).run_once()

        job = await store.get(job_id, OWNER)
        assert job.status == JobStatus.COMPLETED
        assert job.output_data["name"] == "Ada Park"
        assert capabilities.reputation_lookup.domains == ["byteworks.dev"]
        assert publisher.progress() == [5, 20, 40, 60, 80, 90]
        reports = await artifacts.list_for_job(OWNER, job_id, kind=ArtifactKind.RESEARCH_REPORT)
        assert len(reports) == 1

    @pytest.mark.asyncio
    async def test_inbox_monitoring_stores_identified_messages(
        self, submission, store, make_worker
    ) -> None:
        job_id = await submission.submit(OWNER, "inbox_monitoring", {"mailbox": "Sales@Acme.io"})
        await make_worker(TaskType.INBOX_MONITORING).run_once()

        job = await store.get(job_id, OWNER)
        assert job.output_data == {"mailbox": "sales@acme.io", "messagesFound": 3, "stored": 2}


class TestWorkerPool:
    """Pool wiring and the synchronous drain helper."""

    @pytest.mark.asyncio
    async def test_run_until_idle_processes_every_queue(
        self, settings, submission, store, artifacts, broker, publisher, capabilities,
        lead_payload,
    ) -> None:
        pool = WorkerPool(
            settings,
            store=store,
            artifacts=artifacts,
            broker=broker,
            publisher=publisher,
            capabilities=capabilities,
        )
        lead_id = await submission.submit(OWNER, "lead_generation", lead_payload)
        inbox_id = await submission.submit(OWNER, "inbox_monitoring", {"mailbox": "a@b.io"})

        assert await pool.run_until_idle() == 2
        assert (await store.get(lead_id, OWNER)).status == JobStatus.COMPLETED
        assert (await store.get(inbox_id, OWNER)).status == JobStatus.COMPLETED

    def test_worker_ids_name_the_pool(
        self, settings, store, artifacts, broker, publisher, capabilities
    ) -> None:
        pool = WorkerPool(
            settings,
            store=store,
            artifacts=artifacts,
            broker=broker,
            publisher=publisher,
            capabilities=capabilities,
            task_types=[TaskType.MESSAGE_CAMPAIGN],
            concurrency=2,
        )
        assert [w.worker_id for w in pool.workers] == [
            "messaging-message_campaign-0",
            "messaging-message_campaign-1",
        ]
        assert pool.running is False
