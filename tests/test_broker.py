"""Tests for the in-memory task broker and retry policy."""

import random
from uuid import uuid4

import pytest

from sharpflow.db import TaskType
from sharpflow.errors import TransientFault
from sharpflow.jobs.descriptors import RetryPolicy, TaskDescriptor


def _descriptor(priority: int = 1, task_type: TaskType = TaskType.LEAD_GENERATION):
    return TaskDescriptor(
        job_id=uuid4(), owner_id="owner-a", task_type=task_type, priority=priority
    )


class TestOrdering:
    """Priority classes and FIFO within a class."""

    @pytest.mark.asyncio
    async def test_lower_priority_value_runs_first(self, broker) -> None:
        low = _descriptor(priority=3)
        high = _descriptor(priority=1)
        await broker.enqueue(low)
        await broker.enqueue(high)

        first = await broker.claim(TaskType.LEAD_GENERATION, 30)
        second = await broker.claim(TaskType.LEAD_GENERATION, 30)
        assert first.descriptor.job_id == high.job_id
        assert second.descriptor.job_id == low.job_id

    @pytest.mark.asyncio
    async def test_fifo_within_priority(self, broker) -> None:
        descriptors = [_descriptor(priority=2) for _ in range(3)]
        for d in descriptors:
            await broker.enqueue(d)

        claimed = [await broker.claim(TaskType.LEAD_GENERATION, 30) for _ in range(3)]
        assert [c.descriptor.job_id for c in claimed] == [d.job_id for d in descriptors]

    @pytest.mark.asyncio
    async def test_queues_are_per_task_type(self, broker) -> None:
        await broker.enqueue(_descriptor(task_type=TaskType.INBOX_MONITORING))
        assert await broker.claim(TaskType.LEAD_GENERATION, 30) is None
        assert await broker.claim(TaskType.INBOX_MONITORING, 30) is not None


class TestVisibility:
    """Unacknowledged deliveries come back after the visibility timeout."""

    @pytest.mark.asyncio
    async def test_expired_delivery_is_redelivered_with_next_attempt(self, broker, clock) -> None:
        await broker.enqueue(_descriptor())
        delivery = await broker.claim(TaskType.LEAD_GENERATION, 30)

        assert await broker.redeliver_expired() == 0
        clock.advance(31)
        assert await broker.redeliver_expired() == 1

        again = await broker.claim(TaskType.LEAD_GENERATION, 30)
        assert again.descriptor.job_id == delivery.descriptor.job_id
        assert again.descriptor.attempt == 2
        assert again.receipt != delivery.receipt

    @pytest.mark.asyncio
    async def test_stale_ack_is_a_noop(self, broker, clock) -> None:
        """Acking a delivery that already expired does not touch its redelivery."""
        await broker.enqueue(_descriptor())
        stale = await broker.claim(TaskType.LEAD_GENERATION, 30)
        clock.advance(31)
        await broker.redeliver_expired()
        fresh = await broker.claim(TaskType.LEAD_GENERATION, 30)

        assert await broker.ack(stale) is False
        assert await broker.ack(fresh) is True
        stats = await broker.stats()
        assert stats["lead_generation"]["inflight"] == 0

    @pytest.mark.asyncio
    async def test_retry_waits_for_delay(self, broker, clock) -> None:
        await broker.enqueue(_descriptor())
        delivery = await broker.claim(TaskType.LEAD_GENERATION, 30)

        assert await broker.retry(delivery, 5.0) is True
        assert await broker.claim(TaskType.LEAD_GENERATION, 30) is None
        stats = await broker.stats()
        assert stats["lead_generation"]["delayed"] == 1

        clock.advance(5)
        retried = await broker.claim(TaskType.LEAD_GENERATION, 30)
        assert retried.descriptor.attempt == 2
        assert await broker.retry(delivery, 1.0) is False

    @pytest.mark.asyncio
    async def test_closed_broker_rejects_enqueue(self, broker) -> None:
        await broker.close()
        with pytest.raises(TransientFault):
            await broker.enqueue(_descriptor())


class TestRetryPolicy:
    """Capped exponential backoff."""

    def test_exponential_without_jitter(self) -> None:
        policy = RetryPolicy(max_retries=3, backoff_base=2.0, backoff_max=60.0, jitter=0.0)
        assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [2.0, 4.0, 8.0, 16.0]

    def test_delay_is_capped(self) -> None:
        policy = RetryPolicy(backoff_base=2.0, backoff_max=10.0, jitter=0.0)
        assert policy.delay_for(10) == 10.0

    def test_jitter_stays_within_spread(self) -> None:
        policy = RetryPolicy(backoff_base=4.0, backoff_max=60.0, jitter=0.25)
        rng = random.Random(42)
        for _ in range(50):
            assert 3.0 <= policy.delay_for(1, rng=rng) <= 5.0

    def test_can_retry_counts_retries_after_first_attempt(self) -> None:
        policy = RetryPolicy(max_retries=3)
        assert policy.can_retry(2) is True
        assert policy.can_retry(3) is False


class TestTaskDescriptor:
    def test_wire_round_trip_keeps_attempt(self) -> None:
        descriptor = _descriptor().next_attempt()
        restored = TaskDescriptor.loads(descriptor.dumps())
        assert restored == descriptor
        assert restored.attempt == 2
