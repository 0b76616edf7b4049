"""Task broker protocol and the single-process implementation.

Semantics shared by every broker:
- one logical queue per task type, FIFO within a numeric priority class,
  lower priority values run sooner
- ``claim`` hands out a Delivery with a visibility deadline; a delivery
  that is neither acked nor retried before its deadline is put back with
  ``attempt + 1`` by ``redeliver_expired``
- each delivery has its own receipt, so acking a delivery that already
  expired and was redelivered is a harmless no-op
"""

import asyncio
import itertools
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol
from uuid import uuid4

import structlog

from sharpflow.db.models import TaskType
from sharpflow.errors import TransientFault
from sharpflow.jobs.descriptors import Delivery, TaskDescriptor

log = structlog.get_logger()


class TaskBroker(Protocol):
    async def enqueue(self, descriptor: TaskDescriptor, delay: float = 0.0) -> None: ...

    async def claim(self, task_type: TaskType, visibility_timeout: float) -> Delivery | None: ...

    async def ack(self, delivery: Delivery) -> bool: ...

    async def retry(self, delivery: Delivery, delay: float) -> bool: ...

    async def redeliver_expired(self) -> int: ...

    async def stats(self) -> dict[str, dict[str, int]]: ...

    async def close(self) -> None: ...


@dataclass
class _Entry:
    priority: int
    seq: int
    ready_at: float
    descriptor: TaskDescriptor


class InMemoryBroker:
    """Broker living inside one event loop.

    Good for development and tests only; everything is lost on restart.
    ``clock`` is injectable so tests can move time forward.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._queues: dict[TaskType, list[_Entry]] = {t: [] for t in TaskType}
        self._inflight: dict[str, Delivery] = {}
        self._seq = itertools.count()
        self._lock = asyncio.Lock()
        self._closed = False

    def _put(self, descriptor: TaskDescriptor, delay: float) -> None:
        self._queues[descriptor.task_type].append(
            _Entry(
                priority=descriptor.priority,
                seq=next(self._seq),
                ready_at=self._clock() + max(0.0, delay),
                descriptor=descriptor,
            )
        )

    async def enqueue(self, descriptor: TaskDescriptor, delay: float = 0.0) -> None:
        if self._closed:
            raise TransientFault("Broker is closed")
        async with self._lock:
            self._put(descriptor, delay)
        log.debug(
            "task_enqueued",
            job_id=str(descriptor.job_id),
            task_type=descriptor.task_type,
            attempt=descriptor.attempt,
            delay=delay,
        )

    async def claim(self, task_type: TaskType, visibility_timeout: float) -> Delivery | None:
        async with self._lock:
            now = self._clock()
            queue = self._queues[task_type]
            ready = [e for e in queue if e.ready_at <= now]
            if not ready:
                return None
            entry = min(ready, key=lambda e: (e.priority, e.seq))
            queue.remove(entry)
            delivery = Delivery(
                descriptor=entry.descriptor,
                receipt=uuid4().hex,
                deadline=now + visibility_timeout,
            )
            self._inflight[delivery.receipt] = delivery
            return delivery

    async def ack(self, delivery: Delivery) -> bool:
        async with self._lock:
            return self._inflight.pop(delivery.receipt, None) is not None

    async def retry(self, delivery: Delivery, delay: float) -> bool:
        async with self._lock:
            if self._inflight.pop(delivery.receipt, None) is None:
                return False
            self._put(delivery.descriptor.next_attempt(), delay)
            return True

    async def redeliver_expired(self) -> int:
        async with self._lock:
            now = self._clock()
            expired = [d for d in self._inflight.values() if d.deadline <= now]
            for delivery in expired:
                del self._inflight[delivery.receipt]
                self._put(delivery.descriptor.next_attempt(), 0.0)
        for delivery in expired:
            log.warning(
                "task_redelivered",
                job_id=str(delivery.descriptor.job_id),
                task_type=delivery.descriptor.task_type,
                attempt=delivery.descriptor.attempt + 1,
            )
        return len(expired)

    async def stats(self) -> dict[str, dict[str, int]]:
        async with self._lock:
            now = self._clock()
            result: dict[str, dict[str, int]] = {}
            for task_type, queue in self._queues.items():
                result[task_type.value] = {
                    "ready": sum(1 for e in queue if e.ready_at <= now),
                    "delayed": sum(1 for e in queue if e.ready_at > now),
                    "inflight": sum(
                        1
                        for d in self._inflight.values()
                        if d.descriptor.task_type == task_type
                    ),
                }
            return result

    async def close(self) -> None:
        self._closed = True
