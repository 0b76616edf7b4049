"""Queue message types and retry policy.

A TaskDescriptor is the ephemeral message a worker receives. It carries only
serializable data and is tied to its durable Job by ``job_id`` alone.
"""

import random
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from sharpflow.config import RetryPolicyConfig
from sharpflow.db.models import TaskType, utcnow_naive

# Worker pool that serves each task type
TASK_WORKERS: dict[TaskType, str] = {
    TaskType.LEAD_GENERATION: "discovery",
    TaskType.PROFILE_RESEARCH: "research",
    TaskType.MESSAGE_CAMPAIGN: "messaging",
    TaskType.INBOX_MONITORING: "messaging",
}


class TaskDescriptor(BaseModel):
    """Queue message describing one delivery of a Job to a worker."""

    job_id: UUID
    owner_id: str
    task_type: TaskType
    parameters: dict[str, Any] = Field(default_factory=dict)
    priority: int = Field(default=1, ge=0)
    attempt: int = Field(default=1, ge=1)
    enqueued_at: datetime = Field(default_factory=utcnow_naive)

    def next_attempt(self) -> "TaskDescriptor":
        return self.model_copy(update={"attempt": self.attempt + 1})

    def dumps(self) -> str:
        return self.model_dump_json()

    @classmethod
    def loads(cls, raw: str | bytes) -> "TaskDescriptor":
        return cls.model_validate_json(raw)


@dataclass
class Delivery:
    """A claimed descriptor plus what the broker needs to ack or retry it."""

    descriptor: TaskDescriptor
    receipt: str
    deadline: float
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retries with capped exponential backoff and jitter.

    ``max_retries`` counts retries after the first attempt, so a task may be
    attempted ``max_retries + 1`` times in total.
    """

    max_retries: int = 3
    backoff_base: float = 2.0
    backoff_max: float = 60.0
    jitter: float = 0.25

    @classmethod
    def from_config(cls, config: RetryPolicyConfig) -> "RetryPolicy":
        return cls(
            max_retries=config.max_retries,
            backoff_base=config.backoff_base_seconds,
            backoff_max=config.backoff_max_seconds,
            jitter=config.jitter,
        )

    def can_retry(self, retries_used: int) -> bool:
        return retries_used < self.max_retries

    def delay_for(self, attempt: int, *, rng: random.Random | None = None) -> float:
        """Seconds to wait before re-running after ``attempt`` failed."""
        exponent = max(attempt - 1, 0)
        delay = min(self.backoff_max, self.backoff_base * (2**exponent))
        if self.jitter:
            spread = delay * self.jitter
            delay += (rng or random).uniform(-spread, spread)
        return max(0.0, min(delay, self.backoff_max))
