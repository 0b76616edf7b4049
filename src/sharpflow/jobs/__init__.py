"""Durable jobs, the task broker and the pipelines workers run.

Usage:
    from sharpflow.jobs import create_broker

    broker = create_broker(settings)
"""

from sharpflow.config import Settings
from sharpflow.jobs.broker import InMemoryBroker, TaskBroker
from sharpflow.jobs.descriptors import TASK_WORKERS, Delivery, RetryPolicy, TaskDescriptor
from sharpflow.jobs.redis_broker import RedisBroker


def create_broker(settings: Settings) -> TaskBroker:
    """Broker for the configured backend."""
    if settings.broker_backend == "memory":
        return InMemoryBroker()
    return RedisBroker.from_settings(settings)


__all__ = [
    "TASK_WORKERS",
    "Delivery",
    "InMemoryBroker",
    "RedisBroker",
    "RetryPolicy",
    "TaskBroker",
    "TaskDescriptor",
    "create_broker",
]
