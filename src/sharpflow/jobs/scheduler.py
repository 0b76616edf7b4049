"""arq maintenance worker - periodic housekeeping.

Run with: sharpflow-workers (task workers plus this maintenance worker)
or in-process via ``run_worker_async(settings)``.

Task execution does not go through arq; this worker only runs cron jobs:
- reconcile_pending_jobs: re-enqueue committed jobs whose enqueue was lost
- redeliver_expired_tasks: put back deliveries whose visibility timeout passed
- archive_idle_sessions: archive conversation sessions idle past the threshold
- cleanup_context_cache: delete expired context summaries
- cleanup_old_messages: summarize, then age out and delete old conversation messages
"""

from datetime import UTC, datetime
from typing import Any

import structlog
from arq import Worker
from arq.connections import RedisSettings
from arq.cron import cron

from sharpflow.adapters import AnthropicSummarizationAdapter
from sharpflow.config import Settings
from sharpflow.db import Database
from sharpflow.jobs import create_broker
from sharpflow.jobs.store import JobStore
from sharpflow.jobs.submission import JobSubmissionService
from sharpflow.logging import configure_logging
from sharpflow.memory import ConversationMemoryManager

log = structlog.get_logger()


def get_redis_settings(settings: Settings) -> RedisSettings:
    """arq's own Redis connection (queue database)."""
    return RedisSettings(
        host=settings.redis_host,
        port=settings.redis_port,
        password=settings.redis_password.get_secret_value() or None,
        database=settings.redis_queue_db,
    )


# =============================================================================
# Cron jobs
# =============================================================================


async def reconcile_pending_jobs(ctx: dict[str, Any]) -> int:
    submission: JobSubmissionService = ctx["submission"]
    return await submission.reconcile_pending()


async def redeliver_expired_tasks(ctx: dict[str, Any]) -> int:
    redelivered = await ctx["broker"].redeliver_expired()
    if redelivered:
        log.info("expired_deliveries_redelivered", count=redelivered)
    return redelivered


async def archive_idle_sessions(ctx: dict[str, Any]) -> int:
    memory: ConversationMemoryManager = ctx["memory"]
    return await memory.archive_old_sessions(None)


async def cleanup_context_cache(ctx: dict[str, Any]) -> int:
    memory: ConversationMemoryManager = ctx["memory"]
    return await memory.cleanup_expired_cache()


async def cleanup_old_messages(ctx: dict[str, Any]) -> int:
    memory: ConversationMemoryManager = ctx["memory"]
    stats = await memory.cleanup_old_messages()
    return stats.soft_deleted + stats.hard_deleted


# =============================================================================
# Lifecycle
# =============================================================================


def _summarizer(settings: Settings) -> AnthropicSummarizationAdapter | None:
    api_key = settings.anthropic_api_key.get_secret_value()
    if not api_key:
        return None
    return AnthropicSummarizationAdapter(
        api_key=api_key, model=settings.llm_model, timeout=settings.summarization_timeout
    )


async def startup(ctx: dict[str, Any]) -> None:
    """Build the components the cron jobs use."""
    settings: Settings = ctx.get("settings") or Settings()
    ctx["settings"] = settings
    configure_logging(service_name="maintenance", level=settings.log_level)

    db = Database.from_settings(settings)
    broker = create_broker(settings)
    store = JobStore(db)
    ctx["db"] = db
    ctx["broker"] = broker
    ctx["submission"] = JobSubmissionService(settings, store, broker)
    ctx["memory"] = ConversationMemoryManager(settings, db, summarizer=_summarizer(settings))
    ctx["start_time"] = datetime.now(UTC)
    log.info("maintenance_worker_online", broker=settings.broker_backend)


async def shutdown(ctx: dict[str, Any]) -> None:
    """Release connections."""
    if "broker" in ctx:
        await ctx["broker"].close()
    if "db" in ctx:
        await ctx["db"].close()
    log.info("maintenance_worker_stopped")


class MaintenanceWorkerSettings:
    """arq worker settings."""

    functions: list[Any] = []

    cron_jobs = [
        cron(reconcile_pending_jobs, second=0, unique=True),
        cron(redeliver_expired_tasks, second={15, 45}, unique=True),
        cron(cleanup_context_cache, minute=15, second=0, unique=True),
        cron(cleanup_old_messages, hour=2, minute=30, second=0, unique=True),
        cron(archive_idle_sessions, hour=3, minute=0, second=0, unique=True),
    ]

    # Lifecycle hooks
    on_startup = startup
    on_shutdown = shutdown

    max_jobs = 2
    job_timeout = 300
    keep_result = 3600


def build_worker(settings: Settings) -> Worker:
    return Worker(
        functions=MaintenanceWorkerSettings.functions,
        cron_jobs=MaintenanceWorkerSettings.cron_jobs,
        redis_settings=get_redis_settings(settings),
        on_startup=startup,
        on_shutdown=shutdown,
        max_jobs=MaintenanceWorkerSettings.max_jobs,
        job_timeout=MaintenanceWorkerSettings.job_timeout,
        keep_result=MaintenanceWorkerSettings.keep_result,
        ctx={"settings": settings},
        handle_signals=False,
    )


async def run_worker_async(settings: Settings) -> None:
    """Run the maintenance worker in-process alongside the task workers."""
    log.info(
        "starting_maintenance_worker",
        redis_host=settings.redis_host,
        redis_port=settings.redis_port,
        cron_jobs=len(MaintenanceWorkerSettings.cron_jobs),
    )
    worker = build_worker(settings)
    try:
        await worker.async_run()
    except Exception:
        log.exception("maintenance_worker_crashed")
        raise
    finally:
        await worker.close()
