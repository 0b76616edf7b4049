"""Process entry points for the API server and the worker process."""

import asyncio
import contextlib
import signal

import structlog

from sharpflow.api.pubsub import RedisEventPublisher
from sharpflow.config import Settings
from sharpflow.jobs import scheduler
from sharpflow.logging import configure_logging
from sharpflow.runtime import build_runtime


def run_api(host: str | None = None, port: int | None = None) -> None:
    """Run the HTTP/WebSocket API with uvicorn.

    Args:
        host: Host to bind to (defaults to settings.server_host)
        port: Port to listen on (defaults to settings.server_port)
    """
    import uvicorn

    from sharpflow.api.app import create_app

    settings = Settings()
    configure_logging(service_name="api", level=settings.log_level)
    log = structlog.get_logger()

    host = host or settings.server_host
    port = port or settings.server_port
    log.info("starting_api", host=host, port=port, environment=settings.environment)

    uvicorn.run(create_app(settings), host=host, port=port, log_config=None)


async def serve_workers(settings: Settings, *, maintenance: bool = True) -> None:
    """Run task workers (and the maintenance cron worker) until signalled."""
    log = structlog.get_logger()
    runtime = build_runtime(settings)
    publisher = RedisEventPublisher.from_settings(settings)
    pool = runtime.start_workers(publisher)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    maintenance_task: asyncio.Task[None] | None = None
    await pool.start()
    if maintenance:
        maintenance_task = asyncio.create_task(
            scheduler.run_worker_async(settings), name="maintenance-worker"
        )
        maintenance_task.add_done_callback(lambda _task: stop.set())
    log.info("workers_online", maintenance=maintenance)

    try:
        await stop.wait()
    finally:
        log.info("workers_stopping")
        if maintenance_task is not None and not maintenance_task.done():
            maintenance_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await maintenance_task
        await runtime.close()
        await publisher.close()

    # Surface a crashed maintenance worker as a failed process
    if maintenance_task is not None and not maintenance_task.cancelled():
        exc = maintenance_task.exception()
        if exc is not None:
            raise exc


def run_workers(maintenance: bool = True) -> None:
    """Run the worker process."""
    settings = Settings()
    configure_logging(service_name="workers", level=settings.log_level)
    if settings.broker_backend == "memory":
        structlog.get_logger().error(
            "workers_need_shared_broker",
            hint="The memory broker runs workers inside the API process",
        )
        raise SystemExit(1)
    asyncio.run(serve_workers(settings, maintenance=maintenance))


def main() -> None:
    """Main entry point for the API server."""
    run_api()


if __name__ == "__main__":
    main()
