"""FastAPI application factory.

Event delivery depends on the broker backend:
- memory: workers run inside this process and publish straight to the
  ConnectionManager
- redis: workers run in their own process and publish to Redis pub/sub;
  the RedisEventRelay here forwards events to local connections
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import FastAPI, Request

from sharpflow.api.errors import register_exception_handlers
from sharpflow.api.pubsub import EventPublisher, RedisEventPublisher, RedisEventRelay
from sharpflow.api.routes import conversations, intents, jobs
from sharpflow.api.websocket import ConnectionManager
from sharpflow.api.websocket import router as websocket_router
from sharpflow.config import Settings
from sharpflow.runtime import Runtime, build_runtime

log = structlog.get_logger()


def create_app(settings: Settings | None = None, **overrides: Any) -> FastAPI:
    """Build the API app.

    ``overrides`` are passed to ``build_runtime`` (db, broker, capabilities,
    classifier, summarizer) so tests can run the full stack in memory.
    """
    settings = settings or Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        manager = ConnectionManager()
        relay: RedisEventRelay | None = None
        redis_publisher: RedisEventPublisher | None = None
        publisher: EventPublisher = manager
        if settings.broker_backend == "redis":
            redis_publisher = RedisEventPublisher.from_settings(settings)
            relay = RedisEventRelay.from_settings(settings, manager)
            publisher = redis_publisher

        runtime: Runtime = build_runtime(settings, publisher=publisher, **overrides)
        if runtime.db.dialect == "sqlite":
            await runtime.db.init_db()

        if settings.broker_backend == "memory":
            # The in-memory queue is only visible to workers in this process
            await runtime.start_workers(manager).start()
        if relay is not None:
            relay.start()

        app.state.settings = settings
        app.state.runtime = runtime
        app.state.connections = manager
        app.state.store = runtime.store
        app.state.submission = runtime.submission
        app.state.memory = runtime.memory
        app.state.router = runtime.router
        log.info("api_started", environment=settings.environment, broker=settings.broker_backend)
        try:
            yield
        finally:
            if relay is not None:
                await relay.stop()
            if redis_publisher is not None:
                await redis_publisher.close()
            await runtime.close()
            log.info("api_stopped")

    app = FastAPI(title="SharpFlow", version="0.1.0", lifespan=lifespan)
    register_exception_handlers(app)
    app.include_router(jobs.router)
    app.include_router(intents.router)
    app.include_router(conversations.router)
    app.include_router(websocket_router)

    @app.get("/health", tags=["Health"])
    async def health(request: Request) -> dict[str, Any]:
        runtime: Runtime = request.app.state.runtime
        database_ok = await runtime.db.check_health()
        try:
            queues = await runtime.broker.stats()
        except Exception as e:
            log.warning("broker_health_check_failed", error=str(e))
            queues = None
        return {
            "status": "healthy" if database_ok and queues is not None else "degraded",
            "database": database_ok,
            "queues": queues,
            "workers": runtime.pool.running if runtime.pool else False,
            "connections": request.app.state.connections.connection_count,
        }

    return app
