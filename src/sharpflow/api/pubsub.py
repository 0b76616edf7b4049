"""Job event publishing across processes.

Workers publish lifecycle events; the API process relays them to the
owner's WebSocket connections. With everything in one process the
``ConnectionManager`` is itself the publisher. Across processes events go
through one Redis pub/sub channel:

    worker -> RedisEventPublisher -> channel -> RedisEventRelay -> ConnectionManager
"""

import asyncio
import contextlib
import json
from typing import TYPE_CHECKING, Any, Protocol

import structlog
from redis.asyncio import Redis

from sharpflow.config import Settings

if TYPE_CHECKING:
    from sharpflow.api.websocket import ConnectionManager

log = structlog.get_logger()

RELAY_RECONNECT_DELAY = 2.0


class EventPublisher(Protocol):
    async def publish(self, event: str, data: dict[str, Any], *, owner_id: str) -> None: ...


def _pubsub_redis(settings: Settings) -> Redis:
    return Redis(
        host=settings.redis_host,
        port=settings.redis_port,
        password=settings.redis_password.get_secret_value() or None,
        db=settings.redis_pubsub_db,
        decode_responses=True,
    )


class RedisEventPublisher:
    """Publishes events to the shared channel. Used by worker processes."""

    def __init__(self, redis: Redis, channel: str) -> None:
        self._redis = redis
        self.channel = channel

    @classmethod
    def from_settings(cls, settings: Settings) -> "RedisEventPublisher":
        return cls(_pubsub_redis(settings), settings.events_channel)

    async def publish(self, event: str, data: dict[str, Any], *, owner_id: str) -> None:
        message = json.dumps({"event": event, "data": data, "owner_id": owner_id}, default=str)
        await self._redis.publish(self.channel, message)

    async def close(self) -> None:
        await self._redis.aclose()


class RedisEventRelay:
    """Forwards events from the shared channel to local connections.

    Runs as a background task in the API process and resubscribes after
    Redis errors. Malformed messages are logged and skipped.
    """

    def __init__(self, redis: Redis, channel: str, manager: "ConnectionManager") -> None:
        self._redis = redis
        self.channel = channel
        self.manager = manager
        self._task: asyncio.Task[None] | None = None

    @classmethod
    def from_settings(cls, settings: Settings, manager: "ConnectionManager") -> "RedisEventRelay":
        return cls(_pubsub_redis(settings), settings.events_channel, manager)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name="event-relay")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        await self._redis.aclose()

    async def handle(self, raw: str) -> None:
        try:
            message = json.loads(raw)
            event = message["event"]
            data = message["data"]
            owner_id = message["owner_id"]
        except (ValueError, KeyError, TypeError):
            log.warning("event_relay_malformed_message", channel=self.channel)
            return
        if not isinstance(owner_id, str) or not owner_id:
            log.warning("event_relay_unowned_event", channel=self.channel, event=event)
            return
        await self.manager.broadcast(event, data, owner_id=owner_id)

    async def _run(self) -> None:
        while True:
            pubsub = self._redis.pubsub()
            try:
                await pubsub.subscribe(self.channel)
                log.info("event_relay_subscribed", channel=self.channel)
                async for message in pubsub.listen():
                    if message["type"] == "message":
                        await self.handle(message["data"])
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.warning("event_relay_disconnected", error=str(e))
                await asyncio.sleep(RELAY_RECONNECT_DELAY)
            finally:
                with contextlib.suppress(Exception):
                    await pubsub.unsubscribe(self.channel)
                    await pubsub.aclose()
