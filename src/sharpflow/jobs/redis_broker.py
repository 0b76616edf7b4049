"""Redis-backed task broker for multi-process deployments.

Layout per task type (all under ``sharpflow:tasks``):
- ``queue:{type}``    ZSET message_id -> priority * 1e12 + sequence
- ``delayed:{type}``  ZSET message_id -> ready time (ms)
- ``inflight:{type}`` ZSET message_id -> visibility deadline (ms)
- ``messages``        HASH message_id -> descriptor JSON

Claim, retry and redelivery run as Lua scripts so a message is always in
exactly one of the three sets. Redelivered and retried messages get a new
id, which makes a late ack of the old delivery a no-op.
"""

import time
from collections.abc import Callable
from uuid import uuid4

import structlog
from redis.asyncio import Redis

from sharpflow.config import Settings
from sharpflow.db.models import TaskType
from sharpflow.errors import TransientFault
from sharpflow.jobs.descriptors import Delivery, TaskDescriptor

log = structlog.get_logger()

KEY_PREFIX = "sharpflow:tasks"

# KEYS: queue, delayed, inflight, messages, seq
# ARGV: now_ms, visibility_ms
_CLAIM_LUA = """
local due = redis.call('ZRANGEBYSCORE', KEYS[2], '-inf', ARGV[1], 'LIMIT', 0, 100)
for _, id in ipairs(due) do
  redis.call('ZREM', KEYS[2], id)
  local raw = redis.call('HGET', KEYS[4], id)
  if raw then
    local msg = cjson.decode(raw)
    local seq = redis.call('INCR', KEYS[5])
    redis.call('ZADD', KEYS[1], tonumber(msg['priority']) * 1e12 + seq, id)
  end
end
while true do
  local popped = redis.call('ZPOPMIN', KEYS[1])
  if #popped == 0 then
    return nil
  end
  local id = popped[1]
  local raw = redis.call('HGET', KEYS[4], id)
  if raw then
    local deadline = tonumber(ARGV[1]) + tonumber(ARGV[2])
    redis.call('ZADD', KEYS[3], deadline, id)
    return {id, raw, tostring(deadline)}
  end
end
"""

# KEYS: inflight, messages, delayed
# ARGV: old_id, new_id, new_raw, ready_ms
_RETRY_LUA = """
if redis.call('ZREM', KEYS[1], ARGV[1]) == 0 then
  return 0
end
redis.call('HDEL', KEYS[2], ARGV[1])
redis.call('HSET', KEYS[2], ARGV[2], ARGV[3])
redis.call('ZADD', KEYS[3], ARGV[4], ARGV[2])
return 1
"""

# KEYS: inflight, messages, delayed, seq
# ARGV: now_ms
_REDELIVER_LUA = """
local expired = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1], 'LIMIT', 0, 100)
local moved = 0
for _, id in ipairs(expired) do
  redis.call('ZREM', KEYS[1], id)
  local raw = redis.call('HGET', KEYS[2], id)
  redis.call('HDEL', KEYS[2], id)
  if raw then
    local msg = cjson.decode(raw)
    msg['attempt'] = tonumber(msg['attempt']) + 1
    local new_id = 'r' .. redis.call('INCR', KEYS[4])
    redis.call('HSET', KEYS[2], new_id, cjson.encode(msg))
    redis.call('ZADD', KEYS[3], ARGV[1], new_id)
    moved = moved + 1
  end
end
return moved
"""


class RedisBroker:
    """Durable broker shared by every API and worker process."""

    def __init__(
        self,
        redis: Redis,
        *,
        prefix: str = KEY_PREFIX,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._redis = redis
        self._prefix = prefix
        self._clock = clock
        self._claim = redis.register_script(_CLAIM_LUA)
        self._retry = redis.register_script(_RETRY_LUA)
        self._redeliver = redis.register_script(_REDELIVER_LUA)

    @classmethod
    def from_settings(cls, settings: Settings) -> "RedisBroker":
        redis = Redis(
            host=settings.redis_host,
            port=settings.redis_port,
            password=settings.redis_password.get_secret_value() or None,
            db=settings.redis_queue_db,
            decode_responses=True,
        )
        return cls(redis)

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _key(self, kind: str, task_type: TaskType | None = None) -> str:
        if task_type is None:
            return f"{self._prefix}:{kind}"
        return f"{self._prefix}:{kind}:{task_type.value}"

    async def enqueue(self, descriptor: TaskDescriptor, delay: float = 0.0) -> None:
        message_id = uuid4().hex
        ready_ms = self._now_ms() + int(max(0.0, delay) * 1000)
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.hset(self._key("messages"), message_id, descriptor.dumps())
                pipe.zadd(self._key("delayed", descriptor.task_type), {message_id: ready_ms})
                await pipe.execute()
        except Exception as e:
            raise TransientFault(f"Enqueue failed: {e}") from e
        log.debug(
            "task_enqueued",
            job_id=str(descriptor.job_id),
            task_type=descriptor.task_type,
            attempt=descriptor.attempt,
            delay=delay,
        )

    async def claim(self, task_type: TaskType, visibility_timeout: float) -> Delivery | None:
        result = await self._claim(
            keys=[
                self._key("queue", task_type),
                self._key("delayed", task_type),
                self._key("inflight", task_type),
                self._key("messages"),
                self._key("seq"),
            ],
            args=[self._now_ms(), int(visibility_timeout * 1000)],
        )
        if not result:
            return None
        message_id, raw, deadline_ms = result
        return Delivery(
            descriptor=TaskDescriptor.loads(raw),
            receipt=message_id,
            deadline=float(deadline_ms) / 1000,
        )

    async def ack(self, delivery: Delivery) -> bool:
        task_type = delivery.descriptor.task_type
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.zrem(self._key("inflight", task_type), delivery.receipt)
            pipe.hdel(self._key("messages"), delivery.receipt)
            removed, _ = await pipe.execute()
        return bool(removed)

    async def retry(self, delivery: Delivery, delay: float) -> bool:
        task_type = delivery.descriptor.task_type
        moved = await self._retry(
            keys=[
                self._key("inflight", task_type),
                self._key("messages"),
                self._key("delayed", task_type),
            ],
            args=[
                delivery.receipt,
                uuid4().hex,
                delivery.descriptor.next_attempt().dumps(),
                self._now_ms() + int(max(0.0, delay) * 1000),
            ],
        )
        return bool(moved)

    async def redeliver_expired(self) -> int:
        total = 0
        for task_type in TaskType:
            moved = await self._redeliver(
                keys=[
                    self._key("inflight", task_type),
                    self._key("messages"),
                    self._key("delayed", task_type),
                    self._key("seq"),
                ],
                args=[self._now_ms()],
            )
            if moved:
                log.warning("tasks_redelivered", task_type=task_type, count=int(moved))
            total += int(moved)
        return total

    async def stats(self) -> dict[str, dict[str, int]]:
        result: dict[str, dict[str, int]] = {}
        for task_type in TaskType:
            async with self._redis.pipeline(transaction=False) as pipe:
                pipe.zcard(self._key("queue", task_type))
                pipe.zcard(self._key("delayed", task_type))
                pipe.zcard(self._key("inflight", task_type))
                ready, delayed, inflight = await pipe.execute()
            result[task_type.value] = {"ready": ready, "delayed": delayed, "inflight": inflight}
        return result

    async def close(self) -> None:
        await self._redis.aclose()
