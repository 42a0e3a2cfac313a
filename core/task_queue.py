"""
Redis-backed leased task queue for POSTWATCH workers.

Provides:
- `TaskQueue`: point-to-point, at-least-once queue with delayed visibility,
  per-message delivery counters, lease tokens and a dead-letter list.
- `Lease`: one delivery of one message to one consumer.

Layout per queue ``q`` (all keys prefixed with ``{prefix}:{q}:``):
- ``ready``      LIST of message ids visible to consumers
- ``delayed``    ZSET id -> visible-at (epoch seconds)
- ``inflight``   ZSET id -> lease expiry (epoch seconds)
- ``lease``      HASH id -> lease token of the current holder
- ``body``       HASH id -> payload bytes
- ``deliveries`` HASH id -> delivery count
- ``dead``       LIST of dead-lettered ids, ``dead_reason`` HASH id -> reason

State transitions that touch more than one key run as Lua scripts so a crash
can never leave a message in two places (or none).
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError, TimeoutError as RedisTimeoutError

from core.config.config import RedisCfg
from core.errors import LeaseLostError
from core.metrics import mark_enqueued
from core.retry import RetryConfig, retry_async

log = logging.getLogger("postwatch.core.task_queue")

TRANSIENT_REDIS_ERRORS = (RedisConnectionError, RedisTimeoutError)

# KEYS: ready, delayed, inflight, lease, body, deliveries, dead, dead_reason
# ARGV: now, lease_until, token, max_delivery_count
_RECEIVE_LUA = """
local due = redis.call('ZRANGEBYSCORE', KEYS[2], '-inf', ARGV[1])
for _, id in ipairs(due) do
  redis.call('ZREM', KEYS[2], id)
  redis.call('RPUSH', KEYS[1], id)
end
local expired = redis.call('ZRANGEBYSCORE', KEYS[3], '-inf', ARGV[1])
for _, id in ipairs(expired) do
  redis.call('ZREM', KEYS[3], id)
  redis.call('HDEL', KEYS[4], id)
  redis.call('RPUSH', KEYS[1], id)
end
while true do
  local id = redis.call('LPOP', KEYS[1])
  if not id then
    return false
  end
  local body = redis.call('HGET', KEYS[5], id)
  if body then
    local n = redis.call('HINCRBY', KEYS[6], id, 1)
    if n > tonumber(ARGV[4]) then
      redis.call('RPUSH', KEYS[7], id)
      redis.call('HSET', KEYS[8], id, 'MaxDeliveryCountExceeded')
    else
      redis.call('ZADD', KEYS[3], ARGV[2], id)
      redis.call('HSET', KEYS[4], id, ARGV[3])
      return {id, body, n}
    end
  end
end
"""

# KEYS: inflight, lease, body, deliveries
# ARGV: id, token
_COMPLETE_LUA = """
if redis.call('HGET', KEYS[2], ARGV[1]) ~= ARGV[2] then
  return 0
end
redis.call('ZREM', KEYS[1], ARGV[1])
redis.call('HDEL', KEYS[2], ARGV[1])
redis.call('HDEL', KEYS[3], ARGV[1])
redis.call('HDEL', KEYS[4], ARGV[1])
return 1
"""

# KEYS: inflight, lease, ready, delayed
# ARGV: id, token, visible_at (0 = now)
_ABANDON_LUA = """
if redis.call('HGET', KEYS[2], ARGV[1]) ~= ARGV[2] then
  return 0
end
redis.call('ZREM', KEYS[1], ARGV[1])
redis.call('HDEL', KEYS[2], ARGV[1])
if tonumber(ARGV[3]) > 0 then
  redis.call('ZADD', KEYS[4], ARGV[3], ARGV[1])
else
  redis.call('RPUSH', KEYS[3], ARGV[1])
end
return 1
"""

# KEYS: inflight, lease, dead, dead_reason
# ARGV: id, token, reason
_DEAD_LETTER_LUA = """
if redis.call('HGET', KEYS[2], ARGV[1]) ~= ARGV[2] then
  return 0
end
redis.call('ZREM', KEYS[1], ARGV[1])
redis.call('HDEL', KEYS[2], ARGV[1])
redis.call('RPUSH', KEYS[3], ARGV[1])
redis.call('HSET', KEYS[4], ARGV[1], ARGV[3])
return 1
"""


@dataclass(frozen=True)
class Lease:
    """One delivery of a message; settle it with exactly one of complete/abandon/dead_letter."""
    queue: str
    message_id: str
    body: bytes
    delivery_count: int
    token: str
    expires_at: float


@dataclass(frozen=True)
class DeadLetter:
    """A dead-lettered message kept for offline inspection."""
    message_id: str
    body: Optional[bytes]
    reason: str
    delivery_count: int


class TaskQueue:
    """
    Leased work queue over Redis.

    Features:
        - enqueue with optional delay (message invisible until now+delay)
        - receive -> Lease (delivery count incremented per delivery)
        - complete / abandon / dead_letter guarded by the lease token
        - expired leases return to ready on the next receive
        - messages whose leases keep expiring are dead-lettered after `max_delivery_count`
        - producer-side retries with capped exponential backoff
    """

    def __init__(
        self,
        client: aioredis.Redis,
        key_prefix: str = "tq",
        lease_seconds: float = 300.0,
        max_delivery_count: int = 10,
        send_retry: Optional[RetryConfig] = None,
        poll_interval: float = 0.5,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Bind the queue to an already-created Redis client.

        Args:
            client: `redis.asyncio.Redis` handle owned by the caller.
            key_prefix: Namespace for all queue keys.
            lease_seconds: How long a receiver owns a message before it is redelivered.
            max_delivery_count: Hard ceiling for deliveries whose leases expired unsettled.
            send_retry: Retry policy for enqueue on connection errors.
            poll_interval: Sleep between empty polls inside `receive`.
            clock: Time source (epoch seconds), injectable for tests.
        """
        self._r = client
        self._prefix = key_prefix
        self._lease_seconds = lease_seconds
        self._max_delivery_count = max_delivery_count
        self._send_retry = send_retry or RetryConfig(attempts=6, base_delay=10.0, max_delay=60.0)
        self._poll_interval = poll_interval
        self._clock = clock
        self._receive = client.register_script(_RECEIVE_LUA)
        self._complete = client.register_script(_COMPLETE_LUA)
        self._abandon = client.register_script(_ABANDON_LUA)
        self._dead_letter = client.register_script(_DEAD_LETTER_LUA)

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> "TaskQueue":
        """Create a queue with its own Redis connection pool."""
        return cls(aioredis.from_url(url), **kwargs)

    @classmethod
    def from_config(cls, cfg: RedisCfg) -> "TaskQueue":
        """Build a queue from `REDIS_*` settings."""
        return cls.from_url(
            cfg.url,
            key_prefix=cfg.key_prefix,
            lease_seconds=cfg.lease_seconds,
            max_delivery_count=cfg.max_delivery_count,
            send_retry=RetryConfig(
                attempts=cfg.send_retries, base_delay=cfg.send_retry_delay, max_delay=cfg.send_retry_max_delay
            ),
        )

    async def __aenter__(self) -> "TaskQueue":
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def close(self) -> None:
        """Release the Redis connection pool."""
        await self._r.aclose()

    async def ping(self) -> None:
        """Fail fast if Redis is unreachable (used at worker startup)."""
        await self._r.ping()

    def _k(self, queue: str, name: str) -> str:
        return f"{self._prefix}:{queue}:{name}"

    # ---------------- producer ----------------

    async def enqueue(self, queue: str, body: bytes, delay: float = 0.0) -> str:
        """
        Add a message to `queue`.

        Args:
            queue: Queue name.
            body: Serialized payload.
            delay: Seconds before the message becomes visible (0 = immediately).

        Returns:
            The generated message id.

        Raises:
            redis ConnectionError/TimeoutError once the retry budget is exhausted.
        """
        message_id = uuid.uuid4().hex

        async def _send() -> None:
            async with self._r.pipeline(transaction=True) as pipe:
                pipe.hset(self._k(queue, "body"), message_id, body)
                if delay > 0:
                    pipe.zadd(self._k(queue, "delayed"), {message_id: self._clock() + delay})
                else:
                    pipe.rpush(self._k(queue, "ready"), message_id)
                await pipe.execute()

        def _on_retry(attempt: int, err: BaseException, pause: float) -> None:
            log.warning("enqueue to %s failed (attempt %d: %s); retrying in %.1fs", queue, attempt, err, pause)

        await retry_async(_send, self._send_retry, retry_on=TRANSIENT_REDIS_ERRORS, on_retry=_on_retry)
        mark_enqueued(queue)
        log.debug("enqueued %s on %s (delay=%.1fs)", message_id, queue, delay)
        return message_id

    # ---------------- consumer ----------------

    async def try_receive(self, queue: str) -> Optional[Lease]:
        """Lease the next visible message, or return None when the queue is empty."""
        now = self._clock()
        token = uuid.uuid4().hex
        expires_at = now + self._lease_seconds
        res = await self._receive(
            keys=[
                self._k(queue, "ready"),
                self._k(queue, "delayed"),
                self._k(queue, "inflight"),
                self._k(queue, "lease"),
                self._k(queue, "body"),
                self._k(queue, "deliveries"),
                self._k(queue, "dead"),
                self._k(queue, "dead_reason"),
            ],
            args=[now, expires_at, token, self._max_delivery_count],
        )
        if not res:
            return None
        message_id, body, count = res
        if isinstance(message_id, bytes):
            message_id = message_id.decode("utf-8")
        if isinstance(body, str):
            body = body.encode("utf-8")
        return Lease(
            queue=queue,
            message_id=message_id,
            body=body,
            delivery_count=int(count),
            token=token,
            expires_at=expires_at,
        )

    async def receive(self, queue: str, wait: float = 5.0) -> Optional[Lease]:
        """Poll `queue` for up to `wait` seconds; None if nothing became visible."""
        deadline = time.monotonic() + wait
        while True:
            lease = await self.try_receive(queue)
            if lease is not None or time.monotonic() >= deadline:
                return lease
            await asyncio.sleep(min(self._poll_interval, max(0.0, deadline - time.monotonic())))

    async def complete(self, lease: Lease) -> None:
        """Acknowledge a lease; the message is removed for good."""
        ok = await self._complete(
            keys=[
                self._k(lease.queue, "inflight"),
                self._k(lease.queue, "lease"),
                self._k(lease.queue, "body"),
                self._k(lease.queue, "deliveries"),
            ],
            args=[lease.message_id, lease.token],
        )
        self._check(ok, lease, "complete")

    async def abandon(self, lease: Lease, delay: float = 0.0) -> None:
        """Give a lease back; the message is redelivered (after `delay` seconds if set)."""
        visible_at = self._clock() + delay if delay > 0 else 0
        ok = await self._abandon(
            keys=[
                self._k(lease.queue, "inflight"),
                self._k(lease.queue, "lease"),
                self._k(lease.queue, "ready"),
                self._k(lease.queue, "delayed"),
            ],
            args=[lease.message_id, lease.token, visible_at],
        )
        self._check(ok, lease, "abandon")

    async def dead_letter(self, lease: Lease, reason: str, description: str = "") -> None:
        """Move a lease to the dead-letter list; it is never redelivered."""
        payload = json.dumps({"reason": reason, "description": description})
        ok = await self._dead_letter(
            keys=[
                self._k(lease.queue, "inflight"),
                self._k(lease.queue, "lease"),
                self._k(lease.queue, "dead"),
                self._k(lease.queue, "dead_reason"),
            ],
            args=[lease.message_id, lease.token, payload],
        )
        self._check(ok, lease, "dead_letter")

    @staticmethod
    def _check(ok: Any, lease: Lease, op: str) -> None:
        if not int(ok or 0):
            raise LeaseLostError(
                f"{op} failed: lease on {lease.queue}/{lease.message_id} expired and was handed out again"
            )

    # ---------------- inspection ----------------

    async def dead_letters(self, queue: str) -> List[DeadLetter]:
        """Return dead-lettered messages of `queue`, oldest first."""
        ids = await self._r.lrange(self._k(queue, "dead"), 0, -1)
        out: List[DeadLetter] = []
        for raw_id in ids:
            mid = raw_id.decode("utf-8") if isinstance(raw_id, bytes) else raw_id
            body = await self._r.hget(self._k(queue, "body"), mid)
            reason = await self._r.hget(self._k(queue, "dead_reason"), mid)
            count = await self._r.hget(self._k(queue, "deliveries"), mid)
            out.append(
                DeadLetter(
                    message_id=mid,
                    body=body,
                    reason=_reason_text(reason),
                    delivery_count=int(count or 0),
                )
            )
        return out

    async def depth(self, queue: str) -> Dict[str, int]:
        """Counts of ready, delayed, in-flight and dead messages."""
        async with self._r.pipeline(transaction=False) as pipe:
            pipe.llen(self._k(queue, "ready"))
            pipe.zcard(self._k(queue, "delayed"))
            pipe.zcard(self._k(queue, "inflight"))
            pipe.llen(self._k(queue, "dead"))
            ready, delayed, inflight, dead = await pipe.execute()
        return {"ready": ready, "delayed": delayed, "inflight": inflight, "dead": dead}


def _reason_text(raw: Optional[bytes]) -> str:
    if raw is None:
        return ""
    text = raw.decode("utf-8") if isinstance(raw, bytes) else raw
    try:
        return json.loads(text).get("reason", text)
    except (ValueError, AttributeError):
        return text
