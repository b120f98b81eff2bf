"""
Message Queue — Abstract transport with Redis Streams and in-memory backends.

Queue Topology:
  jobs.welcome           — live queue (Redis Stream + consumer group)
  jobs.welcome:delayed   — jobs not yet due (sorted set scored by visible-at ms)
  jobs.welcome:dlq       — dead-letter stream for malformed / exhausted jobs

Each stream entry carries the JSON job under the field "body". An entry stays
in the consumer group's pending list until it is acknowledged, so a worker
crash leaves it reclaimable instead of lost.

The transport is an explicitly constructed object: build it with
create_message_queue(), call connect() at startup and close() at shutdown,
and hand it to producers and workers.

A transport without a broker URL is "unavailable": get_channel() returns None,
publish() returns False, and nothing raises.
"""
from __future__ import annotations

import asyncio
import json
import structlog
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from models.schemas import now_ms

logger = structlog.get_logger()

DEFAULT_GROUP = "welcome-workers"


# ──────────────────────────────────────────────────────────────
#  Queue Names
# ──────────────────────────────────────────────────────────────

class Queues:
    WELCOME = "jobs.welcome"

    @staticmethod
    def delayed(name: str) -> str:
        return f"{name}:delayed"

    @staticmethod
    def dead_letter(name: str) -> str:
        return f"{name}:dlq"


@dataclass
class Delivery:
    """One received, not yet acknowledged queue entry."""
    delivery_id: str
    body: str
    redelivered: bool = False


def _encode(payload: Any) -> str:
    if hasattr(payload, "to_wire"):
        payload = payload.to_wire()
    return json.dumps(payload)


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class MessageQueue(ABC):
    """Abstract message queue interface."""

    def __init__(self, clock: Callable[[], int] = now_ms):
        self._clock = clock

    @abstractmethod
    async def get_channel(self) -> Any:
        """Return the live broker client, connecting lazily; None if unavailable."""
        ...

    async def connect(self) -> bool:
        """Establish the broker connection. False means queueing is disabled."""
        return await self.get_channel() is not None

    @abstractmethod
    async def close(self):
        """Gracefully shut down."""
        ...

    @abstractmethod
    async def ensure_queue(self, name: str, group: str = DEFAULT_GROUP) -> Any:
        """Declare the durable queue (idempotent). Returns the channel or None."""
        ...

    @abstractmethod
    async def publish(self, name: str, payload: Any) -> bool:
        """Serialize and enqueue. Never raises; False on any failure."""
        ...

    @abstractmethod
    async def publish_delayed(self, name: str, payload: Any, visible_at_ms: int) -> bool:
        """Park a job in the delayed index until visible_at_ms. Never raises."""
        ...

    @abstractmethod
    async def promote_delayed(self, name: str) -> int:
        """Move due delayed jobs onto the live queue; return how many moved."""
        ...

    @abstractmethod
    async def receive(
        self,
        name: str,
        group: str = DEFAULT_GROUP,
        consumer: str = "",
        count: int = 1,
        block_ms: int = 0,
    ) -> list[Delivery]:
        """Fetch up to count new deliveries, waiting at most block_ms for one."""
        ...

    @abstractmethod
    async def ack(self, name: str, delivery: Delivery, group: str = DEFAULT_GROUP):
        """Acknowledge successful processing; the entry is removed for good."""
        ...

    @abstractmethod
    async def reject(self, name: str, delivery: Delivery, group: str = DEFAULT_GROUP):
        """Discard without requeue."""
        ...

    @abstractmethod
    async def dead_letter(self, name: str, body: str, reason: str) -> bool:
        """Store a raw body for manual inspection. Never raises."""
        ...

    @abstractmethod
    async def reclaim_stale(
        self,
        name: str,
        group: str = DEFAULT_GROUP,
        consumer: str = "",
        min_idle_ms: int = 300_000,
        count: int = 10,
    ) -> list[Delivery]:
        """Take over deliveries left unacknowledged by a dead consumer."""
        ...

    @abstractmethod
    async def queue_length(self, name: str) -> int:
        """Entries on the live queue not yet acknowledged."""
        ...

    @abstractmethod
    async def delayed_length(self, name: str) -> int:
        ...

    @abstractmethod
    async def dead_letter_length(self, name: str) -> int:
        ...

    @abstractmethod
    async def peek(self, name: str, count: int = 10) -> list[str]:
        """Raw bodies at the head of the live queue, without consuming them."""
        ...


# ──────────────────────────────────────────────────────────────
#  Redis Streams Implementation
# ──────────────────────────────────────────────────────────────

# ZRANGEBYSCORE + ZREM + XADD in one atomic step, so two promoters never
# move the same delayed entry twice.
_PROMOTE_SCRIPT = """
local ready = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1], 'LIMIT', 0, ARGV[2])
for _, body in ipairs(ready) do
    redis.call('ZREM', KEYS[1], body)
    redis.call('XADD', KEYS[2], '*', 'body', body)
end
return #ready
"""


class RedisMessageQueue(MessageQueue):
    """
    Production queue backed by Redis Streams + Sorted Sets.

    - Live queue uses a Redis Stream with a consumer group
    - Delayed jobs use a Redis Sorted Set (promoted by a Lua script)
    - DLQ uses a Redis Stream for inspection
    """

    def __init__(
        self,
        redis_url: str = "",
        promote_batch: int = 100,
        clock: Callable[[], int] = now_ms,
    ):
        super().__init__(clock)
        self._redis_url = redis_url
        self._promote_batch = promote_batch
        self._redis = None
        self._promote = None
        self._declared: set[tuple[str, str]] = set()
        self._connect_lock = asyncio.Lock()
        self._warned_disabled = False

    async def get_channel(self):
        if self._redis is not None:
            return self._redis
        if not self._redis_url:
            if not self._warned_disabled:
                logger.warning("queue_disabled", reason="broker url not configured")
                self._warned_disabled = True
            return None

        async with self._connect_lock:
            if self._redis is not None:
                return self._redis
            import redis.asyncio as aioredis
            client = None
            try:
                client = aioredis.from_url(
                    self._redis_url,
                    decode_responses=True,
                    max_connections=20,
                )
                await client.ping()
            except Exception as e:
                logger.error("queue_connect_failed",
                             url=self._safe_url,
                             error=str(e))
                if client is not None:
                    await client.aclose()
                return None
            self._redis = client
            self._promote = client.register_script(_PROMOTE_SCRIPT)
            logger.info("redis_queue_connected", url=self._safe_url)
            return self._redis

    @property
    def _safe_url(self) -> str:
        return self._redis_url.split("@")[-1] if "@" in self._redis_url else self._redis_url

    async def close(self):
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self._promote = None
            self._declared.clear()
            logger.info("redis_queue_closed")

    async def ensure_queue(self, name: str, group: str = DEFAULT_GROUP):
        from redis.exceptions import ResponseError

        channel = await self.get_channel()
        if channel is None:
            return None
        if (name, group) in self._declared:
            return channel
        try:
            await channel.xgroup_create(name, group, id="0", mkstream=True)
            logger.info("queue_declared", queue=name, group=group)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise
        self._declared.add((name, group))
        return channel

    async def _on_group(self, name: str, group: str, call: Callable[[Any], Awaitable[Any]]):
        """
        Run call(channel) against a declared stream and group. If the broker
        lost either (restart without persistence, XGROUP DESTROY), declare
        them again and retry once.
        """
        from redis.exceptions import ResponseError

        channel = await self.ensure_queue(name, group)
        if channel is None:
            return None
        try:
            return await call(channel)
        except ResponseError as e:
            if "NOGROUP" not in str(e):
                raise
        logger.warning("queue_group_missing", queue=name, group=group)
        self._declared.discard((name, group))
        channel = await self.ensure_queue(name, group)
        return await call(channel)

    async def publish(self, name: str, payload: Any) -> bool:
        try:
            body = _encode(payload)
            channel = await self.ensure_queue(name)
            if channel is None:
                return False
            entry_id = await channel.xadd(name, {"body": body})
        except Exception as e:
            logger.error("queue_publish_failed", queue=name, error=str(e))
            return False
        logger.info("job_published", queue=name, entry_id=entry_id)
        return True

    async def publish_delayed(self, name: str, payload: Any, visible_at_ms: int) -> bool:
        try:
            body = _encode(payload)
            channel = await self.get_channel()
            if channel is None:
                return False
            await channel.zadd(Queues.delayed(name), {body: visible_at_ms})
        except Exception as e:
            logger.error("queue_publish_delayed_failed", queue=name, error=str(e))
            return False
        logger.info("delayed_job_published", queue=name, visible_at_ms=visible_at_ms)
        return True

    async def promote_delayed(self, name: str) -> int:
        channel = await self.ensure_queue(name)
        if channel is None:
            return 0
        moved = int(await self._promote(
            keys=[Queues.delayed(name), name],
            args=[self._clock(), self._promote_batch],
        ))
        if moved:
            logger.info("delayed_jobs_promoted", queue=name, count=moved)
        return moved

    async def receive(
        self,
        name: str,
        group: str = DEFAULT_GROUP,
        consumer: str = "",
        count: int = 1,
        block_ms: int = 0,
    ) -> list[Delivery]:
        # block=0 means "forever" to Redis; None means don't block
        messages = await self._on_group(name, group, lambda channel: channel.xreadgroup(
            groupname=group,
            consumername=consumer,
            streams={name: ">"},
            count=count,
            block=block_ms or None,
        ))
        deliveries = []
        for _stream, entries in messages or []:
            for entry_id, fields in entries:
                deliveries.append(Delivery(entry_id, (fields or {}).get("body", "")))
        return deliveries

    async def ack(self, name: str, delivery: Delivery, group: str = DEFAULT_GROUP):
        channel = await self.get_channel()
        if channel is None:
            raise ConnectionError("queue unavailable")
        await channel.xack(name, group, delivery.delivery_id)
        await channel.xdel(name, delivery.delivery_id)
        logger.debug("job_acked", queue=name, delivery_id=delivery.delivery_id)

    async def reject(self, name: str, delivery: Delivery, group: str = DEFAULT_GROUP):
        # Streams have no requeue-on-nack; dropping the entry is the discard
        channel = await self.get_channel()
        if channel is None:
            raise ConnectionError("queue unavailable")
        await channel.xack(name, group, delivery.delivery_id)
        await channel.xdel(name, delivery.delivery_id)
        logger.warning("job_rejected", queue=name, delivery_id=delivery.delivery_id)

    async def dead_letter(self, name: str, body: str, reason: str) -> bool:
        try:
            channel = await self.get_channel()
            if channel is None:
                return False
            await channel.xadd(Queues.dead_letter(name), {
                "body": body,
                "reason": reason,
                "failed_at": datetime.now(timezone.utc).isoformat(),
            })
        except Exception as e:
            logger.error("dead_letter_failed", queue=name, error=str(e))
            return False
        logger.warning("job_moved_to_dlq", queue=name, reason=reason)
        return True

    async def reclaim_stale(
        self,
        name: str,
        group: str = DEFAULT_GROUP,
        consumer: str = "",
        min_idle_ms: int = 300_000,
        count: int = 10,
    ) -> list[Delivery]:
        async def claim(channel) -> list[Delivery]:
            claimed: list[Delivery] = []
            cursor = "0-0"
            while len(claimed) < count:
                result = await channel.xautoclaim(
                    name, group, consumer,
                    min_idle_time=min_idle_ms,
                    start_id=cursor,
                    count=count - len(claimed),
                )
                if not result or len(result) < 2:
                    break
                cursor, entries = result[0], result[1]
                orphaned = []
                for entry_id, fields in entries:
                    if fields:
                        claimed.append(Delivery(entry_id, fields.get("body", ""), redelivered=True))
                    elif entry_id:
                        orphaned.append(entry_id)
                # Pending ids whose entry was already deleted
                if orphaned:
                    await channel.xack(name, group, *orphaned)
                if cursor in ("0-0", b"0-0"):
                    break
            return claimed

        deliveries = await self._on_group(name, group, claim) or []
        if deliveries:
            logger.info("stale_jobs_reclaimed", queue=name, count=len(deliveries))
        return deliveries

    async def queue_length(self, name: str) -> int:
        channel = await self.get_channel()
        return await channel.xlen(name) if channel is not None else 0

    async def delayed_length(self, name: str) -> int:
        channel = await self.get_channel()
        return await channel.zcard(Queues.delayed(name)) if channel is not None else 0

    async def dead_letter_length(self, name: str) -> int:
        channel = await self.get_channel()
        return await channel.xlen(Queues.dead_letter(name)) if channel is not None else 0

    async def peek(self, name: str, count: int = 10) -> list[str]:
        channel = await self.get_channel()
        if channel is None:
            return []
        entries = await channel.xrange(name, count=count)
        return [fields.get("body", "") for _, fields in entries]


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development)
# ──────────────────────────────────────────────────────────────

@dataclass
class _Pending:
    body: str
    consumer: str
    delivered_at: int


class InMemoryMessageQueue(MessageQueue):
    """
    Development/test queue backed by asyncio primitives.
    Single-process only: one implicit consumer group, no persistence.
    """

    def __init__(self, clock: Callable[[], int] = now_ms):
        super().__init__(clock)
        self._ready: dict[str, deque[tuple[str, str]]] = defaultdict(deque)
        self._pending: dict[str, dict[str, _Pending]] = defaultdict(dict)
        self._delayed: dict[str, list[tuple[int, str]]] = defaultdict(list)
        self._dlq: dict[str, list[dict[str, Any]]] = defaultdict(list)
        self._events: dict[str, asyncio.Event] = {}
        self._seq = 0
        self._connected = False

    def _next_id(self) -> str:
        self._seq += 1
        return f"{self._clock()}-{self._seq}"

    def _event(self, name: str) -> asyncio.Event:
        if name not in self._events:
            self._events[name] = asyncio.Event()
        return self._events[name]

    async def get_channel(self):
        if not self._connected:
            self._connected = True
            logger.info("inmemory_queue_connected")
        return self

    async def close(self):
        self._connected = False

    async def ensure_queue(self, name: str, group: str = DEFAULT_GROUP):
        self._ready.setdefault(name, deque())
        return await self.get_channel()

    async def publish(self, name: str, payload: Any) -> bool:
        try:
            body = _encode(payload)
        except (TypeError, ValueError) as e:
            logger.error("queue_publish_failed", queue=name, error=str(e))
            return False
        self._ready[name].append((self._next_id(), body))
        self._event(name).set()
        logger.info("job_published", queue=name)
        return True

    async def publish_delayed(self, name: str, payload: Any, visible_at_ms: int) -> bool:
        try:
            body = _encode(payload)
        except (TypeError, ValueError) as e:
            logger.error("queue_publish_delayed_failed", queue=name, error=str(e))
            return False
        # Same member semantics as ZADD: an identical body only moves its score
        delayed = [(ts, b) for ts, b in self._delayed[name] if b != body]
        delayed.append((visible_at_ms, body))
        delayed.sort(key=lambda x: x[0])
        self._delayed[name] = delayed
        logger.info("delayed_job_published", queue=name, visible_at_ms=visible_at_ms)
        return True

    async def promote_delayed(self, name: str) -> int:
        now = self._clock()
        delayed = self._delayed[name]
        ready = [body for ts, body in delayed if ts <= now]
        self._delayed[name] = [(ts, body) for ts, body in delayed if ts > now]
        for body in ready:
            self._ready[name].append((self._next_id(), body))
        if ready:
            self._event(name).set()
            logger.info("delayed_jobs_promoted", queue=name, count=len(ready))
        return len(ready)

    async def receive(
        self,
        name: str,
        group: str = DEFAULT_GROUP,
        consumer: str = "",
        count: int = 1,
        block_ms: int = 0,
    ) -> list[Delivery]:
        ready = self._ready[name]
        if not ready and block_ms:
            event = self._event(name)
            event.clear()
            try:
                await asyncio.wait_for(event.wait(), timeout=block_ms / 1000)
            except asyncio.TimeoutError:
                return []
        deliveries = []
        while ready and len(deliveries) < count:
            delivery_id, body = ready.popleft()
            self._pending[name][delivery_id] = _Pending(body, consumer, self._clock())
            deliveries.append(Delivery(delivery_id, body))
        return deliveries

    async def ack(self, name: str, delivery: Delivery, group: str = DEFAULT_GROUP):
        self._pending[name].pop(delivery.delivery_id, None)

    async def reject(self, name: str, delivery: Delivery, group: str = DEFAULT_GROUP):
        self._pending[name].pop(delivery.delivery_id, None)
        logger.warning("job_rejected", queue=name, delivery_id=delivery.delivery_id)

    async def dead_letter(self, name: str, body: str, reason: str) -> bool:
        self._dlq[name].append({
            "body": body,
            "reason": reason,
            "failed_at": datetime.now(timezone.utc).isoformat(),
        })
        logger.warning("job_moved_to_dlq", queue=name, reason=reason)
        return True

    async def reclaim_stale(
        self,
        name: str,
        group: str = DEFAULT_GROUP,
        consumer: str = "",
        min_idle_ms: int = 300_000,
        count: int = 10,
    ) -> list[Delivery]:
        now = self._clock()
        deliveries = []
        for delivery_id, pending in self._pending[name].items():
            if len(deliveries) >= count:
                break
            if now - pending.delivered_at >= min_idle_ms:
                pending.consumer = consumer
                pending.delivered_at = now
                deliveries.append(Delivery(delivery_id, pending.body, redelivered=True))
        return deliveries

    async def queue_length(self, name: str) -> int:
        return len(self._ready[name]) + len(self._pending[name])

    async def delayed_length(self, name: str) -> int:
        return len(self._delayed[name])

    async def dead_letter_length(self, name: str) -> int:
        return len(self._dlq[name])

    async def peek(self, name: str, count: int = 10) -> list[str]:
        return [body for _, body in list(self._ready[name])[:count]]


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

def create_message_queue(queue_config: Any = None) -> MessageQueue:
    """
    Build the transport from a QueueConfig or a plain dict.

    backend "memory" is always available; backend "redis" without a url
    yields a transport that reports itself unavailable.
    """
    if queue_config is None:
        config: dict[str, Any] = {}
    elif isinstance(queue_config, dict):
        config = queue_config
    else:
        config = vars(queue_config)

    backend = config.get("backend", "redis")
    if backend == "memory":
        return InMemoryMessageQueue()
    return RedisMessageQueue(redis_url=config.get("url") or config.get("redis_url", ""))
