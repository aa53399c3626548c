"""
Message Queue — Abstract interface with in-memory, SQL and Redis backends.

Queue Topology (one logical queue per message class):
  dispatch:email          — jobs ready for a worker
  dispatch:email:delayed  — nacked jobs waiting for their retry delay (Redis)
  (same for sms)

Job Schema:
  {
      "job_id":          "<class>:<sequence>", stable across retries,
      "message_id":      Message Store id (the queue never copies payload),
      "message_class":   email | sms,
      "attempt_number":  attempt the next delivery will be (1-based),
      "enqueued_at":     ISO timestamp of the first enqueue,
      "receipt":         lease handle of the current delivery,
      "delivery_count":  times the queue has handed this job out,
  }

Delivery is at-least-once: a dequeued job is leased for the visibility
timeout and only removed by ack(). A worker that dies before ack/nack
lets the lease expire and the job is handed out again.
"""
from __future__ import annotations

import asyncio
import heapq
import itertools
import time
import uuid
import structlog
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from core.errors import QueueUnavailable
from models.schemas import MessageClass

logger = structlog.get_logger()


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ──────────────────────────────────────────────────────────────
#  Job Model
# ──────────────────────────────────────────────────────────────

@dataclass
class Job:
    """Queue envelope pointing at a persisted Message."""
    message_id: str
    message_class: MessageClass
    attempt_number: int = 1
    enqueued_at: str = ""
    job_id: str = ""
    receipt: str = ""
    delivery_count: int = 0

    def __post_init__(self):
        self.message_class = MessageClass(self.message_class)
        if not self.enqueued_at:
            self.enqueued_at = _utcnow_iso()

    def to_dict(self) -> dict[str, str]:
        d = asdict(self)
        d["message_class"] = self.message_class.value
        d["attempt_number"] = str(self.attempt_number)
        d["delivery_count"] = str(self.delivery_count)
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Job:
        data = dict(data)  # copy
        data["attempt_number"] = int(data.get("attempt_number", 1))
        data["delivery_count"] = int(data.get("delivery_count", 0))
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class MessageQueue(ABC):
    """Abstract durable job queue, one logical FIFO per message class."""

    async def connect(self) -> None:
        """Establish connection to the queue backend."""

    async def close(self) -> None:
        """Gracefully shut down."""

    async def ping(self) -> bool:
        return True

    @abstractmethod
    async def enqueue(self, job: Job) -> Job:
        """Append a job; assigns job_id when missing."""
        ...

    @abstractmethod
    async def dequeue(self, message_class: MessageClass, timeout: Optional[float] = None) -> Optional[Job]:
        """
        Lease the next visible job of a class. Blocks up to `timeout`
        seconds (forever when None); returns None when nothing arrived.
        """
        ...

    @abstractmethod
    async def ack(self, job: Job) -> bool:
        """Remove the job permanently. False when the lease was lost."""
        ...

    @abstractmethod
    async def nack(self, job: Job, delay: float = 0.0) -> bool:
        """Release the lease; the job becomes visible again after `delay`."""
        ...

    @abstractmethod
    async def queue_length(self, message_class: MessageClass) -> int:
        """Jobs not yet acked: ready, delayed and in flight."""
        ...

    async def promote_delayed(self, message_class: MessageClass) -> int:
        """Move due delayed jobs to the ready queue. Time-based backends return 0."""
        return 0


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development)
# ──────────────────────────────────────────────────────────────

class _Lane:
    """State of one message class inside InMemoryMessageQueue."""

    def __init__(self):
        self.jobs: dict[str, Job] = {}                   # job_id → job
        self.ready: deque[str] = deque()                 # job_ids in FIFO order
        self.delayed: list[tuple[float, int, str]] = []  # heap of (visible_at, tiebreak, job_id)
        self.inflight: dict[str, tuple[float, str]] = {} # job_id → (lease deadline, receipt)
        self.cond = asyncio.Condition()


class InMemoryMessageQueue(MessageQueue):
    """
    Development/test queue backed by asyncio primitives.
    Single-process only — honours leases and delays but keeps nothing
    across restarts.

    `clock` drives lease and retry timing so tests can move time forward.
    """

    def __init__(
        self,
        visibility_timeout: float = 90.0,
        clock: Callable[[], float] = time.monotonic,
        poll_interval: float = 0.05,
    ):
        self.visibility_timeout = visibility_timeout
        self._clock = clock
        self._poll_interval = poll_interval
        self._lanes: dict[MessageClass, _Lane] = {}
        self._sequence = itertools.count(1)
        self._tiebreak = itertools.count()

    def _lane(self, message_class: MessageClass) -> _Lane:
        message_class = MessageClass(message_class)
        if message_class not in self._lanes:
            self._lanes[message_class] = _Lane()
        return self._lanes[message_class]

    async def connect(self) -> None:
        logger.info("inmemory_queue_connected")

    async def enqueue(self, job: Job) -> Job:
        lane = self._lane(job.message_class)
        if not job.job_id:
            job.job_id = f"{job.message_class.value}:{next(self._sequence)}"
        async with lane.cond:
            lane.jobs[job.job_id] = job
            lane.ready.append(job.job_id)
            lane.cond.notify()
        logger.info("job_enqueued",
                    job_id=job.job_id,
                    message_id=job.message_id,
                    message_class=job.message_class.value)
        return job

    def _release_due(self, lane: _Lane) -> None:
        now = self._clock()
        while lane.delayed and lane.delayed[0][0] <= now:
            _, _, job_id = heapq.heappop(lane.delayed)
            lane.ready.append(job_id)
        expired = [jid for jid, (deadline, _) in lane.inflight.items() if deadline <= now]
        for job_id in expired:
            del lane.inflight[job_id]
            lane.ready.append(job_id)
            logger.warning("job_lease_expired", job_id=job_id)

    def _claim(self, lane: _Lane) -> Optional[Job]:
        self._release_due(lane)
        if not lane.ready:
            return None
        job_id = lane.ready.popleft()
        job = lane.jobs[job_id]
        job.receipt = uuid.uuid4().hex
        job.delivery_count += 1
        lane.inflight[job_id] = (self._clock() + self.visibility_timeout, job.receipt)
        return Job.from_dict(job.to_dict())

    async def dequeue(self, message_class: MessageClass, timeout: Optional[float] = None) -> Optional[Job]:
        lane = self._lane(message_class)
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        async with lane.cond:
            while True:
                job = self._claim(lane)
                if job is not None:
                    return job
                wait = self._poll_interval
                if deadline is not None:
                    remaining = deadline - loop.time()
                    if remaining <= 0:
                        return None
                    wait = min(wait, remaining)
                try:
                    await asyncio.wait_for(lane.cond.wait(), timeout=wait)
                except asyncio.TimeoutError:
                    pass

    def _holds_lease(self, lane: _Lane, job: Job) -> bool:
        lease = lane.inflight.get(job.job_id)
        return lease is not None and lease[1] == job.receipt

    async def ack(self, job: Job) -> bool:
        lane = self._lane(job.message_class)
        async with lane.cond:
            if not self._holds_lease(lane, job):
                logger.warning("stale_ack_ignored", job_id=job.job_id)
                return False
            del lane.inflight[job.job_id]
            lane.jobs.pop(job.job_id, None)
        logger.debug("job_acked", job_id=job.job_id, message_id=job.message_id)
        return True

    async def nack(self, job: Job, delay: float = 0.0) -> bool:
        lane = self._lane(job.message_class)
        async with lane.cond:
            if not self._holds_lease(lane, job):
                logger.warning("stale_nack_ignored", job_id=job.job_id)
                return False
            del lane.inflight[job.job_id]
            stored = lane.jobs[job.job_id]
            stored.attempt_number = job.attempt_number
            stored.receipt = ""
            if delay > 0:
                heapq.heappush(
                    lane.delayed,
                    (self._clock() + delay, next(self._tiebreak), job.job_id),
                )
            else:
                lane.ready.append(job.job_id)
                lane.cond.notify()
        logger.info("job_nacked",
                    job_id=job.job_id,
                    attempt_number=job.attempt_number,
                    delay=delay)
        return True

    async def queue_length(self, message_class: MessageClass) -> int:
        return len(self._lane(message_class).jobs)


# ──────────────────────────────────────────────────────────────
#  Redis Streams Implementation
# ──────────────────────────────────────────────────────────────

# Lease check shared by ack and nack: the entry must still be pending for
# this consumer with the delivery count the holder was handed.
_LEASE_CHECK_LUA = r"""
local pending = redis.call('XPENDING', KEYS[1], ARGV[1], ARGV[2], ARGV[2], 1)
local entry = pending[1]
if not entry or entry[2] ~= ARGV[3] or tonumber(entry[4]) ~= tonumber(ARGV[4]) then
    return 0
end
"""

_ACK_LUA = _LEASE_CHECK_LUA + r"""
redis.call('XACK', KEYS[1], ARGV[1], ARGV[2])
redis.call('XDEL', KEYS[1], ARGV[2])
return 1
"""

# Release and reschedule in one step: the job is either still leased or
# already waiting in the delayed set, never neither.
_NACK_LUA = _LEASE_CHECK_LUA + r"""
redis.call('ZADD', KEYS[2], ARGV[5], ARGV[6])
redis.call('XACK', KEYS[1], ARGV[1], ARGV[2])
redis.call('XDEL', KEYS[1], ARGV[2])
return 1
"""

# Moves due jobs from the delayed sorted set back onto the stream.
# Members are newline-separated field/value pairs.
_PROMOTE_LUA = r"""
local unpack = unpack or table.unpack
local due = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1], 'LIMIT', 0, tonumber(ARGV[2]))
for _, payload in ipairs(due) do
    redis.call('ZREM', KEYS[1], payload)
    local fields = {}
    for part in string.gmatch(payload, '[^\n]+') do
        table.insert(fields, part)
    end
    redis.call('XADD', KEYS[2], '*', unpack(fields))
end
return #due
"""


def _encode_delayed(job: Job) -> str:
    fields = job.to_dict()
    fields.pop("receipt", None)
    return "\n".join(f"{k}\n{v}" for k, v in sorted(fields.items()) if v != "")


class RedisMessageQueue(MessageQueue):
    """
    Production queue backed by Redis Streams + Sorted Sets.

    - Each class has a stream read through a consumer group; a read entry
      sits in the group's pending list until XACK, which is the lease
    - Leases older than the visibility timeout are reclaimed with XAUTOCLAIM
    - ack and nack run as Lua scripts that first confirm this consumer
      still holds the lease at the same delivery count
    - Nacked jobs wait in a sorted set scored by visibility time and are
      moved back by promote_delayed()
    - job_id comes from a per-class INCR counter: (class, sequence)

    Pass `client` to use an existing redis.asyncio client instead of
    connecting to `redis_url`.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        key_prefix: str = "dispatch",
        consumer_group: str = "dispatch-workers",
        consumer_name: str = "",
        visibility_timeout: float = 90.0,
        promote_batch: int = 100,
        client=None,
        clock: Callable[[], float] = time.time,
    ):
        self._redis_url = redis_url
        self._prefix = key_prefix
        self._group = consumer_group
        self._consumer = consumer_name or f"worker_{uuid.uuid4().hex[:8]}"
        self.visibility_timeout = visibility_timeout
        self._promote_batch = promote_batch
        self._redis = client
        self._clock = clock
        self._ack_script = None
        self._nack_script = None
        self._promote_script = None

    def _stream(self, message_class: MessageClass) -> str:
        return f"{self._prefix}:{MessageClass(message_class).value}"

    def _delayed(self, message_class: MessageClass) -> str:
        return f"{self._stream(message_class)}:delayed"

    def _sequence(self, message_class: MessageClass) -> str:
        return f"{self._stream(message_class)}:seq"

    async def connect(self) -> None:
        import redis.asyncio as aioredis
        from redis.exceptions import RedisError

        if self._redis is None:
            self._redis = aioredis.from_url(
                self._redis_url,
                decode_responses=True,
                max_connections=20,
            )
        try:
            await self._redis.ping()
            for message_class in MessageClass:
                await self._ensure_group(message_class)
        except RedisError as e:
            raise QueueUnavailable(f"Redis queue unreachable: {e}") from e
        self._ack_script = self._redis.register_script(_ACK_LUA)
        self._nack_script = self._redis.register_script(_NACK_LUA)
        self._promote_script = self._redis.register_script(_PROMOTE_LUA)
        logger.info("redis_queue_connected", url=self._redis_url.split("@")[-1])

    async def close(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def ping(self) -> bool:
        from redis.exceptions import RedisError
        try:
            return bool(await self._redis.ping())
        except RedisError as e:
            raise QueueUnavailable(str(e)) from e

    async def _ensure_group(self, message_class: MessageClass) -> None:
        """Create consumer group if it doesn't exist."""
        from redis.exceptions import ResponseError
        try:
            await self._redis.xgroup_create(
                self._stream(message_class), self._group, id="0", mkstream=True,
            )
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def _times_delivered(self, stream: str, entry_id: str) -> int:
        pending = await self._redis.xpending_range(
            stream, self._group, min=entry_id, max=entry_id, count=1,
        )
        return int(pending[0]["times_delivered"]) if pending else 1

    async def _leased(self, stream: str, entry_id: str, fields: dict[str, str]) -> Job:
        job = Job.from_dict(fields)
        job.receipt = entry_id
        job.delivery_count = await self._times_delivered(stream, entry_id)
        return job

    async def enqueue(self, job: Job) -> Job:
        from redis.exceptions import RedisError
        try:
            if not job.job_id:
                seq = await self._redis.incr(self._sequence(job.message_class))
                job.job_id = f"{job.message_class.value}:{seq}"
            fields = job.to_dict()
            fields.pop("receipt", None)
            await self._redis.xadd(self._stream(job.message_class), fields)
        except RedisError as e:
            raise QueueUnavailable(f"Cannot enqueue job: {e}") from e
        logger.info("job_enqueued",
                    job_id=job.job_id,
                    message_id=job.message_id,
                    message_class=job.message_class.value)
        return job

    async def _reclaim_expired(self, message_class: MessageClass) -> Optional[Job]:
        stream = self._stream(message_class)
        result = await self._redis.xautoclaim(
            stream, self._group, self._consumer,
            min_idle_time=int(self.visibility_timeout * 1000),
            start_id="0-0",
            count=1,
        )
        claimed = result[1] if result and len(result) > 1 else []
        for entry_id, fields in claimed:
            if not fields:
                continue
            job = await self._leased(stream, entry_id, fields)
            logger.warning("job_lease_expired",
                           job_id=job.job_id,
                           entry_id=entry_id,
                           times_delivered=job.delivery_count)
            return job
        return None

    async def dequeue(self, message_class: MessageClass, timeout: Optional[float] = None) -> Optional[Job]:
        from redis.exceptions import RedisError
        stream = self._stream(message_class)
        try:
            job = await self._reclaim_expired(message_class)
            if job is not None:
                return job
            # block=0 waits forever in Redis
            block_ms = 0 if timeout is None else max(int(timeout * 1000), 1)
            messages = await self._redis.xreadgroup(
                groupname=self._group,
                consumername=self._consumer,
                streams={stream: ">"},
                count=1,
                block=block_ms,
            )
            for _stream_name, stream_messages in messages or []:
                for entry_id, fields in stream_messages:
                    return await self._leased(stream, entry_id, fields)
        except RedisError as e:
            raise QueueUnavailable(f"Cannot dequeue from {stream}: {e}") from e
        return None

    def _lease_args(self, job: Job) -> list:
        return [self._group, job.receipt, self._consumer, job.delivery_count]

    async def ack(self, job: Job) -> bool:
        from redis.exceptions import RedisError
        try:
            acked = await self._ack_script(
                keys=[self._stream(job.message_class)],
                args=self._lease_args(job),
            )
        except RedisError as e:
            raise QueueUnavailable(f"Cannot ack job {job.job_id}: {e}") from e
        if not acked:
            logger.warning("stale_ack_ignored", job_id=job.job_id)
            return False
        logger.debug("job_acked", job_id=job.job_id, message_id=job.message_id)
        return True

    async def nack(self, job: Job, delay: float = 0.0) -> bool:
        from redis.exceptions import RedisError
        visible_at = self._clock() + max(delay, 0.0)
        try:
            requeued = await self._nack_script(
                keys=[self._stream(job.message_class), self._delayed(job.message_class)],
                args=self._lease_args(job) + [visible_at, _encode_delayed(job)],
            )
        except RedisError as e:
            raise QueueUnavailable(f"Cannot nack job {job.job_id}: {e}") from e
        if not requeued:
            logger.warning("stale_nack_ignored", job_id=job.job_id)
            return False
        logger.info("job_nacked",
                    job_id=job.job_id,
                    attempt_number=job.attempt_number,
                    delay=delay)
        return True

    async def queue_length(self, message_class: MessageClass) -> int:
        from redis.exceptions import RedisError
        try:
            ready = await self._redis.xlen(self._stream(message_class))
            delayed = await self._redis.zcard(self._delayed(message_class))
        except RedisError as e:
            raise QueueUnavailable(str(e)) from e
        return ready + delayed

    async def promote_delayed(self, message_class: MessageClass) -> int:
        """Move jobs whose retry delay elapsed from the sorted set to the stream."""
        from redis.exceptions import RedisError
        try:
            moved = await self._promote_script(
                keys=[self._delayed(message_class), self._stream(message_class)],
                args=[self._clock(), self._promote_batch],
            )
        except RedisError as e:
            raise QueueUnavailable(f"Cannot promote delayed jobs: {e}") from e
        if moved:
            logger.info("delayed_jobs_promoted",
                        message_class=MessageClass(message_class).value,
                        count=moved)
        return int(moved or 0)


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

def create_message_queue(config=None, database=None) -> MessageQueue:
    """
    Factory: create the configured queue backend.

    `config` is a QueueConfig; the sql backend needs the shared Database.
    """
    from config.settings import QueueConfig

    config = config or QueueConfig()
    backend = config.backend

    if backend == "redis":
        queue: MessageQueue = RedisMessageQueue(
            redis_url=config.redis_url,
            key_prefix=config.key_prefix,
            consumer_group=config.consumer_group,
            visibility_timeout=config.visibility_timeout,
        )
    elif backend == "sql":
        if database is None:
            raise ValueError("queue backend 'sql' requires a Database handle")
        from job_queue.sql_queue import SqlMessageQueue
        queue = SqlMessageQueue(
            database,
            visibility_timeout=config.visibility_timeout,
            poll_interval=config.poll_interval,
        )
    elif backend == "memory":
        queue = InMemoryMessageQueue(visibility_timeout=config.visibility_timeout)
    else:
        raise ValueError(f"Unknown queue backend: {backend!r}")

    logger.info("queue_created", backend=backend)
    return queue
