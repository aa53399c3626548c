"""
Tests for the durable queue backends.

Covers:
  - Job envelope serialisation
  - InMemoryMessageQueue (leases, delays, stale receipts, blocking dequeue)
  - SqlMessageQueue (via SQLite; durability across handles, CAS claims)
  - RedisMessageQueue (via fakeredis; lease checks, delayed retries)
  - Queue factory
"""
import asyncio
from unittest.mock import AsyncMock

import fakeredis
import pytest
import pytest_asyncio
from redis.exceptions import ConnectionError as RedisConnectionError

from config.settings import QueueConfig
from core.errors import QueueUnavailable
from job_queue.message_queue import (
    InMemoryMessageQueue, Job, RedisMessageQueue, create_message_queue,
)
from models.schemas import MessageClass


def _job(message_id="m1", message_class=MessageClass.EMAIL) -> Job:
    return Job(message_id=message_id, message_class=message_class)


class TestJob:
    def test_defaults(self):
        job = Job(message_id="m1", message_class="sms")
        assert job.message_class is MessageClass.SMS
        assert job.attempt_number == 1
        assert job.enqueued_at

    def test_dict_round_trip_with_string_values(self):
        job = Job(message_id="m1", message_class=MessageClass.EMAIL,
                  attempt_number=2, job_id="email:7", delivery_count=3)
        data = job.to_dict()
        assert data["attempt_number"] == "2"
        assert data["message_class"] == "email"
        restored = Job.from_dict({**data, "unexpected": "x"})
        assert restored.attempt_number == 2
        assert restored.delivery_count == 3
        assert restored.job_id == "email:7"


# ──────────────────────────────────────────────────────────────
#  InMemoryMessageQueue
# ──────────────────────────────────────────────────────────────

class TestInMemoryMessageQueue:
    @pytest.fixture
    def queue(self, clock):
        return InMemoryMessageQueue(visibility_timeout=30.0, clock=clock, poll_interval=0.01)

    @pytest.mark.asyncio
    async def test_enqueue_assigns_job_id(self, queue):
        job = await queue.enqueue(_job())
        assert job.job_id == "email:1"
        second = await queue.enqueue(_job("m2"))
        assert second.job_id == "email:2"

    @pytest.mark.asyncio
    async def test_dequeue_leases_job(self, queue):
        await queue.enqueue(_job())
        job = await queue.dequeue(MessageClass.EMAIL, timeout=0.1)
        assert job.message_id == "m1"
        assert job.receipt
        assert job.delivery_count == 1
        # Leased: not visible to anyone else
        assert await queue.dequeue(MessageClass.EMAIL, timeout=0.02) is None
        assert await queue.queue_length(MessageClass.EMAIL) == 1

    @pytest.mark.asyncio
    async def test_dequeue_timeout_returns_none(self, queue):
        assert await queue.dequeue(MessageClass.SMS, timeout=0.02) is None

    @pytest.mark.asyncio
    async def test_fifo_and_class_isolation(self, queue):
        await queue.enqueue(_job("e1"))
        await queue.enqueue(_job("s1", MessageClass.SMS))
        await queue.enqueue(_job("e2"))
        first = await queue.dequeue(MessageClass.EMAIL, timeout=0.1)
        second = await queue.dequeue(MessageClass.EMAIL, timeout=0.1)
        assert [first.message_id, second.message_id] == ["e1", "e2"]
        sms = await queue.dequeue(MessageClass.SMS, timeout=0.1)
        assert sms.message_id == "s1"

    @pytest.mark.asyncio
    async def test_ack_removes(self, queue):
        await queue.enqueue(_job())
        job = await queue.dequeue(MessageClass.EMAIL, timeout=0.1)
        assert await queue.ack(job) is True
        assert await queue.queue_length(MessageClass.EMAIL) == 0

    @pytest.mark.asyncio
    async def test_nack_with_delay(self, queue, clock):
        await queue.enqueue(_job())
        job = await queue.dequeue(MessageClass.EMAIL, timeout=0.1)
        job.attempt_number = 2
        assert await queue.nack(job, delay=5.0) is True

        assert await queue.dequeue(MessageClass.EMAIL, timeout=0.02) is None
        clock.advance(5.0)
        again = await queue.dequeue(MessageClass.EMAIL, timeout=0.1)
        assert again.job_id == job.job_id
        assert again.attempt_number == 2
        assert again.delivery_count == 2

    @pytest.mark.asyncio
    async def test_nack_goes_behind_visible_jobs(self, queue):
        await queue.enqueue(_job("first"))
        await queue.enqueue(_job("second"))
        job = await queue.dequeue(MessageClass.EMAIL, timeout=0.1)
        await queue.nack(job, delay=0)
        nxt = await queue.dequeue(MessageClass.EMAIL, timeout=0.1)
        assert nxt.message_id == "second"

    @pytest.mark.asyncio
    async def test_expired_lease_redelivers(self, queue, clock):
        await queue.enqueue(_job())
        crashed = await queue.dequeue(MessageClass.EMAIL, timeout=0.1)

        clock.advance(31.0)
        redelivered = await queue.dequeue(MessageClass.EMAIL, timeout=0.1)
        assert redelivered.job_id == crashed.job_id
        assert redelivered.delivery_count == 2
        assert redelivered.receipt != crashed.receipt

        # The crashed worker's late ack carries a stale receipt
        assert await queue.ack(crashed) is False
        assert await queue.nack(crashed, delay=0) is False
        assert await queue.ack(redelivered) is True
        assert await queue.queue_length(MessageClass.EMAIL) == 0

    @pytest.mark.asyncio
    async def test_blocking_dequeue_wakes_on_enqueue(self, queue):
        waiter = asyncio.create_task(queue.dequeue(MessageClass.EMAIL, timeout=2.0))
        await asyncio.sleep(0.02)
        await queue.enqueue(_job("late"))
        job = await asyncio.wait_for(waiter, timeout=1.0)
        assert job.message_id == "late"

    @pytest.mark.asyncio
    async def test_promote_delayed_is_noop(self, queue):
        assert await queue.promote_delayed(MessageClass.EMAIL) == 0


# ──────────────────────────────────────────────────────────────
#  SqlMessageQueue
# ──────────────────────────────────────────────────────────────

class TestSqlMessageQueue:
    @pytest_asyncio.fixture
    async def queue(self, database, clock):
        from job_queue.sql_queue import SqlMessageQueue
        q = SqlMessageQueue(database, visibility_timeout=30.0, poll_interval=0.01, clock=clock)
        await q.connect()
        return q

    @pytest.mark.asyncio
    async def test_enqueue_dequeue_ack(self, queue):
        job = await queue.enqueue(_job())
        assert job.job_id.startswith("email:")
        leased = await queue.dequeue(MessageClass.EMAIL, timeout=0.1)
        assert leased.job_id == job.job_id
        assert leased.message_id == "m1"
        assert leased.delivery_count == 1
        assert await queue.ack(leased) is True
        assert await queue.queue_length(MessageClass.EMAIL) == 0

    @pytest.mark.asyncio
    async def test_dequeue_timeout(self, queue):
        assert await queue.dequeue(MessageClass.SMS, timeout=0.05) is None

    @pytest.mark.asyncio
    async def test_nack_delay_and_attempt(self, queue, clock):
        await queue.enqueue(_job())
        job = await queue.dequeue(MessageClass.EMAIL, timeout=0.1)
        job.attempt_number = 2
        assert await queue.nack(job, delay=2.0) is True
        assert await queue.dequeue(MessageClass.EMAIL, timeout=0.03) is None
        clock.advance(2.0)
        again = await queue.dequeue(MessageClass.EMAIL, timeout=0.1)
        assert again.attempt_number == 2
        assert again.delivery_count == 2

    @pytest.mark.asyncio
    async def test_expired_lease_redelivers(self, queue, clock):
        await queue.enqueue(_job())
        crashed = await queue.dequeue(MessageClass.EMAIL, timeout=0.1)
        clock.advance(30.5)
        redelivered = await queue.dequeue(MessageClass.EMAIL, timeout=0.1)
        assert redelivered.job_id == crashed.job_id
        assert redelivered.delivery_count == 2
        assert await queue.ack(crashed) is False
        assert await queue.ack(redelivered) is True

    @pytest.mark.asyncio
    async def test_concurrent_consumers_never_share_a_lease(self, queue):
        for i in range(5):
            await queue.enqueue(_job(f"m{i}"))
        leased = await asyncio.gather(
            *(queue.dequeue(MessageClass.EMAIL, timeout=0.5) for _ in range(5))
        )
        ids = [j.job_id for j in leased if j is not None]
        assert len(ids) == 5
        assert len(set(ids)) == 5

    @pytest.mark.asyncio
    async def test_jobs_survive_new_handle(self, data_dir, clock):
        from database.session import Database
        from job_queue.sql_queue import SqlMessageQueue

        url = f"sqlite:///{data_dir}/queue.db"
        db1 = Database(url)
        await db1.init()
        await SqlMessageQueue(db1, clock=clock).enqueue(_job("durable"))
        await db1.close()

        db2 = Database(url)
        q2 = SqlMessageQueue(db2, clock=clock, poll_interval=0.01)
        job = await q2.dequeue(MessageClass.EMAIL, timeout=0.2)
        await db2.close()
        assert job.message_id == "durable"


    def test_visible_at_is_double_precision_on_mysql(self):
        from sqlalchemy.dialects import mysql
        from sqlalchemy.schema import CreateTable
        from database.models import QueueEntryRow

        ddl = str(CreateTable(QueueEntryRow.__table__).compile(dialect=mysql.dialect()))
        assert "visible_at DOUBLE" in ddl


# ──────────────────────────────────────────────────────────────
#  RedisMessageQueue (fakeredis)
# ──────────────────────────────────────────────────────────────

class TestRedisMessageQueue:
    @pytest_asyncio.fixture
    async def workers(self, clock):
        """Two consumers in one group, each with its own connection."""
        server = fakeredis.FakeServer()
        queues = []
        for name in ("w1", "w2"):
            q = RedisMessageQueue(
                key_prefix="t",
                consumer_name=name,
                visibility_timeout=0.05,
                client=fakeredis.FakeAsyncRedis(server=server, decode_responses=True),
                clock=clock,
            )
            await q.connect()
            queues.append(q)
        yield queues
        for q in queues:
            await q.close()

    @pytest.mark.asyncio
    async def test_enqueue_dequeue_ack(self, workers):
        w1, _ = workers
        job = await w1.enqueue(_job())
        assert job.job_id == "email:1"
        leased = await w1.dequeue(MessageClass.EMAIL, timeout=0.05)
        assert leased.job_id == "email:1"
        assert leased.message_id == "m1"
        assert leased.receipt
        assert leased.delivery_count == 1
        assert await w1.ack(leased) is True
        assert await w1.queue_length(MessageClass.EMAIL) == 0
        assert await w1.ack(leased) is False

    @pytest.mark.asyncio
    async def test_dequeue_timeout(self, workers):
        w1, _ = workers
        assert await w1.dequeue(MessageClass.SMS, timeout=0.02) is None

    @pytest.mark.asyncio
    async def test_one_job_one_holder(self, workers):
        w1, w2 = workers
        await w1.enqueue(_job())
        got = await asyncio.gather(
            w1.dequeue(MessageClass.EMAIL, timeout=0.02),
            w2.dequeue(MessageClass.EMAIL, timeout=0.02),
        )
        assert len([j for j in got if j is not None]) == 1

    @pytest.mark.asyncio
    async def test_expired_lease_moves_to_other_worker(self, workers):
        w1, w2 = workers
        await w1.enqueue(_job())
        crashed = await w1.dequeue(MessageClass.EMAIL, timeout=0.05)
        await asyncio.sleep(0.1)

        reclaimed = await w2.dequeue(MessageClass.EMAIL, timeout=0.05)
        assert reclaimed.job_id == crashed.job_id
        assert reclaimed.receipt == crashed.receipt

        # The old holder can neither finish nor reschedule the job
        assert await w1.ack(crashed) is False
        assert await w1.nack(crashed, delay=0) is False
        assert await w2.queue_length(MessageClass.EMAIL) == 1
        assert await w2.ack(reclaimed) is True
        assert await w2.queue_length(MessageClass.EMAIL) == 0

    @pytest.mark.asyncio
    async def test_nack_waits_for_delay_then_promotes(self, workers, clock):
        w1, _ = workers
        await w1.enqueue(_job())
        job = await w1.dequeue(MessageClass.EMAIL, timeout=0.05)
        job.attempt_number = 2
        assert await w1.nack(job, delay=5.0) is True
        assert await w1.queue_length(MessageClass.EMAIL) == 1

        assert await w1.promote_delayed(MessageClass.EMAIL) == 0
        assert await w1.dequeue(MessageClass.EMAIL, timeout=0.02) is None

        clock.advance(5.0)
        assert await w1.promote_delayed(MessageClass.EMAIL) == 1
        again = await w1.dequeue(MessageClass.EMAIL, timeout=0.05)
        assert again.job_id == job.job_id
        assert again.message_id == "m1"
        assert again.attempt_number == 2
        assert again.receipt != job.receipt
        assert await w1.ack(again) is True
        assert await w1.queue_length(MessageClass.EMAIL) == 0

    @pytest.mark.asyncio
    async def test_failed_nack_leaves_job_leased(self, workers):
        w1, w2 = workers
        await w1.enqueue(_job())
        job = await w1.dequeue(MessageClass.EMAIL, timeout=0.05)

        w1._nack_script = AsyncMock(side_effect=RedisConnectionError("connection reset"))
        with pytest.raises(QueueUnavailable):
            await w1.nack(job, delay=0)

        # Nothing was rescheduled, so the job comes back once, through its lease
        assert await w2.queue_length(MessageClass.EMAIL) == 1
        await asyncio.sleep(0.1)
        redelivered = await w2.dequeue(MessageClass.EMAIL, timeout=0.05)
        assert redelivered.job_id == job.job_id
        assert await w2.promote_delayed(MessageClass.EMAIL) == 0

    @pytest.mark.asyncio
    async def test_unreachable_redis(self):
        client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
        client.ping = AsyncMock(side_effect=RedisConnectionError("refused"))
        with pytest.raises(QueueUnavailable):
            await RedisMessageQueue(client=client).connect()


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

class TestQueueFactory:
    def test_default_memory(self):
        assert isinstance(create_message_queue(), InMemoryMessageQueue)

    def test_redis_built_without_connecting(self):
        queue = create_message_queue(QueueConfig(backend="redis", key_prefix="t"))
        assert isinstance(queue, RedisMessageQueue)
        assert queue._stream(MessageClass.SMS) == "t:sms"
        assert queue._delayed(MessageClass.SMS) == "t:sms:delayed"

    def test_sql_requires_database(self):
        with pytest.raises(ValueError):
            create_message_queue(QueueConfig(backend="sql"))

    @pytest.mark.asyncio
    async def test_sql_backend(self, database):
        from job_queue.sql_queue import SqlMessageQueue
        queue = create_message_queue(QueueConfig(backend="sql"), database=database)
        assert isinstance(queue, SqlMessageQueue)

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            create_message_queue(QueueConfig(backend="kafka"))

    def test_visibility_timeout_from_config(self):
        queue = create_message_queue(QueueConfig(visibility_timeout=12.5))
        assert queue.visibility_timeout == 12.5
