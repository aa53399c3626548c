"""
SqlMessageQueue — Durable queue on the shared SQL database.

Each job is a row in queue_entries. A row is visible when visible_at is
in the past; dequeue claims it by pushing visible_at forward by the
visibility timeout and stamping a fresh receipt. The claim is a
compare-and-set on the visible_at value that was read, so two workers
racing for one row cannot both win.

    ready      visible_at <= now, receipt NULL
    in flight  visible_at  > now, receipt set (lease deadline)
    delayed    visible_at  > now, receipt NULL (nacked with a delay)

An expired lease is just a row whose visible_at passed again; it is
claimed like any other and its delivery_count grows.
"""
from __future__ import annotations

import asyncio
import time
import uuid
import structlog
from typing import Callable, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import DBAPIError

from core.errors import QueueUnavailable
from database.models import QueueEntryRow
from database.session import Database
from job_queue.message_queue import Job, MessageQueue
from models.schemas import MessageClass

logger = structlog.get_logger()


def _sequence_of(job: Job) -> int:
    return int(job.job_id.rsplit(":", 1)[-1])


class SqlMessageQueue(MessageQueue):
    """Polling queue backed by any SQLAlchemy-supported database."""

    def __init__(
        self,
        database: Database,
        visibility_timeout: float = 90.0,
        poll_interval: float = 0.5,
        clock: Callable[[], float] = time.time,
        claim_batch: int = 10,
    ):
        self._db = database
        self.visibility_timeout = visibility_timeout
        self._poll_interval = poll_interval
        self._clock = clock
        self._claim_batch = claim_batch

    async def connect(self) -> None:
        await self.ping()
        logger.info("sql_queue_connected", dialect=self._db.dialect)

    async def ping(self) -> bool:
        try:
            return await self._db.ping()
        except (DBAPIError, OSError) as e:
            raise QueueUnavailable(f"Queue database unreachable: {e}") from e

    async def enqueue(self, job: Job) -> Job:
        row = QueueEntryRow(
            message_class=job.message_class.value,
            message_id=job.message_id,
            attempt_number=job.attempt_number,
            enqueued_at=job.enqueued_at,
            visible_at=self._clock(),
            receipt=None,
            delivery_count=0,
        )
        try:
            async with self._db.session() as db:
                db.add(row)
                await db.flush()
                sequence = row.sequence
        except (DBAPIError, OSError) as e:
            raise QueueUnavailable(f"Cannot enqueue job: {e}") from e

        job.job_id = f"{job.message_class.value}:{sequence}"
        logger.info("job_enqueued",
                    job_id=job.job_id,
                    message_id=job.message_id,
                    message_class=job.message_class.value)
        return job

    async def _try_claim(self, message_class: MessageClass) -> Optional[Job]:
        now = self._clock()
        candidates_stmt = (
            select(QueueEntryRow.sequence, QueueEntryRow.visible_at)
            .where(
                QueueEntryRow.message_class == message_class.value,
                QueueEntryRow.visible_at <= now,
            )
            .order_by(QueueEntryRow.visible_at, QueueEntryRow.sequence)
            .limit(self._claim_batch)
        )
        async with self._db.session() as db:
            candidates = (await db.execute(candidates_stmt)).all()

        for sequence, seen_visible_at in candidates:
            receipt = uuid.uuid4().hex
            claim = (
                update(QueueEntryRow)
                .where(
                    QueueEntryRow.sequence == sequence,
                    QueueEntryRow.visible_at == seen_visible_at,
                )
                .values(
                    visible_at=now + self.visibility_timeout,
                    receipt=receipt,
                    delivery_count=QueueEntryRow.delivery_count + 1,
                )
            )
            async with self._db.session() as db:
                result = await db.execute(claim)
                if result.rowcount != 1:
                    continue  # another worker got there first
                row = await db.get(QueueEntryRow, sequence)

            if row.delivery_count > 1:
                logger.warning("job_redelivered",
                               job_id=f"{row.message_class}:{row.sequence}",
                               delivery_count=row.delivery_count)
            return Job(
                message_id=row.message_id,
                message_class=MessageClass(row.message_class),
                attempt_number=row.attempt_number,
                enqueued_at=row.enqueued_at,
                job_id=f"{row.message_class}:{row.sequence}",
                receipt=receipt,
                delivery_count=row.delivery_count,
            )
        return None

    async def dequeue(self, message_class: MessageClass, timeout: Optional[float] = None) -> Optional[Job]:
        message_class = MessageClass(message_class)
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while True:
            try:
                job = await self._try_claim(message_class)
            except (DBAPIError, OSError) as e:
                raise QueueUnavailable(f"Cannot dequeue {message_class.value}: {e}") from e
            if job is not None:
                return job
            wait = self._poll_interval
            if deadline is not None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return None
                wait = min(wait, remaining)
            await asyncio.sleep(wait)

    async def ack(self, job: Job) -> bool:
        stmt = delete(QueueEntryRow).where(
            QueueEntryRow.sequence == _sequence_of(job),
            QueueEntryRow.receipt == job.receipt,
        )
        try:
            async with self._db.session() as db:
                result = await db.execute(stmt)
        except (DBAPIError, OSError) as e:
            raise QueueUnavailable(f"Cannot ack job {job.job_id}: {e}") from e
        if result.rowcount != 1:
            logger.warning("stale_ack_ignored", job_id=job.job_id)
            return False
        logger.debug("job_acked", job_id=job.job_id, message_id=job.message_id)
        return True

    async def nack(self, job: Job, delay: float = 0.0) -> bool:
        stmt = (
            update(QueueEntryRow)
            .where(
                QueueEntryRow.sequence == _sequence_of(job),
                QueueEntryRow.receipt == job.receipt,
            )
            .values(
                visible_at=self._clock() + max(delay, 0.0),
                receipt=None,
                attempt_number=job.attempt_number,
            )
        )
        try:
            async with self._db.session() as db:
                result = await db.execute(stmt)
        except (DBAPIError, OSError) as e:
            raise QueueUnavailable(f"Cannot nack job {job.job_id}: {e}") from e
        if result.rowcount != 1:
            logger.warning("stale_nack_ignored", job_id=job.job_id)
            return False
        logger.info("job_nacked",
                    job_id=job.job_id,
                    attempt_number=job.attempt_number,
                    delay=delay)
        return True

    async def queue_length(self, message_class: MessageClass) -> int:
        stmt = select(func.count()).select_from(QueueEntryRow).where(
            QueueEntryRow.message_class == MessageClass(message_class).value
        )
        try:
            async with self._db.session() as db:
                return int(await db.scalar(stmt) or 0)
        except (DBAPIError, OSError) as e:
            raise QueueUnavailable(str(e)) from e
