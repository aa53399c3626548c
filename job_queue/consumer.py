"""
Queue Consumer — Worker pool that drains one message class.

Runs as asyncio tasks inside the worker process. For horizontal scaling,
deploy several processes against the same durable backend; the lease on
each dequeued job keeps two workers from handling it at the same time
(until the lease expires).

Topology:
  ┌──────────────┐       ┌─────────────────┐       ┌────────────┐
  │ MessageService│──enq─▶│ dispatch:<class> │──────▶│  Worker(s) │
  └──────────────┘       └─────────────────┘       └─────┬──────┘
                                  ▲                       │ deliver
                                  │                       ▼
                         ┌────────┴────────┐       ┌────────────┐
                         │ delayed (nack    │◀retry─│ RetryPolicy │
                         │  with backoff)   │       └─────┬──────┘
                         └─────────────────┘             │ give up
                                                          ▼
                                                 Message Store: failed
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Iterable, Optional

from channels.base import Deliverer, DeliveryError, TransientDeliveryError
from core.errors import MessageNotFound, QueueUnavailable, UnavailableError
from database.store_base import BaseMessageStore
from job_queue.message_queue import Job, MessageQueue
from job_queue.retry import RetryPolicy
from models.schemas import MessageClass

logger = structlog.get_logger()


class DispatchWorkerPool:
    """
    Fixed-size pool of workers for one message class.

    Usage:
        pool = DispatchWorkerPool(MessageClass.EMAIL, queue, store, deliverer, policy)
        await pool.start()
        ...
        await pool.stop(timeout=30)
    """

    def __init__(
        self,
        message_class: MessageClass,
        queue: MessageQueue,
        store: BaseMessageStore,
        deliverer: Deliverer,
        retry_policy: Optional[RetryPolicy] = None,
        concurrency: int = 5,
        delivery_timeout: float = 30.0,
        block_timeout: float = 2.0,
        error_backoff: float = 1.0,
    ):
        self.message_class = MessageClass(message_class)
        self.queue = queue
        self.store = store
        self.deliverer = deliverer
        self.retry_policy = retry_policy or RetryPolicy()
        self.concurrency = concurrency
        self.delivery_timeout = delivery_timeout
        self.block_timeout = block_timeout
        self.error_backoff = error_backoff

        self._tasks: list[asyncio.Task] = []
        self._stopping = asyncio.Event()
        self._in_flight = 0
        self._counters = {
            "processed": 0,
            "sent": 0,
            "failed": 0,
            "retried": 0,
            "skipped": 0,
            "errors": 0,
        }

    @property
    def running(self) -> bool:
        return bool(self._tasks) and not self._stopping.is_set()

    async def start(self) -> None:
        if self._tasks:
            return
        self._stopping.clear()
        for i in range(self.concurrency):
            task = asyncio.create_task(
                self._worker(i), name=f"dispatch-{self.message_class.value}-{i}",
            )
            self._tasks.append(task)
        logger.info("worker_pool_started",
                    message_class=self.message_class.value,
                    concurrency=self.concurrency)

    async def stop(self, timeout: float = 30.0) -> None:
        """Let in-flight deliveries finish within `timeout`, then cancel."""
        if not self._tasks:
            return
        self._stopping.set()
        done, pending = await asyncio.wait(self._tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning("worker_pool_forced_stop",
                           message_class=self.message_class.value,
                           cancelled=len(pending))
        self._tasks.clear()
        logger.info("worker_pool_stopped",
                    message_class=self.message_class.value,
                    **self._counters)

    def stats(self) -> dict[str, Any]:
        return {
            "message_class": self.message_class.value,
            "running": self.running,
            "concurrency": self.concurrency,
            "in_flight": self._in_flight,
            **self._counters,
        }

    # ── Worker loop ───────────────────────────────────────

    async def _backoff(self) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=self.error_backoff)
        except asyncio.TimeoutError:
            pass

    async def _worker(self, index: int) -> None:
        log = logger.bind(message_class=self.message_class.value, worker=index)
        while not self._stopping.is_set():
            try:
                job = await self.queue.dequeue(self.message_class, timeout=self.block_timeout)
            except QueueUnavailable as e:
                log.error("dequeue_failed", error=str(e))
                self._counters["errors"] += 1
                await self._backoff()
                continue
            if job is None:
                continue

            self._in_flight += 1
            try:
                await self.process_job(job)
            except UnavailableError as e:
                # Lease stays open; the job reappears after the visibility timeout
                log.error("job_left_unacked", job_id=job.job_id, error=str(e))
                self._counters["errors"] += 1
                await self._backoff()
            except Exception as e:
                log.error("job_processing_error",
                          job_id=job.job_id,
                          error=str(e),
                          exc_info=True)
                self._counters["errors"] += 1
                await self._backoff()
            finally:
                self._in_flight -= 1

    # ── One job ───────────────────────────────────────────

    async def process_job(self, job: Job) -> str:
        """
        Handle a single dequeued job.

        Returns the outcome: "sent", "failed", "retried" or "skipped".
        Store and queue outages propagate as UnavailableError with the job
        still leased.
        """
        self._counters["processed"] += 1
        logger.info("job_received",
                    job_id=job.job_id,
                    message_id=job.message_id,
                    attempt_number=job.attempt_number,
                    delivery_count=job.delivery_count)

        try:
            message = await self.store.get(job.message_id)
        except MessageNotFound:
            logger.error("message_not_found", job_id=job.job_id, message_id=job.message_id)
            await self._ack(job)
            self._counters["skipped"] += 1
            return "skipped"

        if message.is_terminal:
            logger.info("duplicate_skipped",
                        job_id=job.job_id,
                        message_id=message.id,
                        status=message.status.value)
            await self._ack(job)
            self._counters["skipped"] += 1
            return "skipped"

        provider_ref, error = await self._deliver(message)
        attempts = await self.store.increment_attempt(message.id)

        if error is None:
            await self.store.mark_sent(message.id, provider_ref)
            await self._ack(job)
            self._counters["sent"] += 1
            logger.info("delivery_sent",
                        message_id=message.id,
                        provider_ref=provider_ref,
                        attempts=attempts)
            return "sent"

        decision = self.retry_policy.should_retry(attempts, error)
        logger.warning("delivery_failed",
                       message_id=message.id,
                       attempts=attempts,
                       error=str(error),
                       retryable=getattr(error, "retryable", True),
                       will_retry=decision.retry)

        if decision.retry:
            job.attempt_number = attempts + 1
            if await self.queue.nack(job, delay=decision.delay):
                logger.info("job_retried",
                            job_id=job.job_id,
                            message_id=message.id,
                            next_attempt=job.attempt_number,
                            delay=decision.delay)
            self._counters["retried"] += 1
            return "retried"

        await self.store.mark_failed(message.id, str(error) or type(error).__name__)
        await self._ack(job)
        self._counters["failed"] += 1
        logger.error("message_failed",
                     message_id=message.id,
                     attempts=attempts,
                     reason=str(error))
        return "failed"

    async def _deliver(self, message) -> tuple[str, Optional[DeliveryError]]:
        try:
            ref = await asyncio.wait_for(
                self.deliverer.deliver(message), timeout=self.delivery_timeout,
            )
            return ref, None
        except asyncio.TimeoutError:
            return "", TransientDeliveryError(
                f"delivery timed out after {self.delivery_timeout}s",
                channel=self.message_class.value,
            )
        except DeliveryError as e:
            return "", e
        except Exception as e:
            logger.error("delivery_unclassified_error",
                         message_id=message.id,
                         error=str(e),
                         exc_info=True)
            return "", TransientDeliveryError(
                f"{type(e).__name__}: {e}", channel=self.message_class.value,
            )

    async def _ack(self, job: Job) -> None:
        if not await self.queue.ack(job):
            logger.warning("lease_lost", job_id=job.job_id, message_id=job.message_id)


# ──────────────────────────────────────────────────────────────
#  Delayed Job Promoter
# ──────────────────────────────────────────────────────────────

class DelayedJobPromoter:
    """
    Background task that periodically moves nacked jobs whose retry
    delay has elapsed back into their class queue.

    For Redis: runs the promote Lua script per class.
    For memory/sql: visibility is time-based, promote_delayed() is a no-op.
    """

    def __init__(
        self,
        queue: MessageQueue,
        classes: Iterable[MessageClass] = tuple(MessageClass),
        interval_seconds: float = 5.0,
    ):
        self.queue = queue
        self.classes = [MessageClass(c) for c in classes]
        self.interval = interval_seconds
        self._task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()

    async def start_background(self) -> asyncio.Task:
        self._stopping.clear()
        self._task = asyncio.create_task(self._run(), name="delayed-promoter")
        return self._task

    async def stop(self) -> None:
        self._stopping.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def promote_once(self) -> int:
        moved = 0
        for message_class in self.classes:
            moved += await self.queue.promote_delayed(message_class)
        return moved

    async def _run(self) -> None:
        logger.info("delayed_promoter_started", interval=self.interval)
        while not self._stopping.is_set():
            try:
                await self.promote_once()
            except QueueUnavailable as e:
                logger.error("promoter_error", error=str(e))
            except Exception as e:
                logger.error("promoter_unexpected_error", error=str(e), exc_info=True)
            await asyncio.sleep(self.interval)
