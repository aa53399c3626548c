"""
Dispatch runtime — worker pools + delayed-job promoter over an AppContext.

One DispatchWorkerPool per message class that has a deliverer. The
promoter only matters for the Redis queue but runs for every backend.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Iterable, Optional

from core.context import AppContext
from core.errors import UnavailableError
from job_queue.consumer import DelayedJobPromoter, DispatchWorkerPool
from models.schemas import MessageClass

logger = structlog.get_logger()


class DispatchRuntime:

    def __init__(self, context: AppContext, classes: Optional[Iterable[MessageClass]] = None):
        self.context = context
        available = context.deliverers.get_available()
        wanted = [MessageClass(c) for c in classes] if classes else list(available)
        missing = [c.value for c in wanted if c not in available]
        if missing:
            raise ValueError(f"No deliverer configured for: {', '.join(missing)}")

        settings = context.settings
        self.pools: dict[MessageClass, DispatchWorkerPool] = {
            mc: DispatchWorkerPool(
                mc,
                queue=context.queue,
                store=context.store,
                deliverer=context.deliverers.get(mc),
                retry_policy=context.retry_policy,
                concurrency=settings.dispatch.concurrency_for(mc.value),
                delivery_timeout=settings.dispatch.delivery_timeout,
                block_timeout=settings.queue.block_timeout,
            )
            for mc in wanted
        }
        self.promoter = DelayedJobPromoter(
            context.queue,
            classes=list(self.pools),
            interval_seconds=settings.queue.delayed_promote_interval,
        )

    async def start(self) -> None:
        for pool in self.pools.values():
            await pool.start()
        await self.promoter.start_background()
        logger.info("dispatch_runtime_started", classes=[mc.value for mc in self.pools])

    async def stop(self, timeout: Optional[float] = None) -> None:
        if timeout is None:
            timeout = self.context.settings.dispatch.shutdown_timeout
        await self.promoter.stop()
        # Pools drain concurrently so the grace period bounds the whole shutdown
        await asyncio.gather(*(pool.stop(timeout=timeout) for pool in self.pools.values()))
        logger.info("dispatch_runtime_stopped")

    async def health(self) -> dict[str, Any]:
        """Readiness snapshot: queue depths, status counts, pool and deliverer state."""
        ctx = self.context
        report: dict[str, Any] = {"status": "ok", "pools": {}, "queues": {}}

        for mc, pool in self.pools.items():
            report["pools"][mc.value] = pool.stats()

        try:
            await ctx.queue.ping()
            for mc in self.pools:
                report["queues"][mc.value] = await ctx.queue.queue_length(mc)
        except UnavailableError as e:
            report["status"] = "degraded"
            report["queue_error"] = str(e)

        try:
            report["messages"] = await ctx.store.count_by_status()
        except UnavailableError as e:
            report["status"] = "degraded"
            report["store_error"] = str(e)

        report["deliverers"] = await ctx.deliverers.health_check_all()
        return report
