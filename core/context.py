"""
Application context — every long-lived handle, built once and injected.

    settings = load_settings(path)
    ctx = build_context(settings)
    await ctx.start()          # connects backends, bounded retries
    ...
    await ctx.close()

Nothing here is a module global: tests build as many contexts as they
need, each with its own store, queue and quota gate.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from sqlalchemy.exc import DBAPIError
from tenacity import (
    AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential,
)

from channels.base import DeliveryRegistry
from channels.factory import create_deliverers
from config.settings import Settings
from core.errors import StartupError, StoreUnavailable, UnavailableError
from core.ingress import MessageService
from core.quota import QuotaGate, create_quota_gate
from database.session import Database
from database.store_base import BaseMessageStore
from database.store_factory import create_store
from job_queue.message_queue import MessageQueue, create_message_queue
from job_queue.retry import RetryPolicy

logger = structlog.get_logger()


@dataclass
class AppContext:
    settings: Settings
    store: BaseMessageStore
    queue: MessageQueue
    quota: QuotaGate
    deliverers: DeliveryRegistry
    retry_policy: RetryPolicy
    service: MessageService
    database: Optional[Database] = None

    async def _connect(self, name: str, connect: Callable[[], Awaitable[None]]) -> None:
        attempts = self.settings.startup.connect_attempts
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(attempts),
                wait=wait_exponential(multiplier=0.5, max=self.settings.startup.connect_backoff_max),
                retry=retry_if_exception_type(UnavailableError),
                before_sleep=lambda rs: logger.warning(
                    "backend_connect_retry",
                    backend=name,
                    attempt=rs.attempt_number,
                    error=str(rs.outcome.exception()),
                ),
                reraise=True,
            ):
                with attempt:
                    await connect()
        except UnavailableError as e:
            logger.error("backend_unreachable", backend=name, attempts=attempts, error=str(e))
            raise StartupError(f"{name} unreachable after {attempts} attempts: {e}") from e

    async def _init_database(self) -> None:
        try:
            await self.database.init()
        except (DBAPIError, OSError) as e:
            raise StoreUnavailable(f"Database unreachable: {e}") from e

    async def start(self) -> None:
        if self.database is not None:
            await self._connect("database", self._init_database)
        await self._connect("store", self.store.connect)
        await self._connect("queue", self.queue.connect)
        await self._connect("quota", self.quota.connect)
        await self.deliverers.initialize_all(self.settings.providers)
        logger.info("app_context_started",
                    store=self.settings.database.store_backend,
                    queue=self.settings.queue.backend,
                    quota=self.settings.quota.backend,
                    channels=[mc.value for mc in self.deliverers.get_available()])

    async def close(self) -> None:
        await self.deliverers.shutdown_all()
        await self.queue.close()
        await self.quota.close()
        await self.store.close()
        if self.database is not None:
            await self.database.close()
        logger.info("app_context_closed")


def _needs_database(settings: Settings) -> bool:
    return "sql" in (
        settings.database.store_backend,
        settings.queue.backend,
        settings.quota.backend,
    )


def build_context(
    settings: Settings,
    deliverers: Optional[DeliveryRegistry] = None,
) -> AppContext:
    """Construct (but do not connect) every handle described by `settings`."""
    database = None
    if _needs_database(settings):
        database = Database(settings.database.url, echo=settings.debug)

    store = create_store(settings.database, database=database)
    queue = create_message_queue(settings.queue, database=database)
    quota = create_quota_gate(settings.quota, database=database)

    return AppContext(
        settings=settings,
        store=store,
        queue=queue,
        quota=quota,
        deliverers=deliverers or create_deliverers(settings),
        retry_policy=RetryPolicy.from_config(settings.retry),
        service=MessageService(store, queue, quota),
        database=database,
    )
