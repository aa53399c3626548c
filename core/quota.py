"""
Quota Gate — per-tenant admission counter over fixed UTC windows.

try_admit() is an atomic check-and-increment: a tenant at its limit is
refused with no side effect, so admitted messages per window never
exceed the limit even under concurrent ingress.

Backends:
  - memory: dict counters, one asyncio.Lock per tenant (single process)
  - sql:    tenant_quotas row per (tenant, window_start), conditional UPDATE
  - redis:  one key per (tenant, window_start), Lua check-and-increment,
            expires at the end of its window
"""
from __future__ import annotations

import asyncio
import structlog
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import DBAPIError, IntegrityError

from core.errors import QuotaUnavailable
from database.models import TenantQuotaRow
from models.schemas import TenantQuota

logger = structlog.get_logger()

TimeProvider = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QuotaWindow(str, Enum):
    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"


_WINDOW_LENGTH = {
    QuotaWindow.MINUTE: timedelta(minutes=1),
    QuotaWindow.HOUR: timedelta(hours=1),
    QuotaWindow.DAY: timedelta(days=1),
}


def window_bounds(now: datetime, window: QuotaWindow) -> tuple[datetime, datetime]:
    """[start, end) of the fixed window containing `now`, in UTC."""
    window = QuotaWindow(window)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    now = now.astimezone(timezone.utc)
    if window == QuotaWindow.MINUTE:
        start = now.replace(second=0, microsecond=0)
    elif window == QuotaWindow.HOUR:
        start = now.replace(minute=0, second=0, microsecond=0)
    else:
        start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + _WINDOW_LENGTH[window]


@dataclass
class QuotaPolicy:
    default_limit: int = 200
    tenant_limits: dict[str, int] = field(default_factory=dict)
    window: QuotaWindow = QuotaWindow.DAY

    def __post_init__(self):
        self.window = QuotaWindow(self.window)

    @classmethod
    def from_config(cls, config) -> QuotaPolicy:
        return cls(
            default_limit=config.default_limit,
            tenant_limits=dict(config.tenant_limits),
            window=QuotaWindow(config.window),
        )

    def limit_for(self, tenant_id: str) -> int:
        return int(self.tenant_limits.get(tenant_id, self.default_limit))


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class QuotaGate(ABC):

    def __init__(self, policy: Optional[QuotaPolicy] = None, time_provider: TimeProvider = _utcnow):
        self.policy = policy or QuotaPolicy()
        self._now = time_provider

    def _current_window(self) -> tuple[datetime, datetime]:
        return window_bounds(self._now(), self.policy.window)

    async def connect(self) -> None:
        pass

    async def close(self) -> None:
        pass

    @abstractmethod
    async def try_admit(self, tenant_id: str) -> bool:
        """Consume one unit if the tenant is under its limit."""
        ...

    @abstractmethod
    async def refund(self, tenant_id: str) -> None:
        """Return one unit to the current window, never below zero."""
        ...

    @abstractmethod
    async def usage(self, tenant_id: str) -> TenantQuota:
        ...


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation
# ──────────────────────────────────────────────────────────────

class InMemoryQuotaGate(QuotaGate):

    def __init__(self, policy: Optional[QuotaPolicy] = None, time_provider: TimeProvider = _utcnow):
        super().__init__(policy, time_provider)
        self._counts: dict[tuple[str, datetime], int] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def _prune(self, tenant_id: str, current: datetime) -> None:
        stale = [k for k in self._counts if k[0] == tenant_id and k[1] < current]
        for key in stale:
            del self._counts[key]

    async def try_admit(self, tenant_id: str) -> bool:
        start, _ = self._current_window()
        limit = self.policy.limit_for(tenant_id)
        async with self._locks[tenant_id]:
            self._prune(tenant_id, start)
            count = self._counts.get((tenant_id, start), 0)
            if count >= limit:
                logger.info("quota_rejected", tenant_id=tenant_id, count=count, limit=limit)
                return False
            self._counts[(tenant_id, start)] = count + 1
        return True

    async def refund(self, tenant_id: str) -> None:
        start, _ = self._current_window()
        async with self._locks[tenant_id]:
            count = self._counts.get((tenant_id, start), 0)
            if count > 0:
                self._counts[(tenant_id, start)] = count - 1
        logger.info("quota_refunded", tenant_id=tenant_id)

    async def usage(self, tenant_id: str) -> TenantQuota:
        start, _ = self._current_window()
        return TenantQuota(
            tenant_id=tenant_id,
            window_start=start,
            count=self._counts.get((tenant_id, start), 0),
            limit=self.policy.limit_for(tenant_id),
        )


# ──────────────────────────────────────────────────────────────
#  SQL Implementation
# ──────────────────────────────────────────────────────────────

class SqlQuotaGate(QuotaGate):
    """Counters in tenant_quotas; the conditional UPDATE is the admission decision."""

    def __init__(self, database, policy: Optional[QuotaPolicy] = None, time_provider: TimeProvider = _utcnow):
        super().__init__(policy, time_provider)
        self._db = database

    async def connect(self) -> None:
        try:
            await self._db.ping()
        except (DBAPIError, OSError) as e:
            raise QuotaUnavailable(f"Quota database unreachable: {e}") from e

    async def _ensure_row(self, tenant_id: str, start: datetime, limit: int) -> None:
        async with self._db.session() as db:
            if await db.get(TenantQuotaRow, (tenant_id, start)) is not None:
                return
        try:
            async with self._db.session() as db:
                db.add(TenantQuotaRow(
                    tenant_id=tenant_id, window_start=start, count=0, limit=limit,
                ))
        except IntegrityError:
            logger.debug("quota_row_created_concurrently", tenant_id=tenant_id)

    async def try_admit(self, tenant_id: str) -> bool:
        start, _ = self._current_window()
        limit = self.policy.limit_for(tenant_id)
        stmt = (
            update(TenantQuotaRow)
            .where(
                TenantQuotaRow.tenant_id == tenant_id,
                TenantQuotaRow.window_start == start,
                TenantQuotaRow.count < limit,
            )
            .values(count=TenantQuotaRow.count + 1, limit=limit, updated_at=_utcnow())
        )
        try:
            await self._ensure_row(tenant_id, start, limit)
            async with self._db.session() as db:
                result = await db.execute(stmt)
        except (DBAPIError, OSError) as e:
            raise QuotaUnavailable(f"Quota check failed for {tenant_id}: {e}") from e

        if result.rowcount != 1:
            logger.info("quota_rejected", tenant_id=tenant_id, limit=limit)
            return False
        return True

    async def refund(self, tenant_id: str) -> None:
        start, _ = self._current_window()
        stmt = (
            update(TenantQuotaRow)
            .where(
                TenantQuotaRow.tenant_id == tenant_id,
                TenantQuotaRow.window_start == start,
                TenantQuotaRow.count > 0,
            )
            .values(count=TenantQuotaRow.count - 1, updated_at=_utcnow())
        )
        try:
            async with self._db.session() as db:
                await db.execute(stmt)
        except (DBAPIError, OSError) as e:
            raise QuotaUnavailable(f"Quota refund failed for {tenant_id}: {e}") from e
        logger.info("quota_refunded", tenant_id=tenant_id)

    async def usage(self, tenant_id: str) -> TenantQuota:
        start, _ = self._current_window()
        stmt = select(TenantQuotaRow.count).where(
            TenantQuotaRow.tenant_id == tenant_id,
            TenantQuotaRow.window_start == start,
        )
        try:
            async with self._db.session() as db:
                count = await db.scalar(stmt)
        except (DBAPIError, OSError) as e:
            raise QuotaUnavailable(str(e)) from e
        return TenantQuota(
            tenant_id=tenant_id,
            window_start=start,
            count=count or 0,
            limit=self.policy.limit_for(tenant_id),
        )


# ──────────────────────────────────────────────────────────────
#  Redis Implementation
# ──────────────────────────────────────────────────────────────

# TTL is one window length plus a minute, counted from the first admission.
_ADMIT_LUA = """
local current = tonumber(redis.call('GET', KEYS[1]) or '0')
if current >= tonumber(ARGV[1]) then
    return 0
end
local n = redis.call('INCR', KEYS[1])
if n == 1 then
    redis.call('EXPIRE', KEYS[1], tonumber(ARGV[2]))
end
return 1
"""

_REFUND_LUA = """
local current = tonumber(redis.call('GET', KEYS[1]) or '0')
if current > 0 then
    return redis.call('DECR', KEYS[1])
end
return 0
"""


class RedisQuotaGate(QuotaGate):

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        key_prefix: str = "dispatch",
        policy: Optional[QuotaPolicy] = None,
        time_provider: TimeProvider = _utcnow,
        client=None,
    ):
        super().__init__(policy, time_provider)
        self._redis_url = redis_url
        self._prefix = key_prefix
        self._redis = client
        self._admit = None
        self._refund = None

    def _key(self, tenant_id: str, start: datetime) -> str:
        return f"{self._prefix}:quota:{tenant_id}:{int(start.timestamp())}"

    async def connect(self) -> None:
        import redis.asyncio as aioredis
        from redis.exceptions import RedisError

        if self._redis is None:
            self._redis = aioredis.from_url(self._redis_url, decode_responses=True)
        try:
            await self._redis.ping()
        except RedisError as e:
            raise QuotaUnavailable(f"Redis quota store unreachable: {e}") from e
        self._admit = self._redis.register_script(_ADMIT_LUA)
        self._refund = self._redis.register_script(_REFUND_LUA)
        logger.info("redis_quota_connected", url=self._redis_url.split("@")[-1])

    async def close(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def try_admit(self, tenant_id: str) -> bool:
        from redis.exceptions import RedisError

        start, end = self._current_window()
        limit = self.policy.limit_for(tenant_id)
        try:
            admitted = await self._admit(
                keys=[self._key(tenant_id, start)],
                args=[limit, int((end - start).total_seconds()) + 60],
            )
        except RedisError as e:
            raise QuotaUnavailable(f"Quota check failed for {tenant_id}: {e}") from e
        if not admitted:
            logger.info("quota_rejected", tenant_id=tenant_id, limit=limit)
            return False
        return True

    async def refund(self, tenant_id: str) -> None:
        from redis.exceptions import RedisError

        start, _ = self._current_window()
        try:
            await self._refund(keys=[self._key(tenant_id, start)])
        except RedisError as e:
            raise QuotaUnavailable(f"Quota refund failed for {tenant_id}: {e}") from e
        logger.info("quota_refunded", tenant_id=tenant_id)

    async def usage(self, tenant_id: str) -> TenantQuota:
        from redis.exceptions import RedisError

        start, _ = self._current_window()
        try:
            count = await self._redis.get(self._key(tenant_id, start))
        except RedisError as e:
            raise QuotaUnavailable(str(e)) from e
        return TenantQuota(
            tenant_id=tenant_id,
            window_start=start,
            count=int(count or 0),
            limit=self.policy.limit_for(tenant_id),
        )


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

def create_quota_gate(config=None, database=None, time_provider: TimeProvider = _utcnow) -> QuotaGate:
    """Factory: create the configured quota backend from a QuotaConfig."""
    from config.settings import QuotaConfig

    config = config or QuotaConfig()
    policy = QuotaPolicy.from_config(config)
    backend = config.backend

    if backend == "redis":
        gate: QuotaGate = RedisQuotaGate(
            redis_url=config.redis_url,
            key_prefix=config.key_prefix,
            policy=policy,
            time_provider=time_provider,
        )
    elif backend == "sql":
        if database is None:
            raise ValueError("quota backend 'sql' requires a Database handle")
        gate = SqlQuotaGate(database, policy=policy, time_provider=time_provider)
    elif backend == "memory":
        gate = InMemoryQuotaGate(policy=policy, time_provider=time_provider)
    else:
        raise ValueError(f"Unknown quota backend: {backend!r}")

    logger.info("quota_gate_created",
                backend=backend,
                window=policy.window.value,
                default_limit=policy.default_limit)
    return gate
