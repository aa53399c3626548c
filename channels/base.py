"""
Delivery channels — Base infrastructure shared by every provider.

Provides:
- DeliveryError: tagged error hierarchy (transient vs terminal)
- CircuitBreaker: failure-counting breaker with half-open trial call
- DeliveryMetrics: per-class send/fail/latency tracking
- Deliverer: abstract base wrapping every delivery with breaker + metrics
- DeliveryRegistry: class → deliverer lookup, init, health, shutdown

A Deliverer makes exactly one provider call per deliver(). Retrying is
the dispatch pipeline's job (job_queue.retry), never the channel's.
"""
from __future__ import annotations

import abc
import time
import structlog
from typing import Any, Callable, Optional

from models.schemas import Message, MessageClass

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class DeliveryError(Exception):
    """Base exception for all delivery attempts."""

    def __init__(self, message: str, channel: str = "", retryable: bool = True):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


class TransientDeliveryError(DeliveryError):
    """Timeouts, throttling, provider 5xx, connection failures."""

    def __init__(self, message: str, channel: str = ""):
        super().__init__(message, channel, retryable=True)


class TerminalDeliveryError(DeliveryError):
    """Malformed recipient, provider rejection. Retrying cannot help."""

    def __init__(self, message: str, channel: str = ""):
        super().__init__(message, channel, retryable=False)


class CircuitOpenError(TransientDeliveryError):
    def __init__(self, channel: str = ""):
        super().__init__(f"Circuit breaker open for {channel}", channel)


# ══════════════════════════════════════════════════════════════
#  CIRCUIT BREAKER
# ══════════════════════════════════════════════════════════════

class CircuitBreaker:
    """
    Failure-counting circuit breaker.

    closed → open (after threshold failures) → half_open (after timeout) →
    closed (on success) or open (on failure).
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self._state = "closed"
        self._failure_count = 0
        self._opened_at: float = 0.0
        self._total_failures = 0
        self._total_successes = 0

    @property
    def state(self) -> str:
        if self._state == "open":
            if self._clock() - self._opened_at >= self.recovery_timeout:
                return "half_open"
        return self._state

    @property
    def is_open(self) -> bool:
        return self.state == "open"

    def record_failure(self):
        self._total_failures += 1
        self._failure_count += 1
        if self.state == "half_open" or self._failure_count >= self.failure_threshold:
            self._open()

    def record_success(self):
        self._total_successes += 1
        if self.state == "half_open":
            self._close()
        else:
            self._failure_count = 0

    def _open(self):
        self._state = "open"
        self._opened_at = self._clock()
        logger.warning("circuit_opened", failures=self._failure_count)

    def _close(self):
        self._state = "closed"
        self._failure_count = 0

    def reset(self):
        self._close()

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "state": self.state,
            "failure_count": self._failure_count,
            "total_failures": self._total_failures,
            "total_successes": self._total_successes,
        }


# ══════════════════════════════════════════════════════════════
#  DELIVERY METRICS
# ══════════════════════════════════════════════════════════════

class DeliveryMetrics:
    """Tracks per-class send, failure and latency metrics."""

    def __init__(self, message_class: MessageClass):
        self.message_class = message_class
        self.messages_sent: int = 0
        self.messages_failed: int = 0
        self._latencies: list[float] = []
        self._errors: list[str] = []

    def record_send(self, latency_ms: float = 0.0):
        self.messages_sent += 1
        if latency_ms > 0:
            self._latencies.append(latency_ms)
            del self._latencies[:-500]

    def record_failure(self, error: str = ""):
        self.messages_failed += 1
        if error:
            self._errors.append(error)
            del self._errors[:-50]

    @property
    def avg_latency_ms(self) -> float:
        return sum(self._latencies) / len(self._latencies) if self._latencies else 0.0

    @property
    def failure_rate(self) -> float:
        total = self.messages_sent + self.messages_failed
        return self.messages_failed / total if total > 0 else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "message_class": self.message_class.value,
            "sent": self.messages_sent,
            "failed": self.messages_failed,
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "failure_rate": round(self.failure_rate, 4),
            "recent_errors": self._errors[-10:],
        }


# ══════════════════════════════════════════════════════════════
#  DELIVERER — Abstract Base
# ══════════════════════════════════════════════════════════════

class Deliverer(abc.ABC):
    """
    Base class for all providers.

    Subclasses implement initialize() and _do_deliver(). The base class
    wraps every delivery with the circuit breaker and metrics. Only
    transient failures count against the breaker: a rejected recipient
    says nothing about provider health.
    """

    message_class: MessageClass
    provider: str = ""

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0):
        self._initialized = False
        self._config: dict[str, Any] = {}
        self._breaker = CircuitBreaker(failure_threshold, recovery_timeout)
        self._metrics = DeliveryMetrics(self.message_class)

    @property
    def channel(self) -> str:
        return self.message_class.value

    # ── Abstract hooks ────────────────────────────────────────

    @abc.abstractmethod
    async def initialize(self, config: dict[str, Any]) -> None:
        ...

    @abc.abstractmethod
    async def _do_deliver(self, message: Message) -> str:
        """Hand the message to the provider; return its reference."""
        ...

    # ── Public deliver ────────────────────────────────────────

    async def deliver(self, message: Message) -> str:
        if self._breaker.is_open:
            self._metrics.record_failure("circuit_open")
            raise CircuitOpenError(self.channel)

        start = time.monotonic()
        try:
            provider_ref = await self._do_deliver(message)
        except DeliveryError as e:
            if e.retryable:
                self._breaker.record_failure()
            self._metrics.record_failure(str(e))
            raise
        except Exception as e:
            self._breaker.record_failure()
            self._metrics.record_failure(str(e))
            raise

        self._breaker.record_success()
        self._metrics.record_send((time.monotonic() - start) * 1000)
        return provider_ref

    # ── Health ────────────────────────────────────────────────

    async def health_check(self) -> dict[str, Any]:
        return {
            "channel": self.channel,
            "provider": self.provider,
            "initialized": self._initialized,
            "circuit_breaker": self._breaker.stats,
            "metrics": self._metrics.to_dict(),
        }

    async def shutdown(self) -> None:
        pass


# ══════════════════════════════════════════════════════════════
#  DELIVERY REGISTRY
# ══════════════════════════════════════════════════════════════

class DeliveryRegistry:
    def __init__(self):
        self._deliverers: dict[MessageClass, Deliverer] = {}

    def register(self, deliverer: Deliverer):
        self._deliverers[deliverer.message_class] = deliverer

    def get(self, message_class: MessageClass) -> Optional[Deliverer]:
        return self._deliverers.get(MessageClass(message_class))

    def get_available(self) -> list[MessageClass]:
        return list(self._deliverers.keys())

    async def health_check_all(self) -> dict[str, Any]:
        return {mc.value: await d.health_check() for mc, d in self._deliverers.items()}

    async def initialize_all(self, configs: dict[str, Any]):
        for mc, deliverer in self._deliverers.items():
            cfg = configs.get(mc.value, {})
            # ProviderConfig dataclass → dict so deliverers can call .get()
            if hasattr(cfg, "credentials"):
                cfg = cfg.credentials
            try:
                await deliverer.initialize(cfg or {})
            except Exception as e:
                logger.error("deliverer_init_failed", channel=mc.value, error=str(e))
                raise

    async def shutdown_all(self):
        for mc, deliverer in self._deliverers.items():
            try:
                await deliverer.shutdown()
            except Exception as e:
                logger.error("deliverer_shutdown_failed", channel=mc.value, error=str(e))
