"""
Retry policy — decides whether a failed delivery goes back on the queue.

    attempts  delay (defaults)
    1         1s
    2         2s
    3         give up → failed

Errors carry a `retryable` flag (see channels.base.DeliveryError).
Anything without one is treated as transient.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import NamedTuple, Optional


class RetryDecision(NamedTuple):
    retry: bool
    delay: float = 0.0


def is_retryable(error: Optional[BaseException]) -> bool:
    if error is None:
        return True
    return bool(getattr(error, "retryable", True))


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 60.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")

    @classmethod
    def from_config(cls, config) -> RetryPolicy:
        return cls(
            max_attempts=config.max_attempts,
            base_delay=config.base_delay,
            multiplier=config.multiplier,
            max_delay=config.max_delay,
        )

    def delay_for(self, attempts: int) -> float:
        """Backoff before the attempt that follows `attempts` failures."""
        exponent = max(attempts - 1, 0)
        return min(self.base_delay * (self.multiplier ** exponent), self.max_delay)

    def should_retry(self, attempts: int, error: Optional[BaseException] = None) -> RetryDecision:
        if not is_retryable(error):
            return RetryDecision(False)
        if attempts >= self.max_attempts:
            return RetryDecision(False)
        return RetryDecision(True, self.delay_for(attempts))
