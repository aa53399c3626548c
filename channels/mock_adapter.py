"""
Mock Deliverer — logs instead of sending. Used in development and tests.

Failures can be scripted with fail_next(): each queued exception is
raised by one deliver() call, in order, before deliveries succeed again.
"""
from __future__ import annotations

import uuid
import structlog
from collections import deque
from typing import Any

from channels.base import Deliverer
from models.schemas import Message, MessageClass

logger = structlog.get_logger()


class MockDeliverer(Deliverer):
    provider = "mock"

    def __init__(self, message_class: MessageClass = MessageClass.EMAIL, **breaker_kwargs):
        self.message_class = MessageClass(message_class)
        super().__init__(**breaker_kwargs)
        self.delivered: list[Message] = []
        self.calls = 0
        self._failures: deque[Exception] = deque()

    async def initialize(self, config: dict[str, Any]) -> None:
        self._config = config
        self._initialized = True

    def fail_next(self, *errors: Exception) -> None:
        self._failures.extend(errors)

    async def _do_deliver(self, message: Message) -> str:
        self.calls += 1
        if self._failures:
            raise self._failures.popleft()
        ref = f"mock-{self.message_class.value}-{uuid.uuid4().hex[:12]}"
        self.delivered.append(message)
        logger.info("mock_delivered",
                    message_id=message.id,
                    to=message.recipient,
                    provider_ref=ref)
        return ref
