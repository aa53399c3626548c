"""
Abstract Message Store — Interface for all storage backends.

Implementations:
  - SqlMessageStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryMessageStore (dict-based, single-process, no persistence)
  - FileMessageStore     (JSON file on disk, single-process, durable)

Status state machine:

    queued ──▶ sent     (terminal)
       │
       └────▶ failed   (terminal)

Terminal transitions are idempotent: the first terminal outcome wins and
later mark_sent / mark_failed calls are no-ops returning False.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from models.schemas import Message, MessageStatus


class BaseMessageStore(ABC):
    """Interface that all message store backends must implement."""

    async def connect(self) -> None:
        """Verify the backend is reachable. No-op by default."""

    async def close(self) -> None:
        """Release backend resources. No-op by default."""

    @abstractmethod
    async def create(self, message: Message) -> str:
        ...

    @abstractmethod
    async def get(self, message_id: str) -> Message:
        """Return the message or raise MessageNotFound."""
        ...

    @abstractmethod
    async def mark_sent(self, message_id: str, provider_ref: str) -> bool:
        ...

    @abstractmethod
    async def mark_failed(self, message_id: str, reason: str) -> bool:
        ...

    @abstractmethod
    async def increment_attempt(self, message_id: str) -> int:
        ...

    @abstractmethod
    async def list_by_tenant(
        self, tenant_id: str, status: Optional[MessageStatus] = None, limit: int = 100,
    ) -> list[Message]:
        ...

    @abstractmethod
    async def count_by_status(self) -> dict[str, int]:
        ...
