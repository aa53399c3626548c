"""
InMemoryMessageStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database, no Redis)
  - Full interface compatibility with SqlMessageStore
  - Safe under asyncio: every mutation completes without yielding
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import structlog
from collections import Counter
from datetime import datetime, timezone
from typing import Optional

from core.errors import MessageNotFound
from database.store_base import BaseMessageStore
from models.schemas import Message, MessageStatus

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryMessageStore(BaseMessageStore):
    """
    Full-featured in-memory store with the same interface as SqlMessageStore.
    get() hands out copies; callers never hold a reference into the store.
    """

    def __init__(self):
        self._messages: dict[str, Message] = {}       # id → message
        logger.info("inmemory_store_initialized")

    def _require(self, message_id: str) -> Message:
        message = self._messages.get(message_id)
        if message is None:
            raise MessageNotFound(message_id)
        return message

    def _changed(self, message: Message) -> None:
        """Hook called after every mutation; raising rolls the mutation back."""

    def _commit(self, message: Message) -> None:
        previous = self._messages.get(message.id)
        self._messages[message.id] = message
        try:
            self._changed(message)
        except Exception:
            if previous is None:
                del self._messages[message.id]
            else:
                self._messages[message.id] = previous
            raise

    # ── Writes ────────────────────────────────────────────

    async def create(self, message: Message) -> str:
        self._commit(message.model_copy(deep=True))
        return message.id

    async def mark_sent(self, message_id: str, provider_ref: str) -> bool:
        message = self._require(message_id)
        if message.is_terminal:
            logger.info("terminal_transition_ignored",
                        message_id=message_id,
                        status=message.status.value,
                        requested=MessageStatus.SENT.value)
            return False
        self._commit(message.model_copy(update={
            "status": MessageStatus.SENT,
            "provider_ref": provider_ref,
            "updated_at": _utcnow(),
        }))
        return True

    async def mark_failed(self, message_id: str, reason: str) -> bool:
        message = self._require(message_id)
        if message.is_terminal:
            logger.info("terminal_transition_ignored",
                        message_id=message_id,
                        status=message.status.value,
                        requested=MessageStatus.FAILED.value)
            return False
        self._commit(message.model_copy(update={
            "status": MessageStatus.FAILED,
            "failure_reason": reason,
            "updated_at": _utcnow(),
        }))
        return True

    async def increment_attempt(self, message_id: str) -> int:
        message = self._require(message_id)
        if message.is_terminal:
            return message.attempts
        updated = message.model_copy(update={
            "attempts": message.attempts + 1,
            "updated_at": _utcnow(),
        })
        self._commit(updated)
        return updated.attempts

    # ── Reads ─────────────────────────────────────────────

    async def get(self, message_id: str) -> Message:
        return self._require(message_id).model_copy(deep=True)

    async def list_by_tenant(
        self, tenant_id: str, status: Optional[MessageStatus] = None, limit: int = 100,
    ) -> list[Message]:
        matches = [
            m for m in self._messages.values()
            if m.tenant_id == tenant_id and (status is None or m.status == status)
        ]
        matches.sort(key=lambda m: m.created_at, reverse=True)
        return [m.model_copy(deep=True) for m in matches[:limit]]

    async def count_by_status(self) -> dict[str, int]:
        counts = Counter(m.status.value for m in self._messages.values())
        return {status.value: counts.get(status.value, 0) for status in MessageStatus}
