"""
SqlMessageStore — Portable SQL message store for PostgreSQL, MySQL, SQLite.

Terminal transitions are single conditional UPDATEs guarded by
status = 'queued', so concurrent or duplicate workers cannot overwrite
the first terminal outcome and no external locking is needed.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import DBAPIError

from core.errors import MessageNotFound, StoreUnavailable
from database.models import MessageRow
from database.session import Database
from database.store_base import BaseMessageStore
from models.schemas import Message, MessageClass, MessageStatus

logger = structlog.get_logger()

_QUEUED = MessageStatus.QUEUED.value


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SqlMessageStore(BaseMessageStore):
    """
    Persistent message store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    def __init__(self, database: Database):
        self._db = database

    async def connect(self) -> None:
        try:
            await self._db.ping()
        except (DBAPIError, OSError) as e:
            raise StoreUnavailable(f"Message store unreachable: {e}") from e

    # ── Writes ─────────────────────────────────────────────

    async def create(self, message: Message) -> str:
        try:
            async with self._db.session() as db:
                db.add(self._message_to_row(message))
        except (DBAPIError, OSError) as e:
            raise StoreUnavailable(f"Cannot create message: {e}") from e
        return message.id

    async def mark_sent(self, message_id: str, provider_ref: str) -> bool:
        return await self._transition(
            message_id, MessageStatus.SENT, provider_ref=provider_ref,
        )

    async def mark_failed(self, message_id: str, reason: str) -> bool:
        return await self._transition(
            message_id, MessageStatus.FAILED, failure_reason=reason,
        )

    async def _transition(self, message_id: str, status: MessageStatus, **values) -> bool:
        stmt = (
            update(MessageRow)
            .where(MessageRow.id == message_id, MessageRow.status == _QUEUED)
            .values(status=status.value, updated_at=_utcnow(), **values)
        )
        try:
            async with self._db.session() as db:
                result = await db.execute(stmt)
                if result.rowcount == 1:
                    return True
                current = await db.scalar(
                    select(MessageRow.status).where(MessageRow.id == message_id)
                )
        except (DBAPIError, OSError) as e:
            raise StoreUnavailable(f"Cannot update message {message_id}: {e}") from e

        if current is None:
            raise MessageNotFound(message_id)
        logger.info("terminal_transition_ignored",
                    message_id=message_id,
                    status=current,
                    requested=status.value)
        return False

    async def increment_attempt(self, message_id: str) -> int:
        stmt = (
            update(MessageRow)
            .where(MessageRow.id == message_id, MessageRow.status == _QUEUED)
            .values(attempts=MessageRow.attempts + 1, updated_at=_utcnow())
        )
        try:
            async with self._db.session() as db:
                await db.execute(stmt)
                attempts = await db.scalar(
                    select(MessageRow.attempts).where(MessageRow.id == message_id)
                )
        except (DBAPIError, OSError) as e:
            raise StoreUnavailable(f"Cannot update message {message_id}: {e}") from e

        if attempts is None:
            raise MessageNotFound(message_id)
        return attempts

    # ── Reads ──────────────────────────────────────────────

    async def get(self, message_id: str) -> Message:
        try:
            async with self._db.session() as db:
                row = await db.get(MessageRow, message_id)
        except (DBAPIError, OSError) as e:
            raise StoreUnavailable(f"Cannot read message {message_id}: {e}") from e
        if row is None:
            raise MessageNotFound(message_id)
        return self._row_to_message(row)

    async def list_by_tenant(
        self, tenant_id: str, status: Optional[MessageStatus] = None, limit: int = 100,
    ) -> list[Message]:
        stmt = select(MessageRow).where(MessageRow.tenant_id == tenant_id)
        if status is not None:
            stmt = stmt.where(MessageRow.status == status.value)
        stmt = stmt.order_by(MessageRow.created_at.desc()).limit(limit)
        try:
            async with self._db.session() as db:
                rows = (await db.execute(stmt)).scalars().all()
        except (DBAPIError, OSError) as e:
            raise StoreUnavailable(f"Cannot list messages: {e}") from e
        return [self._row_to_message(r) for r in rows]

    async def count_by_status(self) -> dict[str, int]:
        stmt = select(MessageRow.status, func.count()).group_by(MessageRow.status)
        try:
            async with self._db.session() as db:
                rows = (await db.execute(stmt)).all()
        except (DBAPIError, OSError) as e:
            raise StoreUnavailable(f"Cannot count messages: {e}") from e
        counts = {status: total for status, total in rows}
        return {s.value: counts.get(s.value, 0) for s in MessageStatus}

    # ── Helpers ────────────────────────────────────────────

    @staticmethod
    def _message_to_row(message: Message) -> MessageRow:
        return MessageRow(
            id=message.id,
            message_class=message.message_class.value,
            tenant_id=message.tenant_id,
            recipient=message.recipient,
            sender=message.sender,
            subject=message.subject,
            body=message.body,
            status=message.status.value,
            attempts=message.attempts,
            provider_ref=message.provider_ref,
            failure_reason=message.failure_reason,
            created_at=message.created_at,
            updated_at=message.updated_at,
        )

    @staticmethod
    def _row_to_message(row: MessageRow) -> Message:
        return Message(
            id=row.id,
            message_class=MessageClass(row.message_class),
            tenant_id=row.tenant_id,
            recipient=row.recipient,
            sender=row.sender or "",
            subject=row.subject or "",
            body=row.body,
            status=MessageStatus(row.status),
            attempts=row.attempts or 0,
            provider_ref=row.provider_ref or "",
            failure_reason=row.failure_reason or "",
            created_at=row.created_at,
            updated_at=row.updated_at,
        )
