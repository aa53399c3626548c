"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - String primary keys (uuid hex) for messages — no database-specific sequences.
  - Queue entries use an autoincrement sequence: (message_class, sequence)
    is the logical key of a job.
  - visible_at is stored as epoch seconds (Double, 53-bit) so lease compare-and-set
    works on exact values across dialects.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    String, Integer, Double, DateTime, Text, Index, BigInteger,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Messages
# ──────────────────────────────────────────────────────────────

class MessageRow(Base):
    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    message_class: Mapped[str] = mapped_column(String(16), nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)

    recipient: Mapped[str] = mapped_column(String(320), nullable=False)
    sender: Mapped[str] = mapped_column(String(320), default="")
    subject: Mapped[str] = mapped_column(String(256), default="")
    body: Mapped[str] = mapped_column(Text, nullable=False)

    status: Mapped[str] = mapped_column(String(16), default="queued", nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    provider_ref: Mapped[str] = mapped_column(String(256), default="")
    failure_reason: Mapped[str] = mapped_column(Text, default="")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_messages_tenant_created", "tenant_id", "created_at"),
        Index("ix_messages_status", "status"),
    )


# ──────────────────────────────────────────────────────────────
#  Queue entries (SQL queue backend)
# ──────────────────────────────────────────────────────────────

class QueueEntryRow(Base):
    __tablename__ = "queue_entries"

    sequence: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True, autoincrement=True,
    )
    message_class: Mapped[str] = mapped_column(String(16), nullable=False)
    message_id: Mapped[str] = mapped_column(String(64), nullable=False)
    attempt_number: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    enqueued_at: Mapped[str] = mapped_column(String(40), default="")

    visible_at: Mapped[float] = mapped_column(Double, nullable=False)
    receipt: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    delivery_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    __table_args__ = (
        Index("ix_queue_entries_class_visible", "message_class", "visible_at"),
    )


# ──────────────────────────────────────────────────────────────
#  Tenant quota counters
# ──────────────────────────────────────────────────────────────

class TenantQuotaRow(Base):
    __tablename__ = "tenant_quotas"

    tenant_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    window_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), primary_key=True)
    count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    limit: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
