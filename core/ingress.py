"""
Ingress boundary — admission of new messages and status queries.

enqueue() order:
  1. parse class + validate payload   (nothing consumed on failure)
  2. quota try_admit                  (False → QuotaExceeded)
  3. store.create                     (failure → refund, propagate)
  4. queue.enqueue                    (failure → refund, mark failed if the
                                       store allows, propagate)

Quota is spent at admission. A message that later fails delivery keeps
its unit.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional, Union

from core.errors import (
    MessageValidationError, QueueUnavailable, QuotaExceeded, StoreUnavailable,
)
from core.quota import QuotaGate
from database.store_base import BaseMessageStore
from job_queue.message_queue import Job, MessageQueue
from models.schemas import (
    MessageClass, MessageStatus, MessageStatusView, TenantQuota, Message,
    build_message, parse_message_class, validate_payload,
)

logger = structlog.get_logger()


class MessageService:

    def __init__(self, store: BaseMessageStore, queue: MessageQueue, quota: QuotaGate):
        self.store = store
        self.queue = queue
        self.quota = quota

    async def enqueue(
        self,
        tenant_id: str,
        message_class: Union[str, MessageClass],
        payload: dict[str, Any],
    ) -> str:
        """Accept a message for asynchronous delivery; returns its id."""
        if not tenant_id or not str(tenant_id).strip():
            raise MessageValidationError(["tenant_id: must not be empty"])
        message_class = parse_message_class(message_class)
        validated = validate_payload(message_class, payload)

        if not await self.quota.try_admit(tenant_id):
            raise QuotaExceeded(tenant_id, self.quota.policy.limit_for(tenant_id))

        message = build_message(tenant_id, message_class, validated)
        try:
            await self.store.create(message)
        except StoreUnavailable:
            logger.error("message_create_failed", tenant_id=tenant_id)
            await self.quota.refund(tenant_id)
            raise

        try:
            job = await self.queue.enqueue(Job(message_id=message.id, message_class=message_class))
        except QueueUnavailable as e:
            logger.error("message_enqueue_failed", message_id=message.id, error=str(e))
            try:
                await self.quota.refund(tenant_id)
            finally:
                await self._abandon(message.id)
            raise

        logger.info("message_accepted",
                    message_id=message.id,
                    tenant_id=tenant_id,
                    message_class=message_class.value,
                    job_id=job.job_id)
        return message.id

    async def _abandon(self, message_id: str) -> None:
        """Mark a never-queued message failed; a store outage here is logged, not raised."""
        try:
            await self.store.mark_failed(message_id, "enqueue failed")
        except StoreUnavailable as e:
            logger.error("abandoned_message_not_marked", message_id=message_id, error=str(e))

    async def get_status(self, message_id: str) -> MessageStatusView:
        message = await self.store.get(message_id)
        return message.status_view()

    async def list_messages(
        self, tenant_id: str, status: Optional[MessageStatus] = None, limit: int = 100,
    ) -> list[Message]:
        if status is not None:
            status = MessageStatus(status)
        return await self.store.list_by_tenant(tenant_id, status=status, limit=limit)

    async def tenant_usage(self, tenant_id: str) -> TenantQuota:
        return await self.quota.usage(tenant_id)
