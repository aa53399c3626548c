"""
Core data models for the dispatch core.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import re
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from core.errors import MessageValidationError


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class MessageClass(str, Enum):
    EMAIL = "email"
    SMS = "sms"


class MessageStatus(str, Enum):
    QUEUED = "queued"
    SENT = "sent"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({MessageStatus.SENT, MessageStatus.FAILED})


# ──────────────────────────────────────────────────────────────
#  Message — one persisted email or SMS request
# ──────────────────────────────────────────────────────────────

class Message(BaseModel):
    """
    A single outbound message and its delivery lifecycle.

    Payload fields are fixed at creation. Only the store mutates
    status, attempts, provider_ref and failure_reason.
    """
    id: str = Field(default_factory=_new_id)
    message_class: MessageClass
    tenant_id: str
    recipient: str
    sender: str = ""                          # SMS only
    subject: str = ""
    body: str
    status: MessageStatus = MessageStatus.QUEUED
    attempts: int = 0
    provider_ref: str = ""
    failure_reason: str = ""
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def status_view(self) -> MessageStatusView:
        return MessageStatusView(
            id=self.id,
            status=self.status,
            attempts=self.attempts,
            provider_ref=self.provider_ref or None,
            failure_reason=self.failure_reason or None,
        )


class MessageStatusView(BaseModel):
    """What the status query exposes to dashboards and API callers."""
    id: str
    status: MessageStatus
    attempts: int
    provider_ref: Optional[str] = None
    failure_reason: Optional[str] = None


# ──────────────────────────────────────────────────────────────
#  Payloads — validated at admission, before anything is stored
# ──────────────────────────────────────────────────────────────

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_E164 = r"^\+[1-9]\d{1,14}$"


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True, populate_by_name=True)


class EmailPayload(_Payload):
    recipient: str = Field(validation_alias=AliasChoices("recipient", "to"))
    subject: str = Field(min_length=1, max_length=100)
    body: str = Field(
        min_length=1, max_length=50_000,
        validation_alias=AliasChoices("body", "content"),
    )

    @field_validator("recipient")
    @classmethod
    def _valid_address(cls, value: str) -> str:
        if not _EMAIL_RE.match(value):
            raise ValueError("Recipient must be a valid email address")
        return value


class SmsPayload(_Payload):
    recipient: str = Field(pattern=_E164, validation_alias=AliasChoices("recipient", "to"))
    sender: str = Field(pattern=_E164, validation_alias=AliasChoices("sender", "from"))
    subject: str = Field(min_length=1, max_length=50)
    body: str = Field(
        min_length=1, max_length=1600,
        validation_alias=AliasChoices("body", "content"),
    )


_PAYLOAD_TYPES: dict[MessageClass, type[_Payload]] = {
    MessageClass.EMAIL: EmailPayload,
    MessageClass.SMS: SmsPayload,
}


def parse_message_class(value: Union[str, MessageClass]) -> MessageClass:
    try:
        return MessageClass(value)
    except ValueError:
        raise MessageValidationError(
            [f"Unknown message class: {value!r}"]
        ) from None


def validate_payload(message_class: MessageClass, data: dict[str, Any]) -> _Payload:
    """Validate a raw payload, reporting every field error at once."""
    payload_type = _PAYLOAD_TYPES[message_class]
    try:
        return payload_type.model_validate(data or {})
    except PydanticValidationError as exc:
        errors = []
        for err in exc.errors():
            field_name = ".".join(str(p) for p in err.get("loc", ())) or "payload"
            errors.append(f"{field_name}: {err.get('msg', 'invalid value')}")
        raise MessageValidationError(errors) from None


def build_message(tenant_id: str, message_class: MessageClass, payload: _Payload) -> Message:
    data = payload.model_dump()
    return Message(
        message_class=message_class,
        tenant_id=tenant_id,
        recipient=data["recipient"],
        sender=data.get("sender", ""),
        subject=data.get("subject", ""),
        body=data["body"],
    )


# ──────────────────────────────────────────────────────────────
#  Tenant quota snapshot
# ──────────────────────────────────────────────────────────────

class TenantQuota(BaseModel):
    tenant_id: str
    window_start: datetime
    count: int = 0
    limit: int

    @property
    def remaining(self) -> int:
        return max(self.limit - self.count, 0)
