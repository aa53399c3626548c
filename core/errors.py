"""
Error taxonomy for admission and infrastructure failures.

Admission errors are raised synchronously to the ingress caller.
Delivery errors live in channels.base and never leave the worker.
"""
from __future__ import annotations


class DispatchError(Exception):
    """Base exception for everything the dispatch core raises to callers."""

    code = "dispatch_error"
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)


class QuotaExceeded(DispatchError):
    code = "quota_exceeded"
    status_code = 429

    def __init__(self, tenant_id: str = "", limit: int | None = None):
        self.tenant_id = tenant_id
        self.limit = limit
        detail = f"Quota exceeded for tenant {tenant_id}"
        if limit is not None:
            detail += f" (limit {limit})"
        super().__init__(detail)


class MessageValidationError(DispatchError):
    code = "validation_error"
    status_code = 422

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "invalid payload")


class MessageNotFound(DispatchError):
    code = "not_found"
    status_code = 404

    def __init__(self, message_id: str):
        self.message_id = message_id
        super().__init__(f"Message not found: {message_id}")


class UnavailableError(DispatchError):
    """Infrastructure could not be reached. Callers fail closed."""

    code = "unavailable"
    status_code = 503


class StoreUnavailable(UnavailableError):
    code = "store_unavailable"


class QueueUnavailable(UnavailableError):
    code = "queue_unavailable"


class QuotaUnavailable(UnavailableError):
    code = "quota_unavailable"


class StartupError(DispatchError):
    """Storage stayed unreachable while the process was starting."""

    code = "startup_failed"
