from __future__ import annotations

from typing import Any


class ReconciliationError(Exception):
    """Base error; carries the HTTP status and a stable code for API responses."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, *, code: str | None = None, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or {}


class ValidationError(ReconciliationError):
    status_code = 400
    code = "VALIDATION_ERROR"


class UnauthorizedError(ReconciliationError):
    status_code = 401
    code = "UNAUTHORIZED"


class ForbiddenError(ReconciliationError):
    status_code = 403
    code = "FORBIDDEN"


class NotFoundError(ReconciliationError):
    status_code = 404
    code = "NOT_FOUND"


class StoreError(ReconciliationError):
    """Data store unavailable or a write failed. Callers retry."""

    status_code = 500
    code = "STORE_ERROR"


class GatewayError(ReconciliationError):
    """Payment gateway call failed. Never means "rejected"."""

    status_code = 502
    code = "GATEWAY_ERROR"

    def __init__(
        self,
        message: str,
        *,
        transient: bool = True,
        http_status: int | None = None,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, code=code, details=details)
        self.transient = transient
        self.http_status = http_status
