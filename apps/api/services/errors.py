"""Typed application errors with stable codes.

Every error carries the HTTP status it maps to and a user-displayable message.
``main`` registers a single handler that renders them as
``{"success": false, "error": message, "code": code}``.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class AppError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: Optional[str] = None, *, extra: Optional[Dict[str, Any]] = None):
        self.message = message or "Something went wrong. Please try again."
        self.extra = extra or {}
        super().__init__(self.message)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"success": False, "error": self.message, "code": self.code}
        payload.update(self.extra)
        return payload


class AuthenticationError(AppError):
    status_code = 401
    code = "authentication_required"


class ForbiddenError(AppError):
    status_code = 403
    code = "forbidden"


class ValidationError(AppError):
    status_code = 400
    code = "invalid_request"


class NotFoundError(AppError):
    status_code = 404
    code = "not_found"


class InsufficientCreditsError(AppError):
    status_code = 402
    code = "insufficient_credits"

    def __init__(self, required: int, available: int):
        super().__init__(
            "Insufficient credits. Please upgrade your plan or wait for your monthly credits.",
            extra={"required_credits": int(required), "current_credits": int(available)},
        )
        self.required = int(required)
        self.available = int(available)


class DuplicateTransactionError(AppError):
    status_code = 409
    code = "duplicate_transaction"


class ProviderTransientError(AppError):
    """Network failure, timeout, throttling or 5xx from the generation provider. Retried."""

    status_code = 502
    code = "provider_error"


class ProviderPermanentError(AppError):
    """The provider answered but no image can be produced for this request. Not retried."""

    status_code = 502
    code = "provider_no_output"


class PersistenceError(AppError):
    status_code = 500
    code = "persistence_error"


class WebhookVerificationError(AppError):
    status_code = 400
    code = "invalid_signature"


class BillingNotConfiguredError(AppError):
    status_code = 503
    code = "billing_not_configured"


class RateLimitedError(AppError):
    status_code = 429
    code = "rate_limited"
