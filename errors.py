"""
Application errors.

Every error raised by the domain modules carries an HTTP status and a stable,
machine-readable ``reason`` so clients can branch on it without parsing the
human-readable message.
"""
from typing import Any, Dict, Optional


class AppError(Exception):
    status_code = 500
    reason = "server_error"

    def __init__(self, message: str, reason: Optional[str] = None, **extra: Any):
        super().__init__(message)
        self.message = message
        if reason:
            self.reason = reason
        self.extra = extra

    def to_dict(self) -> Dict[str, Any]:
        return {"success": False, "error": self.message, "reason": self.reason, **self.extra}


class ValidationError(AppError):
    status_code = 400
    reason = "validation"


class UnauthorizedError(AppError):
    status_code = 401
    reason = "unauthorized"


class ForbiddenError(AppError):
    status_code = 403
    reason = "forbidden"


class NotFoundError(AppError):
    status_code = 404
    reason = "not_found"


class ConflictError(AppError):
    status_code = 409
    reason = "conflict"


class AlreadyInCartError(ConflictError):
    status_code = 400
    reason = "already_in_cart"

    def __init__(self, message: str = "Product already in cart"):
        super().__init__(message, inCart=True)


class CouponError(ValidationError):
    """Coupon rejected; ``reason`` names the failed check."""

    reason = "invalid"

    def to_dict(self) -> Dict[str, Any]:
        return {"valid": False, "error": self.message, "reason": self.reason}


class WebhookSignatureError(AppError):
    status_code = 400
    reason = "invalid_signature"


class UpstreamError(AppError):
    status_code = 502
    reason = "upstream"
