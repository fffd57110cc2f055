"""
Shared error handling for the metered access gateway.

Every error a request can end in derives from ``AccessLayerException`` and
carries the HTTP status it maps to. ``details`` is sent to the client, so it
must never contain token claims or store internals.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Standard error response format."""

    request_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class AccessLayerException(Exception):
    """Base exception for gateway errors."""

    status_code: int = 400

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self, request_id: Optional[str] = None) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            request_id=request_id,
            code=self.code,
            message=self.message,
            details=self.details,
        )

    def headers(self) -> Dict[str, str]:
        """Extra response headers for this error."""
        return {}


class ConfigurationError(AccessLayerException):
    """Required configuration is missing or invalid. Fatal at startup."""

    status_code = 500

    def __init__(self, message: str = "Invalid configuration", details: Optional[Dict[str, Any]] = None):
        super().__init__("MISCONFIGURED_ENVIRONMENT", message, details)


class AuthenticationError(AccessLayerException):
    """Missing or malformed Authorization header."""

    status_code = 401

    def __init__(self, message: str = "Authentication required", details: Optional[Dict[str, Any]] = None):
        super().__init__("UNAUTHENTICATED", message, details)


class InvalidTokenError(AccessLayerException):
    """Bearer token failed structural or signature checks."""

    status_code = 401
    log_code = "INVALID_TOKEN"

    def __init__(self, reason: str = "invalid token"):
        # The reason is for logs only; clients get a generic message.
        self.reason = reason
        super().__init__("INVALID_TOKEN", "Invalid or expired token")


class TokenExpiredError(InvalidTokenError):
    """Bearer token is past its expiry."""

    log_code = "TOKEN_EXPIRED"

    def __init__(self, reason: str = "token expired"):
        super().__init__(reason)


class RateLimitError(AccessLayerException):
    """Short-window request ceiling reached."""

    status_code = 429

    def __init__(self, retry_after_seconds: int, limit: int, window_seconds: int):
        self.retry_after_seconds = retry_after_seconds
        super().__init__(
            "RATE_LIMITED",
            "Rate limit exceeded",
            {
                "retry_after_seconds": retry_after_seconds,
                "limit": limit,
                "window_seconds": window_seconds,
            },
        )

    def headers(self) -> Dict[str, str]:
        return {"Retry-After": str(self.retry_after_seconds)}


class QuotaExceededError(AccessLayerException):
    """Monthly usage quota for the caller's tier is used up."""

    status_code = 403

    def __init__(self, usage_count: int, limit: int, tier: str, period_end: str):
        super().__init__(
            "QUOTA_EXCEEDED",
            "Monthly quota exceeded",
            {
                "usageCount": usage_count,
                "limit": limit,
                "tier": tier,
                "periodEnd": period_end,
            },
        )


class StoreUnavailableError(AccessLayerException):
    """Counter store operation failed or timed out."""

    status_code = 503

    def __init__(self, operation: str = "unknown"):
        # Operation name stays server-side.
        self.operation = operation
        super().__init__("STORE_UNAVAILABLE", "Service temporarily unavailable")


class WebhookSignatureError(AccessLayerException):
    """Billing webhook could not be authenticated."""

    status_code = 400

    def __init__(self, reason: str = "invalid signature"):
        self.reason = reason
        super().__init__("INVALID_WEBHOOK", "Invalid webhook")


class TierUpdateError(AccessLayerException):
    """A verified billing event could not be recorded; the sender should retry."""

    status_code = 503

    def __init__(self, target: str):
        self.target = target
        super().__init__("TIER_UPDATE_FAILED", "Tier update could not be recorded")


class ExternalServiceError(AccessLayerException):
    """External service errors."""

    status_code = 502

    def __init__(self, service: str, message: str = "External service error", details: Optional[Dict[str, Any]] = None):
        super().__init__("EXTERNAL_SERVICE_ERROR", f"{service}: {message}", details)
