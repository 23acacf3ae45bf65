"""
Caller-facing error taxonomy.

Every failure the orchestrator reports is a GatewayError with a kind and
enough structure for the caller to render a specific message.
"""

from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from ai_credit_gate.sdk.errors import ProviderError


class ErrorKind(Enum):
    """Kinds of failures surfaced to callers."""
    UNAUTHENTICATED = "unauthenticated"
    UNAUTHORIZED = "unauthorized"
    INVALID_INPUT = "invalid_input"
    INSUFFICIENT_CREDITS = "insufficient_credits"
    RATE_LIMITED = "rate_limited"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    PROVIDER_REJECTED = "provider_rejected"
    NOT_FOUND = "not_found"
    INTERNAL = "internal"


# HTTP-like status for each kind, for callers that speak HTTP
STATUS_CODES = {
    ErrorKind.UNAUTHENTICATED: 401,
    ErrorKind.UNAUTHORIZED: 403,
    ErrorKind.INVALID_INPUT: 400,
    ErrorKind.INSUFFICIENT_CREDITS: 402,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.PROVIDER_UNAVAILABLE: 503,
    ErrorKind.PROVIDER_REJECTED: 502,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.INTERNAL: 500,
}


class GatewayError(Exception):
    """Base class for errors reported to callers."""
    kind = ErrorKind.INTERNAL

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    @property
    def status_code(self) -> int:
        return STATUS_CODES[self.kind]

    def to_dict(self) -> Dict[str, Any]:
        """Structured form for rendering."""
        payload: Dict[str, Any] = {"error": self.message, "kind": self.kind.value}
        payload.update(self.details)
        return payload


class UnauthenticatedError(GatewayError):
    kind = ErrorKind.UNAUTHENTICATED

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message)


class UnauthorizedError(GatewayError):
    kind = ErrorKind.UNAUTHORIZED

    def __init__(self, message: str = "Admin access required"):
        super().__init__(message)


class InvalidInputError(GatewayError):
    kind = ErrorKind.INVALID_INPUT


class InsufficientCreditsError(GatewayError):
    """Balance check failed. Carries the amounts for display."""
    kind = ErrorKind.INSUFFICIENT_CREDITS

    def __init__(self, required: Decimal, available: Decimal):
        super().__init__(
            "Insufficient credits",
            details={"required": str(required), "available": str(available)},
        )
        self.required = required
        self.available = available


class RateLimitedError(GatewayError):
    kind = ErrorKind.RATE_LIMITED

    def __init__(self, limit: int, retry_after: float):
        super().__init__(
            "Too many requests",
            details={"limit": limit, "retry_after": round(retry_after, 3)},
        )
        self.limit = limit
        self.retry_after = retry_after


class ProviderUnavailableError(GatewayError):
    """Provider kept failing with retryable errors until retries ran out."""
    kind = ErrorKind.PROVIDER_UNAVAILABLE


class ProviderRejectedError(GatewayError):
    """Provider refused the request; retrying would not help."""
    kind = ErrorKind.PROVIDER_REJECTED


class NotFoundError(GatewayError):
    kind = ErrorKind.NOT_FOUND


class InternalError(GatewayError):
    kind = ErrorKind.INTERNAL


def provider_error_to_gateway(error: ProviderError) -> GatewayError:
    """Translate a provider failure into the caller-facing taxonomy."""
    details = {"provider_status": error.status_code}
    if error.retryable:
        return ProviderUnavailableError(
            f"Generation provider unavailable: {error.message}", details=details
        )
    return ProviderRejectedError(
        f"Generation provider rejected the request: {error.message}", details=details
    )
