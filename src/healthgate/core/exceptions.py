"""
Custom exceptions for the request gate.

Provides structured error handling with appropriate HTTP status codes
and error details for API responses. Every rejection renders to the same
JSON shape: {success: false, error, message, code[, retryAfter]}.
"""

from typing import Any, Dict, Optional

from fastapi.responses import JSONResponse

from ..models.responses import RejectionResponse


class HealthGateException(Exception):
    """Base exception for the gate."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        error_code: str = "INTERNAL_ERROR",
        error: str = "Internal error",
        details: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code
        self.error = error
        self.details = details or {}
        self.headers = headers or {}

    def to_body(self) -> Dict[str, Any]:
        """Structured JSON body for this error."""
        return RejectionResponse(
            error=self.error,
            message=str(self),
            code=self.error_code,
            retry_after=self.details.get("retry_after"),
        ).to_body()

    def to_response(self) -> JSONResponse:
        return JSONResponse(
            status_code=self.status_code,
            content=self.to_body(),
            headers=self.headers,
        )


class GateRejection(HealthGateException):
    """A stage decided the request must not reach downstream handlers."""

    stage: str = "gate"


class ValidationRejection(GateRejection):
    """Raised when a header or body is malformed or oversized."""

    stage = "validation"

    def __init__(
        self,
        message: str,
        error_code: str = "INVALID_REQUEST",
        error: str = "Invalid request",
        status_code: int = 400,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            message=message,
            status_code=status_code,
            error_code=error_code,
            error=error,
            details=details,
        )


class ThreatDetected(GateRejection):
    """Raised when a heuristic pattern matches a request surface."""

    stage = "detection"

    def __init__(
        self,
        category: str,
        error_code: str,
        message: str = "Suspicious content detected in the request",
        status_code: int = 400,
    ) -> None:
        super().__init__(
            message=message,
            status_code=status_code,
            error_code=error_code,
            error="Request not allowed",
            details={"category": category},
        )
        self.category = category


class RateLimitExceeded(GateRejection):
    """Raised when a scope exhausts its window."""

    stage = "rate_limit"

    def __init__(
        self,
        message: str = "Too many requests, please retry later",
        retry_after: int = 1,
        tier: str = "normal",
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        super().__init__(
            message=message,
            status_code=429,
            error_code="RATE_LIMIT_EXCEEDED",
            error="Too many requests",
            details={"retry_after": retry_after, "tier": tier},
            headers=headers,
        )
        self.retry_after = retry_after
        self.tier = tier


class ComplianceViolation(GateRejection):
    """Raised for disallowed terminology systems, missing TLS or foreign origins."""

    stage = "compliance"

    def __init__(
        self,
        message: str,
        error_code: str,
        error: str,
        status_code: int = 400,
    ) -> None:
        super().__init__(
            message=message,
            status_code=status_code,
            error_code=error_code,
            error=error,
        )


class AuthLookupFailure(HealthGateException):
    """Raised by key stores when a lookup cannot complete. Never rendered."""

    def __init__(self, message: str = "API key lookup failed") -> None:
        super().__init__(
            message=message,
            status_code=500,
            error_code="AUTH_LOOKUP_FAILURE",
        )


class AuthenticationError(HealthGateException):
    """Raised by routes that require an authenticated API key."""

    def __init__(self, message: str = "A valid API key is required for this operation") -> None:
        super().__init__(
            message=message,
            status_code=401,
            error_code="AUTHENTICATION_REQUIRED",
            error="Unauthorized",
        )


class InternalError(HealthGateException):
    """Rendered when a downstream handler fails. Carries no internals."""

    def __init__(self, message: str = "An unexpected error occurred") -> None:
        super().__init__(message=message)
