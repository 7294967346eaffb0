"""
Shared error handling for the Edge Cache Layer.
"""

from typing import Dict, Any, Optional

from opentelemetry import trace
from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class EdgeCacheException(Exception):
    """Base exception for Edge Cache Layer services."""

    status_code = 500

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def response_headers(self) -> Dict[str, str]:
        """Extra HTTP headers to send with the error response."""
        return {}

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        trace_id = None
        current_span = trace.get_current_span()
        if current_span and current_span.is_recording():
            span_context = current_span.get_span_context()
            if span_context.trace_id != 0:
                trace_id = f"{span_context.trace_id:032x}"

        return ErrorResponse(
            trace_id=trace_id,
            code=self.code,
            message=self.message,
            details=self.details
        )


class ValidationError(EdgeCacheException):
    """Validation-related errors."""

    status_code = 400

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class InvalidPatternError(ValidationError):
    """Invalidation pattern is empty or uses an unsupported wildcard form."""

    def __init__(self, pattern: str, reason: str):
        super().__init__(
            f"Invalid cache pattern {pattern!r}: {reason}",
            {"pattern": pattern, "reason": reason},
        )
        self.code = "INVALID_PATTERN"


class NotFoundError(EdgeCacheException):
    """Requested entry does not exist."""

    status_code = 404

    def __init__(self, message: str = "Not found", details: Optional[Dict[str, Any]] = None):
        super().__init__("NOT_FOUND", message, details)


class ExternalServiceError(EdgeCacheException):
    """External service errors."""

    status_code = 502

    def __init__(self, service: str, message: str = "External service error", details: Optional[Dict[str, Any]] = None):
        super().__init__("EXTERNAL_SERVICE_ERROR", f"{service}: {message}", details)


class DurableStoreError(ExternalServiceError):
    """A durable store operation failed (connection, timeout, protocol)."""

    def __init__(self, operation: str, key: Optional[str] = None, original_error: Optional[BaseException] = None):
        details: Dict[str, Any] = {"operation": operation}
        if key is not None:
            details["key"] = key
        if original_error is not None:
            details["original_error"] = str(original_error)
            details["original_error_type"] = type(original_error).__name__
        super().__init__("durable_store", f"{operation} failed", details)
        self.code = "DURABLE_STORE_ERROR"
        self.operation = operation


class FetchTimeoutError(EdgeCacheException):
    """A cache-miss fetcher did not finish within its timeout."""

    status_code = 504

    def __init__(self, key: str, timeout_seconds: float):
        super().__init__(
            "FETCH_TIMEOUT",
            f"Fetch for {key!r} timed out after {timeout_seconds}s",
            {"key": key, "timeout_seconds": timeout_seconds},
        )


class PayloadTooLargeError(ValidationError):
    """Request payload exceeds the configured size limit."""

    status_code = 413

    def __init__(self, size: int, limit: int):
        super().__init__(
            f"Data too large ({size} bytes, max {limit})",
            {"size": size, "limit": limit},
        )
        self.code = "PAYLOAD_TOO_LARGE"


class RateLimitError(EdgeCacheException):
    """Rate limiting errors."""

    status_code = 429

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        details: Optional[Dict[str, Any]] = None,
        retry_after_seconds: Optional[int] = None,
    ):
        super().__init__("RATE_LIMIT_ERROR", message, details)
        self.retry_after_seconds = retry_after_seconds

    def response_headers(self) -> Dict[str, str]:
        if self.retry_after_seconds is None:
            return {}
        return {"Retry-After": str(self.retry_after_seconds)}
