"""
Shared error handling for the TechTrend cache layer.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel, Field

from shared.logging import request_id_var


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class TechTrendException(Exception):
    """Base exception for TechTrend services."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            trace_id=request_id_var.get(),
            code=self.code,
            message=self.message,
            details=self.details
        )


class ValidationError(TechTrendException):
    """Validation-related errors."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class CacheBackendError(TechTrendException):
    """The cache store could not be reached or rejected a command."""

    def __init__(self, message: str = "Cache backend unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("CACHE_BACKEND_ERROR", message, details)


class SerializationError(TechTrendException):
    """A cached payload could not be encoded or decoded."""

    def __init__(self, message: str = "Cache payload could not be decoded", details: Optional[Dict[str, Any]] = None):
        super().__init__("SERIALIZATION_ERROR", message, details)


class BatchLoadError(TechTrendException):
    """A batched backend fetch failed or returned a malformed result."""

    def __init__(self, message: str = "Batch load failed", details: Optional[Dict[str, Any]] = None,
                 code: str = "BATCH_LOAD_ERROR"):
        super().__init__(code, message, details)


class BatchTimeoutError(BatchLoadError):
    """A batched backend fetch exceeded its timeout."""

    def __init__(self, message: str = "Batch load timed out", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, code="BATCH_TIMEOUT")
