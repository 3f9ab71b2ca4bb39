"""
Shared error handling for the Policy Decision Point.
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


class PolicyServiceException(Exception):
    """Base exception for policy service components."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

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


class ValidationError(PolicyServiceException):
    """Validation-related errors."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class ConfigurationError(PolicyServiceException):
    """Invalid service configuration."""

    def __init__(self, message: str = "Invalid configuration", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONFIGURATION_ERROR", message, details)


class CatalogError(PolicyServiceException):
    """A role/permission catalog document failed validation."""

    def __init__(self, message: str = "Invalid catalog", details: Optional[Dict[str, Any]] = None):
        super().__init__("CATALOG_ERROR", message, details)


class CatalogUnavailableError(PolicyServiceException):
    """No catalog snapshot could be loaded."""

    def __init__(self, message: str = "Catalog unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("CATALOG_UNAVAILABLE", message, details)


class IdentityError(PolicyServiceException):
    """Identity source could not be resolved into a subject.

    ``reason`` is the decision reason code the failure maps to.
    """

    def __init__(self, reason: str, message: str = "Identity resolution failed",
                 details: Optional[Dict[str, Any]] = None):
        self.reason = reason
        super().__init__("IDENTITY_ERROR", message, details)


class ExternalServiceError(PolicyServiceException):
    """External service errors."""

    def __init__(self, service: str, message: str = "External service error", details: Optional[Dict[str, Any]] = None):
        super().__init__("EXTERNAL_SERVICE_ERROR", f"{service}: {message}", details)
