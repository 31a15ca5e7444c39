"""
Line Metrics Engine - Custom Exception Classes

This module defines custom exception classes for the Line Metrics Engine.
Inside the metrics engine NotFoundError and UnresolvedError are non-fatal:
the affected quantity degrades to zero and the cause is logged. At the API
boundary every exception carries a proper HTTP status code and detailed
error information.
"""

from typing import Any, Dict, Optional
from fastapi import status


class LineMetricsException(Exception):
    """Base exception class for the Line Metrics Engine."""

    def __init__(
        self,
        message: str,
        error_code: str = "LINE_METRICS_ERROR",
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(LineMetricsException):
    """Exception raised for validation failures."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            error_code="VALIDATION_ERROR",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=details
        )


class NotFoundError(LineMetricsException):
    """Exception raised when a job, program, tag, line or recipe is not found."""

    def __init__(self, resource: str = "Resource", resource_id: Optional[Any] = None):
        message = f"{resource} not found"
        if resource_id is not None:
            message += f" with ID: {resource_id}"

        super().__init__(
            message=message,
            error_code="NOT_FOUND",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource": resource, "resource_id": resource_id}
        )


class UnresolvedError(LineMetricsException):
    """Exception raised when every tier of a fallback chain came up empty."""

    def __init__(self, quantity: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=f"Could not resolve {quantity}",
            error_code="UNRESOLVED",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details={"quantity": quantity, **(details or {})}
        )


class DatabaseError(LineMetricsException):
    """Exception raised for database operation failures."""

    def __init__(self, message: str = "Database operation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            error_code="DATABASE_ERROR",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details=details
        )


class MetricsCalculationError(LineMetricsException):
    """Exception raised when a metrics calculation cannot be completed."""

    def __init__(self, job_id: Any, message: str = "Metrics calculation error", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=f"Job {job_id}: {message}",
            error_code="METRICS_CALCULATION_ERROR",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details={"job_id": job_id, **(details or {})}
        )


# Utility functions for exception handling
def handle_database_exception(e: Exception) -> LineMetricsException:
    """Convert database exceptions to LineMetricsException."""
    if isinstance(e, LineMetricsException):
        return e
    return DatabaseError("Database operation failed", {"original_error": str(e)})


def is_degradable(e: Exception) -> bool:
    """Whether a failure degrades a metric to zero instead of aborting the call."""
    return isinstance(e, (NotFoundError, UnresolvedError))
