"""Custom exceptions for PracticeGate.

This module provides the exception hierarchy shared by the billing,
entitlement and export subsystems with:
- Structured error information
- HTTP status code mapping
- User-friendly error messages
- Machine-readable error codes
"""

from __future__ import annotations

from enum import Enum
from http import HTTPStatus
from typing import Any


class ErrorCode(str, Enum):
    """Machine-readable error codes for API responses."""

    # General errors (1xxx)
    INTERNAL_ERROR = "PG1000"
    UNKNOWN_ERROR = "PG1001"
    CONFIGURATION_ERROR = "PG1002"

    # Authentication errors (2xxx)
    AUTHENTICATION_REQUIRED = "PG2000"

    # Authorization errors (3xxx)
    PERMISSION_DENIED = "PG3000"
    CROSS_USER_ACCESS_DENIED = "PG3001"

    # Validation errors (4xxx)
    VALIDATION_ERROR = "PG4000"
    INVALID_INPUT = "PG4001"
    MISSING_REQUIRED_FIELD = "PG4002"
    INVALID_TIER = "PG4003"

    # Resource errors (5xxx)
    RESOURCE_NOT_FOUND = "PG5000"
    TIER_NOT_FOUND = "PG5001"
    EXPORT_NOT_FOUND = "PG5002"
    CUSTOMER_NOT_FOUND = "PG5003"

    # State errors (6xxx)
    CONFLICT = "PG6000"
    EXPORT_UNAVAILABLE = "PG6001"

    # External provider errors (7xxx)
    PROVIDER_UNAVAILABLE = "PG7000"
    PROVIDER_TIMEOUT = "PG7001"

    # Entitlement errors (8xxx)
    QUOTA_EXCEEDED = "PG8000"
    EXPORT_LIMIT_EXCEEDED = "PG8001"


class PracticeGateException(Exception):
    """Base exception for all PracticeGate errors.

    Attributes:
        message: Human-readable error message.
        error_code: Machine-readable error code.
        http_status: HTTP status code for API responses.
        details: Additional context for debugging.
        user_message: User-friendly message (may differ from message).
    """

    message: str = "An unexpected error occurred"
    error_code: ErrorCode = ErrorCode.UNKNOWN_ERROR
    http_status: HTTPStatus = HTTPStatus.INTERNAL_SERVER_ERROR
    user_message: str | None = None

    def __init__(
        self,
        message: str | None = None,
        *,
        error_code: ErrorCode | None = None,
        http_status: HTTPStatus | None = None,
        details: dict[str, Any] | None = None,
        user_message: str | None = None,
    ) -> None:
        """Initialize exception.

        Args:
            message: Human-readable error message.
            error_code: Machine-readable error code.
            http_status: HTTP status code for API responses.
            details: Additional context for debugging.
            user_message: User-friendly message for end users.
        """
        self.message = message or self.__class__.message
        self.error_code = error_code or self.__class__.error_code
        self.http_status = http_status or self.__class__.http_status
        self.details = details or {}
        self.user_message = user_message or self.__class__.user_message or self.message
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.user_message,
                "details": self.details if self.details else None,
            }
        }

    def __str__(self) -> str:
        """String representation including error code."""
        return f"[{self.error_code.value}] {self.message}"

    def __repr__(self) -> str:
        """Detailed representation for debugging."""
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"error_code={self.error_code.value}, "
            f"http_status={self.http_status.value}, "
            f"details={self.details!r}"
            f")"
        )


# ============================================================================
# Authorization Exceptions
# ============================================================================


class UnauthorizedError(PracticeGateException):
    """The caller may not act on the requested resource."""

    message = "Access denied"
    error_code = ErrorCode.PERMISSION_DENIED
    http_status = HTTPStatus.FORBIDDEN


class CrossUserAccessError(UnauthorizedError):
    """A user tried to reach another user's data without elevation."""

    message = "Access to another user's data requires elevated permissions"
    error_code = ErrorCode.CROSS_USER_ACCESS_DENIED


# ============================================================================
# Validation Exceptions
# ============================================================================


class InvalidInputError(PracticeGateException):
    """Invalid input data."""

    message = "Invalid input data"
    error_code = ErrorCode.INVALID_INPUT
    http_status = HTTPStatus.BAD_REQUEST

    def __init__(
        self,
        message: str | None = None,
        *,
        field: str | None = None,
        value: Any = None,
        allowed: list[str] | None = None,
        **kwargs: Any,
    ) -> None:
        """Initialize validation error.

        Args:
            message: Error message.
            field: Name of the field that failed validation.
            value: The invalid value.
            allowed: Accepted values for the field, when the set is closed.
            **kwargs: Additional arguments passed to parent.
        """
        details = kwargs.pop("details", {}) or {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)
        if allowed:
            details["allowed"] = allowed

        super().__init__(message, details=details, **kwargs)


class MissingRequiredFieldError(InvalidInputError):
    """Required field is missing."""

    message = "Required field is missing"
    error_code = ErrorCode.MISSING_REQUIRED_FIELD


class InvalidTierError(InvalidInputError):
    """Unknown tier or provider price identifier."""

    message = "Unknown subscription tier"
    error_code = ErrorCode.INVALID_TIER


# ============================================================================
# Resource Exceptions
# ============================================================================


class NotFoundError(PracticeGateException):
    """Resource not found errors."""

    message = "Resource not found"
    error_code = ErrorCode.RESOURCE_NOT_FOUND
    http_status = HTTPStatus.NOT_FOUND

    def __init__(
        self,
        message: str | None = None,
        *,
        resource_type: str | None = None,
        resource_id: str | None = None,
        **kwargs: Any,
    ) -> None:
        """Initialize not found error.

        Args:
            message: Error message.
            resource_type: Type of resource not found.
            resource_id: ID of the resource.
            **kwargs: Additional arguments passed to parent.
        """
        details = kwargs.pop("details", {}) or {}
        if resource_type:
            details["resource_type"] = resource_type
        if resource_id:
            details["resource_id"] = resource_id

        if not message and resource_type:
            message = f"{resource_type} not found"

        super().__init__(message, details=details, **kwargs)


class TierNotFoundError(NotFoundError):
    """Tier id is not in the catalog."""

    message = "Tier not found"
    error_code = ErrorCode.TIER_NOT_FOUND


class ExportNotFoundError(NotFoundError):
    """Export job does not exist."""

    message = "Export not found"
    error_code = ErrorCode.EXPORT_NOT_FOUND


class CustomerNotFoundError(NotFoundError):
    """User has no billing provider customer yet."""

    message = "No billing customer exists for this user"
    error_code = ErrorCode.CUSTOMER_NOT_FOUND


# ============================================================================
# State Exceptions
# ============================================================================


class ConflictError(PracticeGateException):
    """A concurrent state transition lost a race."""

    message = "The resource was modified concurrently"
    error_code = ErrorCode.CONFLICT
    http_status = HTTPStatus.CONFLICT

    def __init__(
        self,
        message: str | None = None,
        *,
        current_state: str | None = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {}) or {}
        if current_state:
            details["current_state"] = current_state
        super().__init__(message, details=details, **kwargs)


class ExportUnavailableError(PracticeGateException):
    """The export job store could not be reached."""

    message = "Export service is temporarily unavailable"
    error_code = ErrorCode.EXPORT_UNAVAILABLE
    http_status = HTTPStatus.SERVICE_UNAVAILABLE
    user_message = "Your export could not be queued. Please try again."


# ============================================================================
# External Provider Exceptions
# ============================================================================


class ProviderUnavailableError(PracticeGateException):
    """Billing provider call failed after the allowed retries."""

    message = "Billing provider is unavailable"
    error_code = ErrorCode.PROVIDER_UNAVAILABLE
    http_status = HTTPStatus.SERVICE_UNAVAILABLE
    user_message = "Billing is temporarily unavailable. Please try again later."

    def __init__(
        self,
        message: str | None = None,
        *,
        operation: str | None = None,
        attempts: int | None = None,
        **kwargs: Any,
    ) -> None:
        """Initialize provider error.

        Args:
            message: Error message.
            operation: Gateway operation that failed.
            attempts: Number of attempts made.
            **kwargs: Additional arguments passed to parent.
        """
        details = kwargs.pop("details", {}) or {}
        if operation:
            details["operation"] = operation
        if attempts is not None:
            details["attempts"] = attempts

        super().__init__(message, details=details, **kwargs)


# ============================================================================
# Entitlement Exceptions
# ============================================================================


class QuotaExceededError(PracticeGateException):
    """Entitlement denial for a metered action."""

    message = "Quota exceeded"
    error_code = ErrorCode.QUOTA_EXCEEDED
    http_status = HTTPStatus.TOO_MANY_REQUESTS

    def __init__(
        self,
        message: str | None = None,
        *,
        action_kind: str | None = None,
        used: int | None = None,
        quota: int | None = None,
        reason: str | None = None,
        **kwargs: Any,
    ) -> None:
        """Initialize quota exceeded error.

        Args:
            message: Error message.
            action_kind: Metered action that was denied.
            used: Usage count in the current period.
            quota: Quota for the current period.
            reason: Short machine-readable reason for the denial.
            **kwargs: Additional arguments passed to parent.
        """
        details = kwargs.pop("details", {}) or {}
        if action_kind:
            details["action_kind"] = action_kind
        if used is not None:
            details["used"] = used
        if quota is not None:
            details["quota"] = quota
        if reason:
            details["reason"] = reason

        if not message and action_kind and used is not None and quota is not None:
            message = f"Quota exceeded for {action_kind}: {used}/{quota}"

        self.action_kind = action_kind
        self.used = used
        self.quota = quota
        self.reason = reason
        super().__init__(message, details=details, **kwargs)


class ExportLimitExceededError(QuotaExceededError):
    """Daily export request limit reached."""

    message = "Daily export limit exceeded"
    error_code = ErrorCode.EXPORT_LIMIT_EXCEEDED


# ============================================================================
# Exception to HTTP Status Mapping
# ============================================================================


def get_http_status_for_exception(exc: Exception) -> HTTPStatus:
    """Get the appropriate HTTP status code for an exception."""
    if isinstance(exc, PracticeGateException):
        return exc.http_status

    exception_status_map: dict[type, HTTPStatus] = {
        ValueError: HTTPStatus.BAD_REQUEST,
        PermissionError: HTTPStatus.FORBIDDEN,
        TimeoutError: HTTPStatus.GATEWAY_TIMEOUT,
    }

    for exc_type, status in exception_status_map.items():
        if isinstance(exc, exc_type):
            return status

    return HTTPStatus.INTERNAL_SERVER_ERROR
