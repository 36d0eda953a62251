"""Custom exceptions for PlanSync.

The hierarchy mirrors how failures are handled:

- ``ConfigurationError`` aborts a whole invocation.
- ``ValidationError`` and ``SignatureMismatchError`` reject input at the boundary.
- ``NotFoundError`` is expected on membership lookups and drives the
  idempotent skip branches of the membership synchronizer.
- ``TransientError`` is retried by the caller, ``TerminalError`` is not.
"""

from __future__ import annotations

from enum import Enum
from http import HTTPStatus
from typing import Any


class ErrorCode(str, Enum):
    """Machine-readable error codes for API responses."""

    # General errors (1xxx)
    INTERNAL_ERROR = "PS1000"
    UNKNOWN_ERROR = "PS1001"
    CONFIGURATION_ERROR = "PS1002"

    # Authentication errors (2xxx)
    SIGNATURE_MISMATCH = "PS2000"
    AUTHENTICATION_REQUIRED = "PS2001"

    # Validation errors (4xxx)
    VALIDATION_ERROR = "PS4000"
    INVALID_CATALOG = "PS4001"
    INVALID_WEBHOOK_PAYLOAD = "PS4002"
    PAYMENT_NOT_SUCCESSFUL = "PS4003"

    # Resource errors (5xxx)
    RESOURCE_NOT_FOUND = "PS5000"
    SUBSCRIPTION_NOT_FOUND = "PS5001"
    MEMBERSHIP_NOT_FOUND = "PS5002"

    # External service errors (7xxx)
    EXTERNAL_SERVICE_ERROR = "PS7000"
    TRANSIENT_ERROR = "PS7001"
    TERMINAL_ERROR = "PS7002"
    QUEUE_SEND_FAILED = "PS7003"


class PlanSyncException(Exception):
    """Base exception for all PlanSync errors.

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

    def __init__(
        self,
        message: str | None = None,
        *,
        error_code: ErrorCode | None = None,
        http_status: HTTPStatus | None = None,
        details: dict[str, Any] | None = None,
        user_message: str | None = None,
    ) -> None:
        self.message = message or self.__class__.message
        self.error_code = error_code or self.__class__.error_code
        self.http_status = http_status or self.__class__.http_status
        self.details = details or {}
        self.user_message = user_message or self.message
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
        return f"[{self.error_code.value}] {self.message}"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"error_code={self.error_code.value}, "
            f"http_status={self.http_status.value}, "
            f"details={self.details!r}"
            f")"
        )


# ============================================================================
# Configuration
# ============================================================================


class ConfigurationError(PlanSyncException):
    """Missing or malformed secret, catalog or setting."""

    message = "Configuration error"
    error_code = ErrorCode.CONFIGURATION_ERROR
    http_status = HTTPStatus.INTERNAL_SERVER_ERROR


# ============================================================================
# Boundary rejections
# ============================================================================


class SignatureMismatchError(PlanSyncException):
    """Inbound webhook signature does not match the shared secret."""

    message = "Invalid webhook signature"
    error_code = ErrorCode.SIGNATURE_MISMATCH
    http_status = HTTPStatus.UNAUTHORIZED


class ValidationError(PlanSyncException):
    """Input failed validation."""

    message = "Validation error"
    error_code = ErrorCode.VALIDATION_ERROR
    http_status = HTTPStatus.BAD_REQUEST

    def __init__(
        self,
        message: str | None = None,
        *,
        errors: list[dict[str, Any]] | None = None,
        **kwargs: Any,
    ) -> None:
        """Initialize validation error.

        Args:
            message: Error message.
            errors: Field level errors as ``{"field": ..., "message": ...}`` dicts.
            **kwargs: Additional arguments passed to parent.
        """
        details = kwargs.pop("details", {}) or {}
        if errors:
            details["errors"] = errors[:10]
        self.errors = errors or []
        super().__init__(message, details=details, **kwargs)


class CatalogValidationError(ValidationError):
    """Plan catalog does not map every quota tier to a usage plan id."""

    message = "Invalid plan catalog"
    error_code = ErrorCode.INVALID_CATALOG


class WebhookPayloadError(ValidationError):
    """Webhook envelope failed schema validation.

    Surfaced as a server error so the gateway's delivery retry applies.
    """

    message = "Webhook event schema validation failed"
    error_code = ErrorCode.INVALID_WEBHOOK_PAYLOAD
    http_status = HTTPStatus.INTERNAL_SERVER_ERROR


class PaymentNotSuccessfulError(ValidationError):
    """Gateway verification did not confirm the charge."""

    message = "Payment not successful"
    error_code = ErrorCode.PAYMENT_NOT_SUCCESSFUL


# ============================================================================
# Resource lookups
# ============================================================================


class NotFoundError(PlanSyncException):
    """Resource not found."""

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
        details = kwargs.pop("details", {}) or {}
        if resource_type:
            details["resource_type"] = resource_type
        if resource_id:
            details["resource_id"] = resource_id
        super().__init__(message, details=details, **kwargs)


class SubscriptionNotFoundError(NotFoundError):
    """No subscription stored for (owner, project)."""

    message = "Subscription not found"
    error_code = ErrorCode.SUBSCRIPTION_NOT_FOUND

    def __init__(self, owner_id: str, project_id: str) -> None:
        self.owner_id = owner_id
        self.project_id = project_id
        super().__init__(
            f"Subscription not found for owner {owner_id}, project {project_id}",
            resource_type="subscription",
            resource_id=f"{owner_id}/{project_id}",
        )


class MembershipNotFoundError(NotFoundError):
    """Credential is not a member of the usage plan."""

    message = "Credential is not attached to the usage plan"
    error_code = ErrorCode.MEMBERSHIP_NOT_FOUND


# ============================================================================
# External services
# ============================================================================


class ExternalServiceError(PlanSyncException):
    """A call to the payment gateway, quota service or queue failed."""

    message = "External service error"
    error_code = ErrorCode.EXTERNAL_SERVICE_ERROR
    http_status = HTTPStatus.BAD_GATEWAY

    def __init__(
        self,
        message: str | None = None,
        *,
        service: str | None = None,
        status_code: int | None = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {}) or {}
        if service:
            details["service"] = service
        if status_code is not None:
            details["status_code"] = status_code
        self.service = service
        self.status_code = status_code
        super().__init__(message, details=details, **kwargs)


class TransientError(ExternalServiceError):
    """Server-side or network failure, safe to retry."""

    message = "Transient external service failure"
    error_code = ErrorCode.TRANSIENT_ERROR


class TerminalError(ExternalServiceError):
    """Client-side rejection (4xx), never retried."""

    message = "External service rejected the request"
    error_code = ErrorCode.TERMINAL_ERROR


class QueueSendError(ExternalServiceError):
    """Queue message could not be sent."""

    message = "Failed to send queue message"
    error_code = ErrorCode.QUEUE_SEND_FAILED


# ============================================================================
# Exception to HTTP Status Mapping
# ============================================================================


def get_http_status_for_exception(exc: Exception) -> HTTPStatus:
    """Get the appropriate HTTP status code for an exception."""
    if isinstance(exc, PlanSyncException):
        return exc.http_status

    exception_status_map: dict[type, HTTPStatus] = {
        ValueError: HTTPStatus.BAD_REQUEST,
        TypeError: HTTPStatus.BAD_REQUEST,
        KeyError: HTTPStatus.NOT_FOUND,
        PermissionError: HTTPStatus.FORBIDDEN,
        TimeoutError: HTTPStatus.GATEWAY_TIMEOUT,
        ConnectionError: HTTPStatus.BAD_GATEWAY,
    }

    for exc_type, status in exception_status_map.items():
        if isinstance(exc, exc_type):
            return status

    return HTTPStatus.INTERNAL_SERVER_ERROR
