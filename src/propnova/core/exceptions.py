"""Exception hierarchy for the billing engine.

Every error carries a machine-readable code, the HTTP status it maps to, a
user-facing message and optional debugging details, so the API layer can
render them uniformly.
"""

from __future__ import annotations

from enum import Enum
from http import HTTPStatus
from typing import Any


class ErrorCode(str, Enum):
    """Machine-readable error codes for API responses."""

    # General errors (1xxx)
    INTERNAL_ERROR = "PN1000"
    UNKNOWN_ERROR = "PN1001"
    CONFIGURATION_ERROR = "PN1002"

    # Authentication errors (2xxx)
    AUTHENTICATION_REQUIRED = "PN2000"
    TOKEN_INVALID = "PN2001"

    # Validation errors (4xxx)
    VALIDATION_ERROR = "PN4000"
    INVALID_INPUT = "PN4001"
    INVALID_TOPUP = "PN4002"

    # Resource errors (5xxx)
    RESOURCE_NOT_FOUND = "PN5000"
    PLAN_NOT_FOUND = "PN5001"
    PAYMENT_SESSION_NOT_FOUND = "PN5002"

    # Persistence errors (6xxx)
    STORE_UNAVAILABLE = "PN6000"
    CONCURRENT_MODIFICATION = "PN6001"

    # Payment gateway errors (7xxx)
    GATEWAY_UNAVAILABLE = "PN7000"
    SIGNATURE_INVALID = "PN7001"
    STALE_CONFIRMATION = "PN7002"
    CHECKOUT_IN_PROGRESS = "PN7003"
    RECONCILIATION_TIMEOUT = "PN7004"

    # Entitlement errors (8xxx)
    RATE_LIMIT_EXCEEDED = "PN8000"
    QUOTA_EXCEEDED = "PN8001"
    ILLEGAL_TRANSITION = "PN8002"


class PropnovaException(Exception):
    """Base exception for all billing engine errors.

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
# Authentication / validation
# ============================================================================


class AuthenticationError(PropnovaException):
    """Missing or unusable tenant credentials."""

    message = "Authentication required"
    error_code = ErrorCode.AUTHENTICATION_REQUIRED
    http_status = HTTPStatus.UNAUTHORIZED


class ValidationError(PropnovaException):
    """Validation-related errors."""

    message = "Validation error"
    error_code = ErrorCode.VALIDATION_ERROR
    http_status = HTTPStatus.BAD_REQUEST

    def __init__(
        self,
        message: str | None = None,
        *,
        field: str | None = None,
        value: Any = None,
        constraint: str | None = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {}) or {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)
        if constraint:
            details["constraint"] = constraint

        super().__init__(message, details=details, **kwargs)


class InvalidTopUpError(ValidationError):
    """Requested top-up credit amount is outside the allowed range."""

    message = "Invalid top-up amount"
    error_code = ErrorCode.INVALID_TOPUP


# ============================================================================
# Resource lookups
# ============================================================================


class NotFoundError(PropnovaException):
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
        details = kwargs.pop("details", {}) or {}
        if resource_type:
            details["resource_type"] = resource_type
        if resource_id:
            details["resource_id"] = resource_id

        if not message and resource_type:
            message = f"{resource_type} not found"

        super().__init__(message, details=details, **kwargs)


class PlanNotFoundError(NotFoundError):
    """Plan id is not in the catalog."""

    message = "Plan not found"
    error_code = ErrorCode.PLAN_NOT_FOUND

    def __init__(self, plan_id: str) -> None:
        super().__init__(
            f"Plan {plan_id!r} not found",
            resource_type="plan",
            resource_id=plan_id,
        )
        self.plan_id = plan_id


class PaymentSessionNotFoundError(NotFoundError):
    """No payment session with the given id exists for the tenant."""

    message = "Payment session not found"
    error_code = ErrorCode.PAYMENT_SESSION_NOT_FOUND


# ============================================================================
# Persistence
# ============================================================================


class StoreUnavailableError(PropnovaException):
    """The persistent store cannot be reached; the request must abort."""

    message = "Billing store unavailable"
    error_code = ErrorCode.STORE_UNAVAILABLE
    http_status = HTTPStatus.SERVICE_UNAVAILABLE
    user_message = "Billing is temporarily unavailable. Please try again shortly."


class ConcurrentModificationError(PropnovaException):
    """Another writer changed the tenant's subscription first."""

    message = "Subscription was modified concurrently"
    error_code = ErrorCode.CONCURRENT_MODIFICATION
    http_status = HTTPStatus.CONFLICT
    user_message = "Your billing state changed while processing. Please retry."


# ============================================================================
# Entitlements and subscription lifecycle
# ============================================================================


class QuotaExceededError(PropnovaException):
    """Neither the periodic quota nor top-up credits can cover the request.

    This is an expected outcome, not a fault.
    """

    message = "Quota exceeded"
    error_code = ErrorCode.QUOTA_EXCEEDED
    http_status = HTTPStatus.PAYMENT_REQUIRED
    user_message = "You have reached your plan limit. Upgrade or buy credits to continue."

    def __init__(
        self,
        resource_type: str,
        used: int,
        limit: int,
        top_up_balance: int = 0,
    ) -> None:
        self.resource_type = resource_type
        self.used = used
        self.limit = limit
        self.top_up_balance = top_up_balance
        super().__init__(
            f"Quota exceeded for {resource_type}: {used}/{limit}",
            details={
                "resource_type": resource_type,
                "used": used,
                "limit": limit,
                "top_up_balance": top_up_balance,
            },
        )


class IllegalTransitionError(PropnovaException):
    """The subscription state machine rejected a transition."""

    message = "Illegal subscription transition"
    error_code = ErrorCode.ILLEGAL_TRANSITION
    http_status = HTTPStatus.CONFLICT

    def __init__(self, from_status: str, to_status: str, reason: str | None = None) -> None:
        self.from_status = from_status
        self.to_status = to_status
        details: dict[str, Any] = {"from_status": from_status, "to_status": to_status}
        if reason:
            details["reason"] = reason
        super().__init__(
            f"Cannot transition subscription from {from_status} to {to_status}",
            details=details,
            user_message=reason,
        )


class RateLimitError(PropnovaException):
    """Too many checkout initiations in the current window."""

    message = "Rate limit exceeded"
    error_code = ErrorCode.RATE_LIMIT_EXCEEDED
    http_status = HTTPStatus.TOO_MANY_REQUESTS
    user_message = "You have made too many requests. Please wait before trying again."

    def __init__(self, *, retry_after: int, limit: int) -> None:
        self.retry_after = retry_after
        super().__init__(details={"retry_after_seconds": retry_after, "limit": limit})


# ============================================================================
# Payment gateway
# ============================================================================


class PaymentGatewayError(PropnovaException):
    """Base class for payment gateway handoff errors."""

    message = "Payment gateway error"
    error_code = ErrorCode.GATEWAY_UNAVAILABLE
    http_status = HTTPStatus.BAD_GATEWAY


class GatewayUnavailableError(PaymentGatewayError):
    """Gateway request could not be built or validated. Retryable."""

    message = "Payment gateway unavailable"
    error_code = ErrorCode.GATEWAY_UNAVAILABLE
    http_status = HTTPStatus.SERVICE_UNAVAILABLE
    user_message = "The payment provider is temporarily unavailable. Please try again."


class SignatureInvalidError(PaymentGatewayError):
    """Confirmation payload failed signature, merchant or amount checks."""

    message = "Payment confirmation failed verification"
    error_code = ErrorCode.SIGNATURE_INVALID
    http_status = HTTPStatus.BAD_REQUEST

    def __init__(self, reason: str, *, session_id: str | None = None) -> None:
        self.reason = reason
        self.session_id = session_id
        details: dict[str, Any] = {"reason": reason}
        if session_id:
            details["session_id"] = session_id
        super().__init__(f"Confirmation rejected: {reason}", details=details)


class StaleConfirmationError(PaymentGatewayError):
    """Confirmation for a session that already reached a terminal state."""

    message = "Payment session already settled"
    error_code = ErrorCode.STALE_CONFIRMATION
    http_status = HTTPStatus.OK

    def __init__(self, session_id: str, status: str) -> None:
        self.session_id = session_id
        self.status = status
        super().__init__(
            f"Payment session {session_id} already {status}",
            details={"session_id": session_id, "status": status},
        )


class CheckoutInProgressError(PaymentGatewayError):
    """Tenant already has an open checkout for a different target."""

    message = "Another checkout is already in progress"
    error_code = ErrorCode.CHECKOUT_IN_PROGRESS
    http_status = HTTPStatus.CONFLICT

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(details={"session_id": session_id})


class ReconciliationTimeoutError(PropnovaException):
    """Polling budget exhausted before activation settled.

    Surfaced as "pending, check back", never as a payment failure.
    """

    message = "Payment not yet verified"
    error_code = ErrorCode.RECONCILIATION_TIMEOUT
    http_status = HTTPStatus.ACCEPTED
    user_message = "We haven't received payment confirmation yet. Please check back shortly."


def get_http_status_for_exception(exc: Exception) -> HTTPStatus:
    """Get the appropriate HTTP status code for an exception."""
    if isinstance(exc, PropnovaException):
        return exc.http_status

    exception_status_map: dict[type, HTTPStatus] = {
        ValueError: HTTPStatus.BAD_REQUEST,
        TypeError: HTTPStatus.BAD_REQUEST,
        KeyError: HTTPStatus.NOT_FOUND,
        PermissionError: HTTPStatus.FORBIDDEN,
        TimeoutError: HTTPStatus.GATEWAY_TIMEOUT,
    }

    for exc_type, status in exception_status_map.items():
        if isinstance(exc, exc_type):
            return status

    return HTTPStatus.INTERNAL_SERVER_ERROR
