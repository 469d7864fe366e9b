"""
Custom exception hierarchy for structured error handling.

WHY: Custom exceptions provide:
1. Consistent error handling across the API
2. HTTP status code mapping for FastAPI
3. Structured error responses with contextual data
4. No sensitive data leaks in error messages (OWASP A04)

Payment provider failures are split into two tagged types so callers decide
on retry or abort by exception class, never by inspecting provider error
strings:
- ProviderUnavailable: network failure, timeout or 5xx (retryable)
- ProviderRejected: 4xx such as bad credentials or unknown resource (terminal)

IMPORTANT: NEVER use base Exception class. Always use custom exceptions.
"""

from typing import Any, Dict, Optional


class AppException(Exception):
    """
    Base exception class for all application exceptions.

    WHY: Centralizing exception handling in a base class ensures consistent
    error responses, HTTP status code mapping, and prevents sensitive data
    leaks in error messages.

    All custom exceptions should inherit from this class.
    """

    status_code: int = 500
    default_message: str = "An unexpected error occurred"

    def __init__(
        self,
        message: Optional[str] = None,
        status_code: Optional[int] = None,
        **context: Any,
    ):
        """
        Initialize exception with message and context.

        Args:
            message: Human-readable error message
            status_code: HTTP status code (overrides class default)
            **context: Additional context for debugging (filtered in to_dict)
        """
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code
        self.context = context
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """
        Serialize exception to dictionary for JSON response.

        Returns:
            Dictionary with error details (sensitive fields filtered out)
        """
        # WHY: Filter out sensitive fields to prevent data leaks
        sensitive_fields = {
            "password",
            "token",
            "secret",
            "key",
            "api_key",
            "access_token",
            "refresh_token",
            "client_secret",
        }
        filtered_context = {
            k: v for k, v in self.context.items() if k.lower() not in sensitive_fields
        }

        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "status_code": self.status_code,
            "details": filtered_context if filtered_context else None,
        }


# ============================================================================
# Authentication / Authorization Exceptions
# ============================================================================


class AuthenticationError(AppException):
    """
    Raised when the caller cannot be identified.

    HTTP Status: 401 Unauthorized
    """

    status_code = 401
    default_message = "Authentication required"


class AuthorizationError(AppException):
    """
    Raised when a user acts on a resource they do not own, or lacks a role.

    WHY: Ownership is checked by equality against the caller's user id.
    A mismatch is reported as 403, distinct from a missing resource.

    HTTP Status: 403 Forbidden
    """

    status_code = 403
    default_message = "You do not have permission to perform this action"


# ============================================================================
# Validation Exceptions
# ============================================================================


class ValidationError(AppException):
    """
    Raised when input is missing or malformed.

    HTTP Status: 400 Bad Request
    """

    status_code = 400
    default_message = "Validation failed"


# ============================================================================
# Resource Exceptions
# ============================================================================


class ResourceNotFoundError(AppException):
    """
    Raised when a requested resource does not exist.

    HTTP Status: 404 Not Found
    """

    status_code = 404
    default_message = "Resource not found"


class UserNotFoundError(ResourceNotFoundError):
    default_message = "User not found"


class SubscriptionNotFoundError(ResourceNotFoundError):
    default_message = "Subscription not found"


class PlanNotFoundError(ResourceNotFoundError):
    default_message = "Subscription plan not found"


class BookingNotFoundError(ResourceNotFoundError):
    default_message = "Booking not found"


# ============================================================================
# Business Logic Exceptions
# ============================================================================


class BusinessRuleViolation(AppException):
    """
    Raised when an operation violates a business rule.

    HTTP Status: 422 Unprocessable Entity
    """

    status_code = 422
    default_message = "Business rule violation"


class InvalidStateTransitionError(BusinessRuleViolation):
    """
    Raised when a subscription cannot move to the requested status.

    WHY: Terminal states (cancelled, expired) never transition back. A new
    subscription after cancellation is always a new record.

    HTTP Status: 400 Bad Request
    """

    status_code = 400
    default_message = "Invalid state transition"


class InvalidPolicyError(AppException):
    """
    Raised when cancellation policy data cannot be evaluated.

    WHY: Penalty computation is pure; malformed policy data is a programming
    or data error and must surface immediately rather than yield a guess.

    HTTP Status: 500 Internal Server Error
    """

    status_code = 500
    default_message = "Cancellation policy data is invalid"


# ============================================================================
# External Service Exceptions
# ============================================================================


class ExternalServiceError(AppException):
    """
    Raised when an external service call fails.

    HTTP Status: 502 Bad Gateway
    """

    status_code = 502
    default_message = "External service error"


class PaymentProviderError(ExternalServiceError):
    """
    Base class for payment provider failures.

    WHY: Orchestrators catch this base when a provider call is best-effort
    (teardown, old-subscription cancel) and a subclass when they must choose
    between retrying and aborting.
    """

    default_message = "Payment provider error"
    retryable: bool = False


class ProviderUnavailable(PaymentProviderError):
    """
    Raised on network errors, timeouts and 5xx responses from the provider.

    WHY: These are transient. Callers retry once with backoff.

    HTTP Status: 503 Service Unavailable
    """

    status_code = 503
    default_message = "Payment provider is temporarily unavailable"
    retryable = True


class ProviderRejected(PaymentProviderError):
    """
    Raised when the provider answers with a 4xx.

    WHY: Bad credentials or unknown resources will not fix themselves on
    retry, so the error is terminal and surfaced to the caller.

    HTTP Status: 502 Bad Gateway
    """

    default_message = "Payment provider rejected the request"

    def __init__(
        self,
        message: Optional[str] = None,
        provider_status: Optional[int] = None,
        **context: Any,
    ):
        self.provider_status = provider_status
        super().__init__(message=message, provider_status=provider_status, **context)


# ============================================================================
# OAuth Exceptions
# ============================================================================


class OAuthError(ExternalServiceError):
    """
    Base exception for OAuth-related errors.

    HTTP Status: 502 Bad Gateway
    """

    default_message = "OAuth authentication failed"


class OAuthConfigurationError(OAuthError):
    """
    Raised when marketplace OAuth credentials are not configured.

    HTTP Status: 503 Service Unavailable
    """

    status_code = 503
    default_message = "Provider account connection is not configured"


class OAuthStateError(OAuthError):
    """
    Raised when the OAuth state parameter cannot be parsed back to a user.

    HTTP Status: 400 Bad Request
    """

    status_code = 400
    default_message = "Invalid OAuth state - please try again"


# ============================================================================
# Security Exceptions
# ============================================================================


class EncryptionError(AppException):
    """
    Raised when encryption or decryption of stored credentials fails.

    HTTP Status: 500 Internal Server Error
    """

    status_code = 500
    default_message = "Encryption operation failed"
