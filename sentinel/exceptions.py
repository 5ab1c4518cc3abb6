"""
Exception Classes - Strongly typed exception hierarchy.

Every exception carries a machine-readable ``code`` alongside typed attributes.
``message_of`` and ``code_of`` normalize arbitrary failure values for API responses.
"""

import json
from collections.abc import Mapping
from typing import Any

UNKNOWN_ERROR = "Unknown error"


class SentinelError(Exception):
    """Base exception for all dashboard errors."""

    code = "sentinel_error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class InputValidationError(SentinelError):
    """Raised when scan input is rejected before any network call."""

    code = "validation_error"

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        super().__init__(message)


class NotAuthenticatedError(SentinelError):
    """Raised when no identity or profile is available."""

    code = "not_authenticated"

    def __init__(self, message: str = "Please sign in to use the scanner") -> None:
        super().__init__(message)


class TokenError(SentinelError):
    """Base exception for token metering failures."""

    code = "token_error"


class NoTokensAvailableError(TokenError):
    """Raised when the profile has no tokens and no active subscription."""

    code = "no_tokens_available"

    def __init__(self) -> None:
        super().__init__(
            "No tokens remaining. Please upgrade your subscription or refill tokens."
        )


class InsufficientTokensError(TokenError):
    """Raised when the balance is below the cost of this content type."""

    code = "insufficient_tokens"

    def __init__(self, balance: int, required: int) -> None:
        self.balance = balance
        self.required = required
        super().__init__(f"Insufficient tokens. This scan requires {required} tokens.")


class RequestFailedError(SentinelError):
    """Raised when the scanning backend answers with a non-2xx status."""

    code = "request_failed"

    def __init__(self, status_code: int, body: str) -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(body or "Request failed")


class PersistenceError(SentinelError):
    """Raised when a data store read or write fails."""

    code = "persistence_failed"

    def __init__(self, message: str) -> None:
        super().__init__(f"Database error: {message}")


class RecordNotFoundError(PersistenceError):
    """Raised when a single-row lookup finds nothing."""

    code = "row_not_found"

    def __init__(self, resource: str, key: str) -> None:
        self.resource = resource
        self.key = key
        SentinelError.__init__(self, f"{resource} not found: {key}")


class PaymentError(SentinelError):
    """Base exception for payment gateway failures."""

    code = "payment_failed"

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class PaymentInitError(PaymentError):
    """Raised when payment initialization is rejected upstream."""

    code = "payment_init_failed"


class PaymentVerifyError(PaymentError):
    """Raised when payment verification could not be performed."""

    code = "payment_verify_failed"


class PaymentNotVerifiedError(PaymentError):
    """Raised when tokens are claimed for a checkout the gateway has not confirmed."""

    code = "payment_not_verified"

    def __init__(self, reference: str, message: str = "Payment not yet verified, try again") -> None:
        self.reference = reference
        super().__init__(message, status_code=402)


class StorageError(SentinelError):
    """Raised when the object store rejects an upload."""

    code = "storage_failed"

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class PlanNotFoundError(SentinelError):
    """Raised when no plan matches an id, key or name."""

    code = "plan_not_found"

    def __init__(self, identifier: str) -> None:
        self.identifier = identifier
        super().__init__(f"Plan not found: {identifier}")


class IdentityProviderError(SentinelError):
    """Error reported by the identity provider, passed through unchanged."""

    code = "identity_provider_error"

    def __init__(
        self, message: str, status_code: int = 400, provider_code: str | None = None
    ) -> None:
        self.status_code = status_code
        if provider_code:
            self.code = provider_code
        super().__init__(message)


def message_of(err: Any) -> str:
    """
    Best-effort human readable message for any failure value.

    Never raises.
    """
    if err is None:
        return UNKNOWN_ERROR
    if isinstance(err, str):
        return err

    message = getattr(err, "message", None)
    if isinstance(message, str) and message:
        return message
    if isinstance(err, Mapping):
        mapped = err.get("message")
        if isinstance(mapped, str) and mapped:
            return mapped
    if isinstance(err, BaseException):
        return str(err) or UNKNOWN_ERROR

    try:
        return json.dumps(err)
    except (TypeError, ValueError):
        try:
            return repr(err)
        except Exception:
            return UNKNOWN_ERROR


def code_of(err: Any) -> str | None:
    """Return the string ``code`` carried by an error object, if any."""
    if err is None or isinstance(err, str):
        return None
    if isinstance(err, Mapping):
        code = err.get("code")
    else:
        code = getattr(err, "code", None)
    return code if isinstance(code, str) else None
