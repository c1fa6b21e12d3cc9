"""Error taxonomy for billing-sync.

Every failure the engine can produce is one of a small closed set of kinds.
Ingress failures become non-2xx responses so the provider redelivers;
processing failures are captured on the ledger row and re-raised so the
queue's retry policy governs re-attempts; tenant-facing lookups surface as
explicit HTTP-style errors.

Provider exceptions are converted at each call boundary by
``map_provider_error`` rather than by a blanket decorator.
"""

from __future__ import annotations

from enum import StrEnum

import stripe

__all__ = [
    "AccessDenied",
    "BillingSyncError",
    "DependencyNotFound",
    "ErrorKind",
    "ProviderCallFailure",
    "ProviderErrorKind",
    "QueueUnavailable",
    "SignatureInvalid",
    "ValidationFailure",
    "http_status_for",
    "map_provider_error",
]


class ErrorKind(StrEnum):
    """Top-level error categories."""

    SIGNATURE_INVALID = "signature_invalid"
    DEPENDENCY_NOT_FOUND = "dependency_not_found"
    ACCESS_DENIED = "access_denied"
    PROVIDER_CALL_FAILURE = "provider_call_failure"
    VALIDATION_FAILURE = "validation_failure"
    QUEUE_UNAVAILABLE = "queue_unavailable"


class ProviderErrorKind(StrEnum):
    """Why a provider call failed."""

    NETWORK = "network"
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    NOT_FOUND = "not_found"
    INVALID_REQUEST = "invalid_request"
    CARD_DECLINED = "card_declined"
    UNKNOWN = "unknown"


class BillingSyncError(Exception):
    """Base exception for billing-sync errors."""

    kind: ErrorKind = ErrorKind.VALIDATION_FAILURE
    retryable: bool = True

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class SignatureInvalid(BillingSyncError):
    """Webhook signature missing, malformed, stale, or wrong."""

    kind = ErrorKind.SIGNATURE_INVALID
    retryable = False


class DependencyNotFound(BillingSyncError):
    """A referenced local entity (customer, subscription, price...) is missing."""

    kind = ErrorKind.DEPENDENCY_NOT_FOUND

    def __init__(self, entity: str, identifier: str) -> None:
        super().__init__(f"{entity} not found: {identifier}")
        self.entity = entity
        self.identifier = identifier


class AccessDenied(BillingSyncError):
    """Entity exists but belongs to another tenant."""

    kind = ErrorKind.ACCESS_DENIED
    retryable = False


class ProviderCallFailure(BillingSyncError):
    """Network, auth, rate-limit or request error from the billing provider."""

    kind = ErrorKind.PROVIDER_CALL_FAILURE

    def __init__(
        self,
        message: str,
        *,
        provider_kind: ProviderErrorKind = ProviderErrorKind.UNKNOWN,
        operation: str = "",
    ) -> None:
        super().__init__(message)
        self.provider_kind = provider_kind
        self.operation = operation


class ValidationFailure(BillingSyncError):
    """Malformed payload. Never retried automatically."""

    kind = ErrorKind.VALIDATION_FAILURE
    retryable = False


class QueueUnavailable(BillingSyncError):
    """The job queue refused or failed an enqueue."""

    kind = ErrorKind.QUEUE_UNAVAILABLE


# Ordered: subclasses before their bases.
_STRIPE_ERROR_KINDS: list[tuple[type[Exception], ProviderErrorKind]] = [
    (stripe.CardError, ProviderErrorKind.CARD_DECLINED),
    (stripe.RateLimitError, ProviderErrorKind.RATE_LIMIT),
    (stripe.AuthenticationError, ProviderErrorKind.AUTH),
    (stripe.PermissionError, ProviderErrorKind.AUTH),
    (stripe.APIConnectionError, ProviderErrorKind.NETWORK),
    (stripe.InvalidRequestError, ProviderErrorKind.INVALID_REQUEST),
]


def map_provider_error(exc: Exception, operation: str) -> ProviderCallFailure:
    """Convert a provider SDK exception into a typed ``ProviderCallFailure``."""
    kind = ProviderErrorKind.UNKNOWN
    for exc_type, mapped in _STRIPE_ERROR_KINDS:
        if isinstance(exc, exc_type):
            kind = mapped
            break

    if kind is ProviderErrorKind.INVALID_REQUEST and getattr(exc, "http_status", None) == 404:
        kind = ProviderErrorKind.NOT_FOUND

    detail = getattr(exc, "user_message", None) or str(exc) or type(exc).__name__
    return ProviderCallFailure(
        f"{operation} failed ({kind}): {detail}",
        provider_kind=kind,
        operation=operation,
    )


_PROVIDER_STATUS = {
    ProviderErrorKind.NOT_FOUND: 404,
    ProviderErrorKind.RATE_LIMIT: 429,
    ProviderErrorKind.CARD_DECLINED: 402,
    ProviderErrorKind.INVALID_REQUEST: 400,
}

_KIND_STATUS = {
    ErrorKind.SIGNATURE_INVALID: 400,
    ErrorKind.DEPENDENCY_NOT_FOUND: 404,
    ErrorKind.ACCESS_DENIED: 403,
    ErrorKind.VALIDATION_FAILURE: 422,
    ErrorKind.QUEUE_UNAVAILABLE: 503,
    ErrorKind.PROVIDER_CALL_FAILURE: 502,
}


def http_status_for(error: BillingSyncError) -> int:
    """HTTP status code for an error surfaced to a synchronous caller."""
    if isinstance(error, ProviderCallFailure):
        return _PROVIDER_STATUS.get(error.provider_kind, 502)
    return _KIND_STATUS.get(error.kind, 500)
