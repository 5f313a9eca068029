"""Failure kinds surfaced by the authentication core."""

from __future__ import annotations

from enum import StrEnum


class AuthErrorKind(StrEnum):
    """Machine-readable authentication failure kinds."""

    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    EXPIRED = "EXPIRED"
    MISMATCH = "MISMATCH"
    REPLAY_DETECTED = "REPLAY_DETECTED"
    RATE_LIMITED = "RATE_LIMITED"
    DELIVERY_ERROR = "DELIVERY_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    UNAVAILABLE = "UNAVAILABLE"
    INVALID_TOKEN = "INVALID_TOKEN"
    FEATURE_DISABLED = "FEATURE_DISABLED"
    UNAUTHORIZED = "UNAUTHORIZED"


class AuthError(Exception):
    """Base class for every failure the core reports to its callers."""

    kind: AuthErrorKind = AuthErrorKind.UNAVAILABLE
    default_message = "Authentication failed"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class NotFoundError(AuthError):
    kind = AuthErrorKind.NOT_FOUND
    default_message = "Not found"


class ConflictError(AuthError):
    kind = AuthErrorKind.CONFLICT
    default_message = "Already exists"


class InvalidCredentialsError(AuthError):
    kind = AuthErrorKind.INVALID_CREDENTIALS
    default_message = "Invalid credentials"


class ExpiredError(AuthError):
    kind = AuthErrorKind.EXPIRED
    default_message = "Expired"


class MismatchError(AuthError):
    kind = AuthErrorKind.MISMATCH
    default_message = "Presented value does not match"


class ReplayDetectedError(AuthError):
    kind = AuthErrorKind.REPLAY_DETECTED
    default_message = "Sign counter did not increase"


class RateLimitedError(AuthError):
    kind = AuthErrorKind.RATE_LIMITED
    default_message = "Too many requests"

    def __init__(self, message: str | None = None, *, retry_after: int = 0) -> None:
        super().__init__(message)
        self.retry_after = max(0, int(retry_after))


class DeliveryError(AuthError):
    kind = AuthErrorKind.DELIVERY_ERROR
    default_message = "Message delivery failed"


class ValidationError(AuthError):
    kind = AuthErrorKind.VALIDATION_ERROR
    default_message = "Invalid input"


class UnavailableError(AuthError):
    kind = AuthErrorKind.UNAVAILABLE
    default_message = "Service temporarily unavailable"


class InvalidTokenError(AuthError):
    kind = AuthErrorKind.INVALID_TOKEN
    default_message = "Invalid token"


class FeatureDisabledError(AuthError):
    kind = AuthErrorKind.FEATURE_DISABLED
    default_message = "Sign-in method is not enabled"


class UnauthorizedError(AuthError):
    kind = AuthErrorKind.UNAUTHORIZED
    default_message = "Authentication required"
