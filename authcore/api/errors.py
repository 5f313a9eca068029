"""Shared API error types and helpers."""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from fastapi import HTTPException

from authcore.auth.errors import AuthError, AuthErrorKind


class ApiErrorCode(StrEnum):
    """Machine-readable API error codes."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    AUTH_MISSING_TOKEN = "AUTH_MISSING_TOKEN"
    AUTH_UNAUTHORIZED = "AUTH_UNAUTHORIZED"
    AUTH_INVALID_CREDENTIALS = "AUTH_INVALID_CREDENTIALS"
    AUTH_TOKEN_INVALID = "AUTH_TOKEN_INVALID"
    AUTH_EXPIRED = "AUTH_EXPIRED"
    AUTH_MISMATCH = "AUTH_MISMATCH"
    AUTH_REPLAY_DETECTED = "AUTH_REPLAY_DETECTED"
    AUTH_RATE_LIMITED = "AUTH_RATE_LIMITED"
    AUTH_FEATURE_DISABLED = "AUTH_FEATURE_DISABLED"
    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"
    RESOURCE_CONFLICT = "RESOURCE_CONFLICT"
    DELIVERY_FAILED = "DELIVERY_FAILED"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    REQUEST_TOO_LARGE = "REQUEST_TOO_LARGE"
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"


# Status code and envelope code for each domain error kind.
AUTH_ERROR_STATUS: dict[AuthErrorKind, tuple[int, ApiErrorCode]] = {
    AuthErrorKind.NOT_FOUND: (404, ApiErrorCode.RESOURCE_NOT_FOUND),
    AuthErrorKind.CONFLICT: (409, ApiErrorCode.RESOURCE_CONFLICT),
    AuthErrorKind.INVALID_CREDENTIALS: (401, ApiErrorCode.AUTH_INVALID_CREDENTIALS),
    AuthErrorKind.EXPIRED: (401, ApiErrorCode.AUTH_EXPIRED),
    AuthErrorKind.MISMATCH: (401, ApiErrorCode.AUTH_MISMATCH),
    AuthErrorKind.REPLAY_DETECTED: (401, ApiErrorCode.AUTH_REPLAY_DETECTED),
    AuthErrorKind.RATE_LIMITED: (429, ApiErrorCode.AUTH_RATE_LIMITED),
    AuthErrorKind.DELIVERY_ERROR: (502, ApiErrorCode.DELIVERY_FAILED),
    AuthErrorKind.VALIDATION_ERROR: (422, ApiErrorCode.VALIDATION_ERROR),
    AuthErrorKind.UNAVAILABLE: (503, ApiErrorCode.SERVICE_UNAVAILABLE),
    AuthErrorKind.INVALID_TOKEN: (401, ApiErrorCode.AUTH_TOKEN_INVALID),
    AuthErrorKind.FEATURE_DISABLED: (404, ApiErrorCode.AUTH_FEATURE_DISABLED),
    AuthErrorKind.UNAUTHORIZED: (401, ApiErrorCode.AUTH_UNAUTHORIZED),
}


class ApiError(HTTPException):
    """HTTP exception carrying stable API error envelope."""

    def __init__(
        self,
        *,
        status_code: int,
        error_code: ApiErrorCode,
        message: str,
        headers: dict[str, str] | None = None,
    ) -> None:
        """Build an HTTP exception with standard detail structure."""
        super().__init__(
            status_code=status_code,
            detail={"error_code": str(error_code), "message": message},
            headers=headers,
        )


def api_error_from_auth_error(exc: AuthError) -> ApiError:
    """Translate a domain error into its HTTP representation."""
    status_code, error_code = AUTH_ERROR_STATUS.get(
        exc.kind, (500, ApiErrorCode.INTERNAL_SERVER_ERROR)
    )
    headers = None
    retry_after = getattr(exc, "retry_after", 0)
    if retry_after:
        headers = {"Retry-After": str(retry_after)}
    return ApiError(
        status_code=status_code,
        error_code=error_code,
        message=exc.message,
        headers=headers,
    )


def to_error_payload(detail: Any, status_code: int) -> dict[str, str]:
    """Normalize HTTP exception detail into stable error payload."""
    if isinstance(detail, dict):
        error_code = str(detail.get("error_code") or f"HTTP_{status_code}")
        message = str(detail.get("message") or detail.get("detail") or "HTTP error")
        return {"error_code": error_code, "message": message}
    return {
        "error_code": f"HTTP_{status_code}",
        "message": str(detail or "HTTP error"),
    }
