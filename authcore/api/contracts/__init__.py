"""Public API response contracts."""

from authcore.api.contracts.models import (
    ApiErrorResponse,
    HealthResponse,
    PasskeyResponse,
    PasskeysListResponse,
    RevokedCountResponse,
    SessionResponse,
    SessionsListResponse,
    SessionView,
    SignInResponse,
    StatusResponse,
    UserResponse,
)

__all__ = [
    "ApiErrorResponse",
    "HealthResponse",
    "PasskeyResponse",
    "PasskeysListResponse",
    "RevokedCountResponse",
    "SessionResponse",
    "SessionsListResponse",
    "SessionView",
    "SignInResponse",
    "StatusResponse",
    "UserResponse",
]
