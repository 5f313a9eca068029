"""Pydantic API response models used in OpenAPI contracts."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field


class ApiErrorResponse(BaseModel):
    """Stable error envelope for API responses."""

    error_code: str = Field(description="Machine-readable error code")
    message: str = Field(description="Human-readable error message")


class HealthResponse(BaseModel):
    """Health check response payload."""

    status: Literal["ok"]


class StatusResponse(BaseModel):
    """Acknowledgement for operations without a richer result."""

    status: Literal["ok", "sent"]


class SessionView(BaseModel):
    """Session metadata safe to return to clients (never the token)."""

    id: str
    user_id: str
    created_at: int
    expires_at: int
    last_seen_at: int
    ip_address: str = ""
    user_agent: str = ""


class SignInResponse(BaseModel):
    """Result of a sign-in or sign-up call.

    ``token`` is empty when a second factor is still required or when sign-up
    ran without auto sign-in.
    """

    status: Literal["authenticated", "two_factor_required", "created"]
    token: str = ""
    user: dict[str, Any] | None = None
    two_factor_token: str = ""


class SessionResponse(BaseModel):
    """Current session and user resolved from the bearer token."""

    session: SessionView
    user: dict[str, Any]


class UserResponse(BaseModel):
    user: dict[str, Any]


class SessionsListResponse(BaseModel):
    sessions: list[SessionView]


class RevokedCountResponse(BaseModel):
    status: Literal["ok"]
    revoked: int


class PasskeyResponse(BaseModel):
    passkey: dict[str, Any]


class PasskeysListResponse(BaseModel):
    passkeys: list[dict[str, Any]]
