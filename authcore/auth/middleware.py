"""Request-scoped session resolution for protected routes."""

from __future__ import annotations

from typing import Callable

from fastapi import Header, Request

from authcore.api.errors import ApiError, ApiErrorCode
from authcore.auth.errors import ExpiredError, NotFoundError
from authcore.auth.models import AuthContext, DeviceMeta
from authcore.auth.service import AuthService


def extract_bearer_token(authorization: str | None) -> str:
    """Extract bearer token from authorization header value."""
    parts = (authorization or "").strip().split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return ""
    return parts[1].strip()


def device_from_request(request: Request) -> DeviceMeta:
    return DeviceMeta(
        ip_address=(request.client.host if request.client else "") or "",
        user_agent=request.headers.get("user-agent", "")[:512],
    )


def create_session_resolver(service: AuthService) -> Callable[..., AuthContext]:
    """Build the dependency that turns a bearer token into an ``AuthContext``."""

    def resolve_session(authorization: str | None = Header(default=None)) -> AuthContext:
        token = extract_bearer_token(authorization)
        if not token:
            raise ApiError(
                status_code=401,
                error_code=ApiErrorCode.AUTH_MISSING_TOKEN,
                message="Missing bearer token",
            )
        try:
            return service.validate_session(token)
        except (NotFoundError, ExpiredError) as exc:
            raise ApiError(
                status_code=401,
                error_code=ApiErrorCode.AUTH_TOKEN_INVALID,
                message="Session is invalid or expired",
            ) from exc

    return resolve_session
