"""Authentication API router."""

from __future__ import annotations

from typing import Any, Callable
from urllib.parse import urlsplit

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.responses import RedirectResponse

from authcore.api.contracts import (
    ApiErrorResponse,
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
from authcore.auth.middleware import device_from_request
from authcore.auth.models import (
    AuthContext,
    DeleteUserRequest,
    EmailOtpRequest,
    ForgetPasswordRequest,
    PasskeyAuthenticationCredential,
    PasskeyAuthenticationOptionsRequest,
    PasskeyRegistrationCredential,
    PasswordConfirmRequest,
    PhoneOtpRequest,
    ResetPasswordRequest,
    RevokePasskeyRequest,
    RevokeSessionRequest,
    SendEmailOtpRequest,
    SendMagicLinkRequest,
    SendPhoneOtpRequest,
    Session,
    SignInPasswordRequest,
    SignInResult,
    SignUpRequest,
    SocialSignInRequest,
    TwoFactorSendRequest,
    TwoFactorVerifyRequest,
)
from authcore.auth.service import AuthService

AUTH_TOKEN_HEADER = "set-auth-token"

_ERRORS: dict[int | str, dict[str, Any]] = {
    401: {"model": ApiErrorResponse},
    404: {"model": ApiErrorResponse},
    409: {"model": ApiErrorResponse},
    422: {"model": ApiErrorResponse},
    429: {"model": ApiErrorResponse},
}


def session_view(session: Session) -> SessionView:
    return SessionView(
        id=session.session_id,
        user_id=session.user_id,
        created_at=session.created_at,
        expires_at=session.expires_at,
        last_seen_at=session.last_seen_at,
        ip_address=session.ip_address,
        user_agent=session.user_agent,
    )


def sign_in_response(result: SignInResult, response: Response) -> SignInResponse:
    """Render a sign-in result, exposing the bearer token in body and header."""
    if result.status == "two_factor_required":
        return SignInResponse(
            status="two_factor_required", two_factor_token=result.two_factor_token
        )
    token = result.session.token if result.session else ""
    if token:
        response.headers[AUTH_TOKEN_HEADER] = token
    return SignInResponse(
        status="authenticated",
        token=token,
        user=result.user.public_view() if result.user else None,
    )


def is_trusted_callback(callback_url: str, trusted_origins: list[str]) -> bool:
    parts = urlsplit(callback_url)
    if not parts.scheme or not parts.netloc:
        return False
    return f"{parts.scheme}://{parts.netloc}" in trusted_origins


def create_auth_router(
    service: AuthService,
    resolve_session: Callable[..., AuthContext],
    *,
    trusted_origins: list[str] | None = None,
) -> APIRouter:
    """Build authentication router covering every enabled sign-in method."""
    router = APIRouter(prefix="/api/auth", tags=["auth"], responses=_ERRORS)
    trusted = list(trusted_origins or [])

    @router.post("/sign-up/email", response_model=SignInResponse)
    def sign_up_email(req: SignUpRequest, request: Request, response: Response) -> SignInResponse:
        """Create an email and password account."""
        result = service.sign_up(
            req.email, req.password, name=req.name, device=device_from_request(request)
        )
        if result.session is None:
            return SignInResponse(status="created", user=result.user.public_view())
        response.headers[AUTH_TOKEN_HEADER] = result.session.token
        return SignInResponse(
            status="authenticated",
            token=result.session.token,
            user=result.user.public_view(),
        )

    @router.post("/sign-in/email", response_model=SignInResponse)
    def sign_in_email(
        req: SignInPasswordRequest, request: Request, response: Response
    ) -> SignInResponse:
        """Authenticate with email and password."""
        result = service.sign_in_password(
            req.email, req.password, device=device_from_request(request)
        )
        return sign_in_response(result, response)

    @router.post("/email-otp/send-verification-otp", response_model=StatusResponse)
    def send_email_otp(req: SendEmailOtpRequest) -> StatusResponse:
        service.send_email_otp(req.email, type=req.type)
        return StatusResponse(status="sent")

    @router.post("/sign-in/email-otp", response_model=SignInResponse)
    def sign_in_email_otp(
        req: EmailOtpRequest, request: Request, response: Response
    ) -> SignInResponse:
        result = service.sign_in_email_otp(req.email, req.otp, device=device_from_request(request))
        return sign_in_response(result, response)

    @router.post("/email-otp/verify-email", response_model=UserResponse)
    def verify_email(req: EmailOtpRequest) -> UserResponse:
        user = service.verify_challenge(req.email, req.otp)
        return UserResponse(user=user.public_view())

    @router.post("/phone-number/send-otp", response_model=StatusResponse)
    def send_phone_otp(req: SendPhoneOtpRequest) -> StatusResponse:
        service.send_phone_otp(req.phone_number)
        return StatusResponse(status="sent")

    @router.post("/phone-number/verify", response_model=SignInResponse)
    def verify_phone_number(
        req: PhoneOtpRequest, request: Request, response: Response
    ) -> SignInResponse:
        result = service.sign_in_phone_otp(
            req.phone_number, req.code, device=device_from_request(request)
        )
        return sign_in_response(result, response)

    @router.post("/sign-in/magic-link", response_model=StatusResponse)
    def send_magic_link(req: SendMagicLinkRequest) -> StatusResponse:
        service.send_magic_link(req.email, callback_url=req.callback_url)
        return StatusResponse(status="sent")

    @router.get("/magic-link/verify", response_model=SignInResponse)
    def verify_magic_link(
        request: Request,
        response: Response,
        token: str = Query(min_length=1),
        callback_url: str = Query(default="", alias="callbackURL"),
    ) -> Any:
        """Redeem a magic link; redirects to a trusted callback when one was given."""
        result = service.sign_in_magic_link(token, device=device_from_request(request))
        body = sign_in_response(result, response)
        if callback_url and is_trusted_callback(callback_url, trusted):
            redirect = RedirectResponse(callback_url, status_code=302)
            if body.token:
                redirect.headers[AUTH_TOKEN_HEADER] = body.token
            return redirect
        return body

    @router.post("/passkey/generate-authenticate-options")
    def passkey_authenticate_options(
        req: PasskeyAuthenticationOptionsRequest, request: Request
    ) -> dict[str, Any]:
        client_ip = (request.client.host if request.client else "") or "unknown"
        return service.passkey_authentication_start(req.email, client_ip=client_ip)

    @router.post("/passkey/verify-authentication", response_model=SignInResponse)
    def passkey_verify_authentication(
        req: PasskeyAuthenticationCredential, request: Request, response: Response
    ) -> SignInResponse:
        result = service.passkey_authentication_finish(req, device=device_from_request(request))
        return sign_in_response(result, response)

    @router.get("/passkey/generate-register-options")
    def passkey_register_options(
        ctx: AuthContext = Depends(resolve_session),
    ) -> dict[str, Any]:
        return service.register_passkey_start(ctx)

    @router.post("/passkey/verify-registration", response_model=PasskeyResponse)
    def passkey_verify_registration(
        req: PasskeyRegistrationCredential,
        ctx: AuthContext = Depends(resolve_session),
    ) -> PasskeyResponse:
        passkey = service.register_passkey_finish(ctx, req)
        return PasskeyResponse(passkey=passkey.public_view())

    @router.get("/passkey/list-user-passkeys", response_model=PasskeysListResponse)
    def list_passkeys(ctx: AuthContext = Depends(resolve_session)) -> PasskeysListResponse:
        return PasskeysListResponse(
            passkeys=[item.public_view() for item in service.list_passkeys(ctx)]
        )

    @router.post("/passkey/delete-passkey", response_model=StatusResponse)
    def delete_passkey(
        req: RevokePasskeyRequest, ctx: AuthContext = Depends(resolve_session)
    ) -> StatusResponse:
        service.revoke_passkey(ctx, req.passkey_id)
        return StatusResponse(status="ok")

    @router.post("/sign-in/social", response_model=SignInResponse)
    def sign_in_social(
        req: SocialSignInRequest, request: Request, response: Response
    ) -> SignInResponse:
        result = service.sign_in_social(
            req.provider, req.id_token, device=device_from_request(request)
        )
        return sign_in_response(result, response)

    @router.post("/two-factor/enable", response_model=UserResponse)
    def enable_two_factor(
        req: PasswordConfirmRequest, ctx: AuthContext = Depends(resolve_session)
    ) -> UserResponse:
        return UserResponse(user=service.enable_two_factor(ctx, req.password).public_view())

    @router.post("/two-factor/disable", response_model=UserResponse)
    def disable_two_factor(
        req: PasswordConfirmRequest, ctx: AuthContext = Depends(resolve_session)
    ) -> UserResponse:
        return UserResponse(user=service.disable_two_factor(ctx, req.password).public_view())

    @router.post("/two-factor/send-otp", response_model=StatusResponse)
    def send_two_factor_otp(req: TwoFactorSendRequest) -> StatusResponse:
        service.send_two_factor_otp(req.two_factor_token)
        return StatusResponse(status="sent")

    @router.post("/two-factor/verify-otp", response_model=SignInResponse)
    def verify_two_factor_otp(
        req: TwoFactorVerifyRequest, request: Request, response: Response
    ) -> SignInResponse:
        result = service.verify_two_factor(
            req.two_factor_token, req.code, device=device_from_request(request)
        )
        return sign_in_response(result, response)

    @router.post("/forget-password", response_model=StatusResponse)
    def forget_password(req: ForgetPasswordRequest) -> StatusResponse:
        """Always answers ``sent``, whether or not the account exists."""
        service.request_password_reset(req.email)
        return StatusResponse(status="sent")

    @router.post("/reset-password", response_model=StatusResponse)
    def reset_password(req: ResetPasswordRequest) -> StatusResponse:
        service.reset_password(req.token, req.new_password)
        return StatusResponse(status="ok")

    @router.get("/get-session", response_model=SessionResponse)
    def get_session(ctx: AuthContext = Depends(resolve_session)) -> SessionResponse:
        return SessionResponse(session=session_view(ctx.session), user=ctx.user.public_view())

    @router.get("/list-sessions", response_model=SessionsListResponse)
    def list_sessions(ctx: AuthContext = Depends(resolve_session)) -> SessionsListResponse:
        return SessionsListResponse(
            sessions=[session_view(item) for item in service.list_sessions(ctx)]
        )

    @router.post("/revoke-session", response_model=StatusResponse)
    def revoke_session(
        req: RevokeSessionRequest, ctx: AuthContext = Depends(resolve_session)
    ) -> StatusResponse:
        service.revoke_session(ctx, req.session_id)
        return StatusResponse(status="ok")

    @router.post("/revoke-other-sessions", response_model=RevokedCountResponse)
    def revoke_other_sessions(
        ctx: AuthContext = Depends(resolve_session),
    ) -> RevokedCountResponse:
        return RevokedCountResponse(status="ok", revoked=service.revoke_other_sessions(ctx))

    @router.post("/sign-out", response_model=StatusResponse)
    def sign_out(ctx: AuthContext = Depends(resolve_session)) -> StatusResponse:
        service.sign_out(ctx.session.token)
        return StatusResponse(status="ok")

    @router.post("/delete-user", response_model=StatusResponse)
    def delete_user(
        req: DeleteUserRequest, ctx: AuthContext = Depends(resolve_session)
    ) -> StatusResponse:
        service.delete_account(ctx, req.password)
        return StatusResponse(status="ok")

    return router
