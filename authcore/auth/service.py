"""Authentication orchestrator: sign-up, sign-in flows, recovery and sessions."""

from __future__ import annotations

import logging
from typing import Any, cast

from authcore.auth.challenges import ChallengeEngine
from authcore.auth.errors import (
    FeatureDisabledError,
    InvalidCredentialsError,
    NotFoundError,
    ValidationError,
)
from authcore.auth.flows import (
    EmailOtpFlow,
    FlowContext,
    PasskeyFlow,
    SignInFlow,
    build_flows,
    require_flow,
    verify_code,
)
from authcore.auth.models import (
    AuthContext,
    ChallengePurpose,
    DeviceMeta,
    EmailOtpRequest,
    PasskeyAuthenticationCredential,
    PasskeyAuthenticationOptionsRequest,
    PasskeyCredential,
    PasskeyRegistrationCredential,
    PhoneOtpRequest,
    SendEmailOtpRequest,
    SendMagicLinkRequest,
    SendPhoneOtpRequest,
    Session,
    SignInPasswordRequest,
    SignInResult,
    SignUpResult,
    SocialSignInRequest,
    TokenRequest,
    User,
)
from authcore.auth.notifications import Channel, NotificationDispatcher
from authcore.auth.passkeys import PasskeyVerifier
from authcore.auth.rate_limiter import RateLimiter
from authcore.auth.repository import CredentialStore
from authcore.auth.sessions import SessionManager
from authcore.auth.social import ProviderTokenVerifier, RejectingProviderVerifier
from authcore.core.clock import Clock, system_clock
from authcore.core.config import (
    FEATURE_EMAIL_OTP,
    FEATURE_MAGIC_LINK,
    FEATURE_PASSKEY,
    FEATURE_PASSWORD,
    FEATURE_PHONE_OTP,
    FEATURE_SOCIAL,
    FEATURE_TWO_FACTOR,
    AuthConfig,
)
from authcore.core.security import hash_password
from authcore.core.validators import (
    PasswordPolicy,
    check_password,
    length_password_policy,
    mask_email,
    normalize_email,
    normalize_phone,
)

LOGGER = logging.getLogger(__name__)

ACTION_CHALLENGE_ISSUE = "challenge:issue"
ACTION_SIGN_IN_PASSWORD = "sign-in:password"
ACTION_SIGN_IN_CHALLENGE = "sign-in:challenge"


def _email_subject(email: str) -> str:
    """Throttle key for a sign-in email; malformed input is keyed as typed."""
    try:
        return normalize_email(email)
    except ValidationError:
        return email


class AuthService:
    """Coordinates credential checks, challenges, throttling and sessions.

    No flow keeps state in process memory between requests: multi-step flows
    resume from persisted challenges, so any instance can serve any step.
    """

    def __init__(
        self,
        *,
        config: AuthConfig,
        store: CredentialStore,
        sessions: SessionManager,
        challenges: ChallengeEngine,
        rate_limiter: RateLimiter,
        dispatcher: NotificationDispatcher,
        provider_verifier: ProviderTokenVerifier | None = None,
        password_policy: PasswordPolicy | None = None,
        clock: Clock = system_clock,
    ) -> None:
        """Initialize service dependencies and compose enabled sign-in flows."""
        self._config = config
        self._store = store
        self._sessions = sessions
        self._challenges = challenges
        self._rate_limiter = rate_limiter
        self._dispatcher = dispatcher
        self._clock = clock
        self._password_policy = password_policy or length_password_policy(
            config.password_min_length, config.password_max_length
        )
        self._flows = build_flows(
            config.enabled_features,
            FlowContext(
                config=config,
                store=store,
                challenges=challenges,
                dispatcher=dispatcher,
                passkeys=PasskeyVerifier(
                    rp_id=config.passkey_rp_id,
                    rp_name=config.passkey_rp_name,
                    origins=config.passkey_origins,
                ),
                provider_verifier=provider_verifier or RejectingProviderVerifier(),
            ),
        )
        LOGGER.info(
            "auth_features_enabled",
            extra={"feature": ",".join(sorted(config.enabled_features))},
        )

    @property
    def enabled_features(self) -> frozenset[str]:
        return self._config.enabled_features

    def _flow(self, name: str) -> SignInFlow:
        return require_flow(self._flows, name)

    # Sign-up and primary sign-in factors

    def sign_up(
        self, email: str, password: str, *, name: str = "", device: DeviceMeta | None = None
    ) -> SignUpResult:
        """Create a password account, signing it in when auto sign-in is on."""
        flow = self._flow(FEATURE_PASSWORD)
        normalized = normalize_email(email)
        check_password(password, self._password_policy)
        user = self._store.create_user(normalized, hash_password(password), name=name.strip())
        LOGGER.info("user_signed_up", extra={"user_id": user.user_id})

        if not self._config.auto_sign_in:
            return SignUpResult(user=user)
        user = self._store.update_user(user.user_id, last_login_method=flow.login_method)
        session = self._sessions.create_session(user.user_id, device)
        return SignUpResult(user=user, session=session)

    def sign_in_password(
        self, email: str, password: str, *, device: DeviceMeta | None = None
    ) -> SignInResult:
        flow = self._flow(FEATURE_PASSWORD)
        self._rate_limiter.assert_allowed(ACTION_SIGN_IN_PASSWORD, _email_subject(email))
        user = flow.authenticate(SignInPasswordRequest(email=email, password=password))
        return self._complete_sign_in(user, flow, device)

    def send_email_otp(self, email: str, *, type: str = "sign-in") -> None:
        flow = self._flow(FEATURE_EMAIL_OTP)
        email = normalize_email(email)
        self._rate_limiter.assert_allowed(ACTION_CHALLENGE_ISSUE, email)
        flow.start(SendEmailOtpRequest(email=email, type=cast(Any, type)))

    def sign_in_email_otp(
        self, email: str, otp: str, *, device: DeviceMeta | None = None
    ) -> SignInResult:
        flow = self._flow(FEATURE_EMAIL_OTP)
        email = normalize_email(email)
        self._rate_limiter.assert_allowed(ACTION_SIGN_IN_CHALLENGE, email)
        user = flow.authenticate(EmailOtpRequest(email=email, otp=otp))
        return self._complete_sign_in(user, flow, device)

    def verify_challenge(self, email: str, otp: str) -> User:
        """Confirm an email-verification code sent to an existing account."""
        flow = cast(EmailOtpFlow, self._flow(FEATURE_EMAIL_OTP))
        email = normalize_email(email)
        self._rate_limiter.assert_allowed(ACTION_SIGN_IN_CHALLENGE, email)
        return flow.verify_email(EmailOtpRequest(email=email, otp=otp))

    def send_phone_otp(self, phone_number: str) -> None:
        flow = self._flow(FEATURE_PHONE_OTP)
        phone_number = normalize_phone(phone_number)
        self._rate_limiter.assert_allowed(ACTION_CHALLENGE_ISSUE, phone_number)
        flow.start(SendPhoneOtpRequest(phone_number=phone_number))

    def sign_in_phone_otp(
        self, phone_number: str, code: str, *, device: DeviceMeta | None = None
    ) -> SignInResult:
        flow = self._flow(FEATURE_PHONE_OTP)
        phone_number = normalize_phone(phone_number)
        self._rate_limiter.assert_allowed(ACTION_SIGN_IN_CHALLENGE, phone_number)
        user = flow.authenticate(PhoneOtpRequest(phone_number=phone_number, code=code))
        return self._complete_sign_in(user, flow, device)

    def send_magic_link(self, email: str, *, callback_url: str = "") -> None:
        flow = self._flow(FEATURE_MAGIC_LINK)
        email = normalize_email(email)
        self._rate_limiter.assert_allowed(ACTION_CHALLENGE_ISSUE, email)
        flow.start(SendMagicLinkRequest(email=email, callback_url=callback_url))

    def sign_in_magic_link(self, token: str, *, device: DeviceMeta | None = None) -> SignInResult:
        flow = self._flow(FEATURE_MAGIC_LINK)
        user = flow.authenticate(TokenRequest(token=token))
        return self._complete_sign_in(user, flow, device)

    def passkey_authentication_start(self, email: str = "", *, client_ip: str = "") -> dict[str, Any]:
        flow = self._flow(FEATURE_PASSKEY)
        subject = normalize_email(email) if email else client_ip
        self._rate_limiter.assert_allowed(ACTION_CHALLENGE_ISSUE, subject)
        return flow.start(PasskeyAuthenticationOptionsRequest(email=email))

    def passkey_authentication_finish(
        self, credential: PasskeyAuthenticationCredential, *, device: DeviceMeta | None = None
    ) -> SignInResult:
        flow = self._flow(FEATURE_PASSKEY)
        user = flow.authenticate(credential)
        return self._complete_sign_in(user, flow, device)

    def sign_in_social(
        self, provider: str, id_token: str, *, device: DeviceMeta | None = None
    ) -> SignInResult:
        flow = self._flow(FEATURE_SOCIAL)
        user = flow.authenticate(SocialSignInRequest(provider=provider, id_token=id_token))
        return self._complete_sign_in(user, flow, device)

    # Passkey management

    def register_passkey_start(self, ctx: AuthContext) -> dict[str, Any]:
        flow = cast(PasskeyFlow, self._flow(FEATURE_PASSKEY))
        self._rate_limiter.assert_allowed(ACTION_CHALLENGE_ISSUE, ctx.user.user_id)
        return flow.registration_start(ctx.user)

    def register_passkey_finish(
        self, ctx: AuthContext, credential: PasskeyRegistrationCredential
    ) -> PasskeyCredential:
        flow = cast(PasskeyFlow, self._flow(FEATURE_PASSKEY))
        return flow.registration_finish(ctx.user, credential)

    def list_passkeys(self, ctx: AuthContext) -> list[PasskeyCredential]:
        return self._store.list_passkeys(ctx.user.user_id)

    def revoke_passkey(self, ctx: AuthContext, passkey_id: str) -> None:
        self._store.revoke_passkey(ctx.user.user_id, passkey_id)
        LOGGER.info("passkey_revoked", extra={"user_id": ctx.user.user_id})

    # Two-factor escalation

    def enable_two_factor(self, ctx: AuthContext, password: str) -> User:
        self._require_two_factor_feature()
        self._confirm_password(ctx.user, password)
        return self._store.update_user(ctx.user.user_id, two_factor_enabled=True)

    def disable_two_factor(self, ctx: AuthContext, password: str) -> User:
        self._require_two_factor_feature()
        self._confirm_password(ctx.user, password)
        return self._store.update_user(ctx.user.user_id, two_factor_enabled=False)

    def send_two_factor_otp(self, two_factor_token: str) -> None:
        """Deliver a second-factor code for a pending sign-in."""
        self._require_two_factor_feature()
        pending = self._challenges.get_active(ChallengePurpose.TWO_FACTOR, two_factor_token)
        user = self._store.get_user(pending.subject)
        if user is None:
            raise InvalidCredentialsError()
        self._rate_limiter.assert_allowed(ACTION_CHALLENGE_ISSUE, user.user_id)
        issued = self._challenges.issue(
            ChallengePurpose.TWO_FACTOR_OTP, user.user_id, user_id=user.user_id
        )
        self._dispatcher.dispatch(
            Channel.EMAIL, user.email, f"Your sign-in code is {issued.secret}"
        )

    def verify_two_factor(
        self, two_factor_token: str, code: str, *, device: DeviceMeta | None = None
    ) -> SignInResult:
        """Finish a pending sign-in with the second factor and issue the session."""
        self._require_two_factor_feature()
        pending = self._challenges.get_active(ChallengePurpose.TWO_FACTOR, two_factor_token)
        self._rate_limiter.assert_allowed(ACTION_SIGN_IN_CHALLENGE, pending.subject)
        verify_code(self._challenges, ChallengePurpose.TWO_FACTOR_OTP, pending.subject, code)
        try:
            pending = self._challenges.redeem(ChallengePurpose.TWO_FACTOR, two_factor_token)
        except NotFoundError as exc:
            raise InvalidCredentialsError() from exc

        user = self._store.get_user(pending.subject)
        if user is None:
            raise InvalidCredentialsError()
        return self._issue_session(user, str(pending.payload.get("method") or ""), device)

    def _require_two_factor_feature(self) -> None:
        if FEATURE_TWO_FACTOR not in self._config.enabled_features:
            raise FeatureDisabledError("two-factor is not enabled")

    # Account recovery

    def request_password_reset(self, email: str) -> None:
        """Send a reset link when the account exists; silent otherwise."""
        self._flow(FEATURE_PASSWORD)
        normalized = normalize_email(email)
        self._rate_limiter.assert_allowed(ACTION_CHALLENGE_ISSUE, normalized)
        user = self._store.get_user_by_email(normalized)
        if user is None:
            LOGGER.info("password_reset_unknown_email", extra={"email": mask_email(normalized)})
            return
        issued = self._challenges.issue(
            ChallengePurpose.PASSWORD_RESET, user.user_id, user_id=user.user_id
        )
        url = f"{self._config.password_reset_base_url}?token={issued.secret}"
        self._dispatcher.dispatch(Channel.EMAIL, user.email, f"Reset your password: {url}")

    def reset_password(self, token: str, new_password: str) -> None:
        """Set a new password from a reset link and sign the user out everywhere."""
        check_password(new_password, self._password_policy)
        try:
            challenge = self._challenges.redeem(ChallengePurpose.PASSWORD_RESET, token)
        except NotFoundError as exc:
            raise InvalidCredentialsError() from exc
        user = self._store.get_user(challenge.subject)
        if user is None:
            raise InvalidCredentialsError()
        self._store.update_user(user.user_id, password_hash=hash_password(new_password))
        self._sessions.revoke_all(user.user_id)
        LOGGER.info("password_reset_completed", extra={"user_id": user.user_id})

    # Sessions

    def validate_session(self, token: str) -> AuthContext:
        """Resolve a bearer token to its session and user."""
        session = self._sessions.validate_session(token)
        user = self._store.get_user(session.user_id)
        if user is None:
            self._sessions.revoke(token)
            raise NotFoundError("Session not found")
        return AuthContext(session=session, user=user)

    def list_sessions(self, ctx: AuthContext) -> list[Session]:
        return self._sessions.list_sessions(ctx.user.user_id)

    def revoke_session(self, ctx: AuthContext, session_id: str) -> None:
        self._sessions.revoke_by_id(ctx.user.user_id, session_id)

    def revoke_other_sessions(self, ctx: AuthContext) -> int:
        return self._sessions.revoke_all_except(ctx.user.user_id, ctx.session.token)

    def sign_out(self, token: str) -> None:
        self._sessions.revoke(token)

    def delete_account(self, ctx: AuthContext, password: str = "") -> None:
        """Soft-delete the account after re-confirming the password when it has one."""
        if ctx.user.password_hash:
            self._confirm_password(ctx.user, password)
        user_id = ctx.user.user_id
        self._sessions.revoke_all(user_id)
        self._store.revoke_all_passkeys(user_id)
        self._store.soft_delete_user(user_id)
        LOGGER.info("account_deleted", extra={"user_id": user_id})

    def sweep(self, *, rate_limit_grace_seconds: int = 60) -> dict[str, int]:
        """Purge expired runtime records and revoke long-idle passkeys."""
        result = {
            "sessions": self._sessions.sweep_expired(),
            "challenges": self._challenges.sweep_expired(),
            "rate_limit_buckets": self._rate_limiter.sweep(rate_limit_grace_seconds),
            "passkeys": 0,
        }
        if self._config.passkey_inactivity_days > 0:
            idle_before = self._clock() - self._config.passkey_inactivity_days * 86400
            result["passkeys"] = self._store.revoke_inactive_passkeys(idle_before)
        return result

    # Internals

    def _confirm_password(self, user: User, password: str) -> None:
        if not user.password_hash:
            raise ValidationError("Account has no password")
        if not self._store.verify_password(user, password):
            raise InvalidCredentialsError()

    def _complete_sign_in(
        self, user: User, flow: SignInFlow, device: DeviceMeta | None
    ) -> SignInResult:
        if user.two_factor_enabled and FEATURE_TWO_FACTOR in self._config.enabled_features:
            issued = self._challenges.issue(
                ChallengePurpose.TWO_FACTOR,
                user.user_id,
                user_id=user.user_id,
                payload={"method": flow.login_method},
            )
            LOGGER.info("two_factor_required", extra={"user_id": user.user_id})
            return SignInResult(status="two_factor_required", two_factor_token=issued.secret)
        return self._issue_session(user, flow.login_method, device)

    def _issue_session(
        self, user: User, method: str, device: DeviceMeta | None
    ) -> SignInResult:
        if method and method != user.last_login_method:
            user = self._store.update_user(user.user_id, last_login_method=method)
        session = self._sessions.create_session(user.user_id, device)
        LOGGER.info(
            "user_signed_in",
            extra={"user_id": user.user_id, "session_id": session.session_id, "feature": method},
        )
        return SignInResult(status="authenticated", user=user, session=session)

