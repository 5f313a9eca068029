"""Sign-in methods as named strategies composed at startup.

Each enabled feature contributes one :class:`SignInFlow`. A flow proves the
primary factor and returns the matching :class:`User`; what happens next
(two-factor escalation, session issuance) is decided by the orchestrator, so
flows never touch sessions.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, ClassVar
from urllib.parse import urlencode

from authcore.auth.challenges import ChallengeEngine
from authcore.auth.errors import (
    ConflictError,
    FeatureDisabledError,
    InvalidCredentialsError,
    MismatchError,
    NotFoundError,
    ValidationError,
)
from authcore.auth.models import (
    ChallengePurpose,
    EmailOtpRequest,
    PasskeyAuthenticationCredential,
    PasskeyAuthenticationOptionsRequest,
    PasskeyCredential,
    PasskeyRegistrationCredential,
    PasskeyStatus,
    PhoneOtpRequest,
    SendEmailOtpRequest,
    SendMagicLinkRequest,
    SendPhoneOtpRequest,
    SignInPasswordRequest,
    SocialSignInRequest,
    TokenRequest,
    User,
)
from authcore.auth.notifications import Channel, NotificationDispatcher
from authcore.auth.passkeys import PasskeyVerifier
from authcore.auth.repository import CredentialStore
from authcore.auth.social import ProviderTokenVerifier
from authcore.core.config import (
    FEATURE_EMAIL_OTP,
    FEATURE_MAGIC_LINK,
    FEATURE_PASSKEY,
    FEATURE_PASSWORD,
    FEATURE_PHONE_OTP,
    FEATURE_SOCIAL,
    AuthConfig,
)
from authcore.core.validators import mask_email, normalize_email, normalize_phone

LOGGER = logging.getLogger(__name__)

PASSKEY_DISCOVERABLE_SUBJECT = "*"


@dataclass(frozen=True)
class FlowContext:
    """Collaborators shared by all flows."""

    config: AuthConfig
    store: CredentialStore
    challenges: ChallengeEngine
    dispatcher: NotificationDispatcher
    passkeys: PasskeyVerifier
    provider_verifier: ProviderTokenVerifier


def verify_code(
    challenges: ChallengeEngine, purpose: ChallengePurpose, subject: str, code: str
) -> None:
    """Verify a numeric code, hiding whether the code was wrong or absent."""
    try:
        challenges.verify(purpose, subject, code)
    except (MismatchError, NotFoundError) as exc:
        raise InvalidCredentialsError() from exc


def find_or_create_user(store: CredentialStore, email: str, **fields: Any) -> User:
    """Return the live user for ``email``, creating it on first sign-in."""
    user = store.get_user_by_email(email)
    if user is not None:
        return user
    try:
        return store.create_user(email, **fields)
    except ConflictError:
        # Lost a creation race with a concurrent sign-in for the same email.
        user = store.get_user_by_email(email)
        if user is None:
            raise
        return user


class SignInFlow(ABC):
    """Common interface of every sign-in method."""

    name: ClassVar[str]
    login_method: ClassVar[str]

    def __init__(self, ctx: FlowContext) -> None:
        self.ctx = ctx

    def start(self, request: Any) -> dict[str, Any]:
        """Begin a multi-step sign-in (send a code, issue a ceremony challenge)."""
        raise ValidationError(f"{self.name} sign-in has no start step")

    @abstractmethod
    def authenticate(self, request: Any) -> User:
        """Prove the primary factor and return the user it identifies."""


class PasswordFlow(SignInFlow):
    name = FEATURE_PASSWORD
    login_method = "email"

    def authenticate(self, request: SignInPasswordRequest) -> User:
        try:
            email = normalize_email(request.email)
        except ValidationError as exc:
            raise InvalidCredentialsError() from exc
        user = self.ctx.store.get_user_by_email(email)
        # The hash comparison runs for unknown emails too.
        if not self.ctx.store.verify_password(user, request.password) or user is None:
            raise InvalidCredentialsError()
        return user


class EmailOtpFlow(SignInFlow):
    name = FEATURE_EMAIL_OTP
    login_method = "email-otp"

    def start(self, request: SendEmailOtpRequest) -> dict[str, Any]:
        email = normalize_email(request.email)
        if request.type == "email-verification":
            purpose = ChallengePurpose.EMAIL_VERIFICATION
            user = self.ctx.store.get_user_by_email(email)
            if user is None or user.email_verified:
                return {"status": "sent"}
        else:
            purpose = ChallengePurpose.OTP
        issued = self.ctx.challenges.issue(purpose, email)
        minutes = max(1, self.ctx.config.otp_ttl_seconds // 60)
        self.ctx.dispatcher.dispatch(
            Channel.EMAIL,
            email,
            f"Your verification code is {issued.secret}. It expires in {minutes} minutes.",
        )
        return {"status": "sent"}

    def authenticate(self, request: EmailOtpRequest) -> User:
        email = normalize_email(request.email)
        verify_code(self.ctx.challenges, ChallengePurpose.OTP, email, request.otp)
        user = find_or_create_user(self.ctx.store, email, email_verified=True)
        if not user.email_verified:
            user = self.ctx.store.update_user(user.user_id, email_verified=True)
        return user

    def verify_email(self, request: EmailOtpRequest) -> User:
        """Confirm ownership of an existing account's email address."""
        email = normalize_email(request.email)
        verify_code(self.ctx.challenges, ChallengePurpose.EMAIL_VERIFICATION, email, request.otp)
        user = self.ctx.store.get_user_by_email(email)
        if user is None:
            raise InvalidCredentialsError()
        return self.ctx.store.update_user(user.user_id, email_verified=True)


class PhoneOtpFlow(SignInFlow):
    name = FEATURE_PHONE_OTP
    login_method = "phone-number"

    def start(self, request: SendPhoneOtpRequest) -> dict[str, Any]:
        phone = normalize_phone(request.phone_number)
        issued = self.ctx.challenges.issue(ChallengePurpose.OTP, phone)
        self.ctx.dispatcher.dispatch(
            Channel.SMS, phone, f"Your verification code is {issued.secret}"
        )
        return {"status": "sent"}

    def authenticate(self, request: PhoneOtpRequest) -> User:
        phone = normalize_phone(request.phone_number)
        verify_code(self.ctx.challenges, ChallengePurpose.OTP, phone, request.code)
        user = self.ctx.store.get_user_by_phone(phone)
        if user is None:
            placeholder = f"{phone.lstrip('+')}@phone.invalid"
            user = find_or_create_user(
                self.ctx.store, placeholder, phone=phone, phone_verified=True
            )
        elif not user.phone_verified:
            user = self.ctx.store.update_user(user.user_id, phone_verified=True)
        return user


class MagicLinkFlow(SignInFlow):
    name = FEATURE_MAGIC_LINK
    login_method = "magic-link"

    def start(self, request: SendMagicLinkRequest) -> dict[str, Any]:
        email = normalize_email(request.email)
        issued = self.ctx.challenges.issue(
            ChallengePurpose.MAGIC_LINK,
            email,
            payload={"callback_url": request.callback_url},
        )
        query = {"token": issued.secret}
        if request.callback_url:
            query["callbackURL"] = request.callback_url
        url = f"{self.ctx.config.magic_link_base_url}?{urlencode(query)}"
        self.ctx.dispatcher.dispatch(Channel.EMAIL, email, f"Sign in: {url}")
        LOGGER.info("magic_link_sent", extra={"email": mask_email(email)})
        return {"status": "sent"}

    def authenticate(self, request: TokenRequest) -> User:
        try:
            challenge = self.ctx.challenges.redeem(ChallengePurpose.MAGIC_LINK, request.token)
        except NotFoundError as exc:
            raise InvalidCredentialsError() from exc
        user = find_or_create_user(self.ctx.store, challenge.subject, email_verified=True)
        if not user.email_verified:
            user = self.ctx.store.update_user(user.user_id, email_verified=True)
        return user


class PasskeyFlow(SignInFlow):
    name = FEATURE_PASSKEY
    login_method = "passkey"

    def start(self, request: PasskeyAuthenticationOptionsRequest) -> dict[str, Any]:
        allowed: list[PasskeyCredential] = []
        user_id = None
        subject = PASSKEY_DISCOVERABLE_SUBJECT
        if request.email:
            subject = normalize_email(request.email)
            user = self.ctx.store.get_user_by_email(subject)
            if user is not None:
                user_id = user.user_id
                allowed = self.ctx.store.list_passkeys(user.user_id)
        issued = self.ctx.challenges.issue(
            ChallengePurpose.PASSKEY_AUTHENTICATION, subject, user_id=user_id
        )
        return self.ctx.passkeys.authentication_options(
            issued.secret, allowed, self._timeout_ms()
        )

    def authenticate(self, request: PasskeyAuthenticationCredential) -> User:
        passkeys = self.ctx.passkeys
        challenge_value = passkeys.read_assertion_challenge(request)
        try:
            challenge = self.ctx.challenges.redeem(
                ChallengePurpose.PASSKEY_AUTHENTICATION, challenge_value
            )
        except NotFoundError as exc:
            raise InvalidCredentialsError() from exc

        stored = self.ctx.store.find_passkey_by_credential_id(request.id)
        if stored is None or stored.status != PasskeyStatus.ACTIVE:
            raise InvalidCredentialsError()
        if challenge.user_id and challenge.user_id != stored.user_id:
            raise InvalidCredentialsError()

        assertion = passkeys.verify_assertion(request, stored)
        if assertion.sign_count == 0 and stored.sign_count == 0:
            # Authenticator keeps no counter (synced passkeys); nothing to compare.
            self.ctx.store.touch_passkey(stored.credential_id)
        else:
            self.ctx.store.update_sign_counter(stored.credential_id, assertion.sign_count)

        user = self.ctx.store.get_user(stored.user_id)
        if user is None:
            raise InvalidCredentialsError()
        return user

    def registration_start(self, user: User) -> dict[str, Any]:
        issued = self.ctx.challenges.issue(
            ChallengePurpose.PASSKEY_REGISTRATION, user.user_id, user_id=user.user_id
        )
        existing = self.ctx.store.list_passkeys(user.user_id)
        return self.ctx.passkeys.registration_options(
            user, issued.secret, existing, self._timeout_ms()
        )

    def registration_finish(
        self, user: User, request: PasskeyRegistrationCredential
    ) -> PasskeyCredential:
        verified = self.ctx.passkeys.verify_registration(request)
        try:
            challenge = self.ctx.challenges.redeem(
                ChallengePurpose.PASSKEY_REGISTRATION, verified.challenge
            )
        except NotFoundError as exc:
            raise InvalidCredentialsError() from exc
        if challenge.user_id != user.user_id:
            raise InvalidCredentialsError()

        passkey = self.ctx.store.add_passkey_credential(
            user_id=user.user_id,
            credential_id=verified.credential_id,
            public_key=verified.public_key,
            algorithm=verified.algorithm,
            sign_count=verified.sign_count,
            name=request.name,
            platform=request.platform,
            transports=request.transports,
        )
        LOGGER.info("passkey_registered", extra={"user_id": user.user_id})
        return passkey

    def _timeout_ms(self) -> int:
        return self.ctx.config.passkey_challenge_ttl_seconds * 1000


class SocialFlow(SignInFlow):
    name = FEATURE_SOCIAL
    login_method = "social"

    def authenticate(self, request: SocialSignInRequest) -> User:
        provider = request.provider.strip().lower()
        identity = self.ctx.provider_verifier.verify_provider_token(provider, request.id_token)
        store = self.ctx.store

        user_id = store.find_account(provider, identity.external_id)
        if user_id is not None:
            user = store.get_user(user_id)
            if user is None:
                raise InvalidCredentialsError()
            return user

        email = normalize_email(identity.email)
        user = store.get_user_by_email(email)
        if user is None:
            user = find_or_create_user(
                store, email, name=identity.name, email_verified=identity.email_verified
            )
        elif not identity.email_verified:
            # Existing accounts are linked only through a verified provider email.
            raise ConflictError("Account exists; sign in with its original method first")
        store.link_account(user.user_id, provider, identity.external_id)
        return user


FLOW_TYPES: dict[str, type[SignInFlow]] = {
    flow.name: flow
    for flow in (PasswordFlow, EmailOtpFlow, PhoneOtpFlow, MagicLinkFlow, PasskeyFlow, SocialFlow)
}


def build_flows(enabled: frozenset[str], ctx: FlowContext) -> dict[str, SignInFlow]:
    """Instantiate the sign-in strategies for the enabled feature names."""
    return {name: flow_type(ctx) for name, flow_type in FLOW_TYPES.items() if name in enabled}


def require_flow(flows: dict[str, SignInFlow], name: str) -> SignInFlow:
    flow = flows.get(name)
    if flow is None:
        raise FeatureDisabledError(f"{name} sign-in is not enabled")
    return flow
