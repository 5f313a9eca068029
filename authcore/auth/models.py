"""Pydantic models for authentication domain."""

from __future__ import annotations

from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class PasskeyStatus(StrEnum):
    ACTIVE = "active"
    REVOKED = "revoked"


class ChallengePurpose(StrEnum):
    """What a one-time challenge authorizes once verified."""

    OTP = "otp"
    MAGIC_LINK = "magic-link"
    PASSKEY_REGISTRATION = "passkey-reg"
    PASSKEY_AUTHENTICATION = "passkey-auth"
    EMAIL_VERIFICATION = "email-verification"
    PASSWORD_RESET = "password-reset"
    TWO_FACTOR = "two-factor"
    TWO_FACTOR_OTP = "two-factor-otp"


NUMERIC_CODE_PURPOSES = frozenset(
    {
        ChallengePurpose.OTP,
        ChallengePurpose.EMAIL_VERIFICATION,
        ChallengePurpose.TWO_FACTOR_OTP,
    }
)


class User(BaseModel):
    """Persisted auth user model."""

    user_id: str
    email: str
    name: str = ""
    password_hash: str | None = None
    phone: str | None = None
    email_verified: bool = False
    phone_verified: bool = False
    two_factor_enabled: bool = False
    last_login_method: str = ""
    created_at: int
    updated_at: int
    deleted_at: int | None = None

    def public_view(self) -> dict[str, Any]:
        """Return user fields safe to send to clients."""
        return {
            "id": self.user_id,
            "email": self.email,
            "name": self.name,
            "phone_number": self.phone or "",
            "email_verified": self.email_verified,
            "phone_number_verified": self.phone_verified,
            "two_factor_enabled": self.two_factor_enabled,
            "last_login_method": self.last_login_method,
        }


class DeviceMeta(BaseModel):
    """Client device details captured with a session."""

    ip_address: str = ""
    user_agent: str = ""


class Session(BaseModel):
    """Live session record. ``token`` is only populated for the bearer."""

    session_id: str
    user_id: str
    token: str = ""
    created_at: int
    expires_at: int
    last_seen_at: int
    ip_address: str = ""
    user_agent: str = ""


class PasskeyCredential(BaseModel):
    """Registered public-key credential."""

    passkey_id: str
    user_id: str
    credential_id: str
    public_key: str
    algorithm: int
    sign_count: int = 0
    name: str = ""
    platform: str = ""
    transports: list[str] = Field(default_factory=list)
    status: PasskeyStatus = PasskeyStatus.ACTIVE
    created_at: int
    last_used_at: int | None = None

    def public_view(self) -> dict[str, Any]:
        return {
            "id": self.passkey_id,
            "credential_id": self.credential_id,
            "name": self.name,
            "platform": self.platform,
            "status": str(self.status),
            "created_at": self.created_at,
            "last_used_at": self.last_used_at,
        }


class Challenge(BaseModel):
    """One-time artifact record. The secret itself is never stored."""

    challenge_id: str
    purpose: ChallengePurpose
    subject: str
    user_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    attempts: int = 0
    created_at: int
    expires_at: int
    consumed_at: int | None = None


class IssuedChallenge(BaseModel):
    """Freshly issued challenge together with its plaintext secret."""

    challenge: Challenge
    secret: str


class ProviderIdentity(BaseModel):
    """Identity asserted by an external sign-in provider."""

    external_id: str
    email: str
    email_verified: bool = False
    name: str = ""


class SignInResult(BaseModel):
    """Outcome of a primary sign-in factor."""

    status: Literal["authenticated", "two_factor_required"]
    user: User | None = None
    session: Session | None = None
    two_factor_token: str = ""


class SignUpResult(BaseModel):
    user: User
    session: Session | None = None


class AuthContext(BaseModel):
    """Session and user resolved once per request."""

    session: Session
    user: User


class _RequestModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


class SignUpRequest(_RequestModel):
    email: str = Field(min_length=3)
    password: str = Field(min_length=1)
    name: str = ""


class SignInPasswordRequest(_RequestModel):
    email: str = Field(min_length=3)
    password: str = Field(min_length=1)


class SendEmailOtpRequest(_RequestModel):
    email: str = Field(min_length=3)
    type: Literal["sign-in", "email-verification"] = "sign-in"


class EmailOtpRequest(_RequestModel):
    email: str = Field(min_length=3)
    otp: str = Field(min_length=1)


class SendPhoneOtpRequest(_RequestModel):
    phone_number: str = Field(min_length=3)


class PhoneOtpRequest(_RequestModel):
    phone_number: str = Field(min_length=3)
    code: str = Field(min_length=1)


class SendMagicLinkRequest(_RequestModel):
    email: str = Field(min_length=3)
    callback_url: str = ""


class TokenRequest(_RequestModel):
    token: str = Field(min_length=1)


class SocialSignInRequest(_RequestModel):
    provider: str = Field(min_length=1)
    id_token: str = Field(min_length=1)


class PasswordConfirmRequest(_RequestModel):
    password: str = Field(min_length=1)


class TwoFactorVerifyRequest(_RequestModel):
    two_factor_token: str = Field(min_length=1)
    code: str = Field(min_length=1)


class TwoFactorSendRequest(_RequestModel):
    two_factor_token: str = Field(min_length=1)


class ForgetPasswordRequest(_RequestModel):
    email: str = Field(min_length=3)


class ResetPasswordRequest(_RequestModel):
    token: str = Field(min_length=1)
    new_password: str = Field(min_length=1)


class RevokeSessionRequest(_RequestModel):
    session_id: str = Field(min_length=1)


class RevokePasskeyRequest(_RequestModel):
    passkey_id: str = Field(min_length=1)


class PasskeyAuthenticationOptionsRequest(_RequestModel):
    email: str = ""


class PasskeyRegistrationCredential(_RequestModel):
    """Registration ceremony response (WebAuthn JSON encoding, base64url fields)."""

    id: str = Field(min_length=1)
    client_data_json: str = Field(min_length=1)
    authenticator_data: str = Field(min_length=1)
    public_key: str = Field(min_length=1)
    public_key_algorithm: int
    transports: list[str] = Field(default_factory=list)
    name: str = ""
    platform: str = ""


class PasskeyAuthenticationCredential(_RequestModel):
    """Authentication ceremony response (WebAuthn JSON encoding, base64url fields)."""

    id: str = Field(min_length=1)
    client_data_json: str = Field(min_length=1)
    authenticator_data: str = Field(min_length=1)
    signature: str = Field(min_length=1)
    user_handle: str = ""


class DeleteUserRequest(_RequestModel):
    password: str = ""
