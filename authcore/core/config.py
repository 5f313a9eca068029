"""Application configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass, field

EVICTION_POLICY_EVICT_OLDEST = "evict_oldest"
EVICTION_POLICY_REJECT = "reject"

FEATURE_PASSWORD = "password"
FEATURE_EMAIL_OTP = "email-otp"
FEATURE_PHONE_OTP = "phone-otp"
FEATURE_MAGIC_LINK = "magic-link"
FEATURE_PASSKEY = "passkey"
FEATURE_SOCIAL = "social"
FEATURE_TWO_FACTOR = "two-factor"
ALL_FEATURES = frozenset(
    {
        FEATURE_PASSWORD,
        FEATURE_EMAIL_OTP,
        FEATURE_PHONE_OTP,
        FEATURE_MAGIC_LINK,
        FEATURE_PASSKEY,
        FEATURE_SOCIAL,
        FEATURE_TWO_FACTOR,
    }
)


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def _env_list(name: str, default: str) -> list[str]:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


@dataclass(frozen=True)
class RateLimitRule:
    """Fixed-window limit for one action."""

    window_seconds: int
    max_requests: int


@dataclass(frozen=True)
class AuthConfig:
    """Authentication-related configuration."""

    session_max_age_seconds: int = 60 * 60 * 24 * 30
    session_update_age_seconds: int = 60 * 60 * 24
    maximum_sessions: int = 5
    session_eviction_policy: str = EVICTION_POLICY_EVICT_OLDEST
    auto_sign_in: bool = True
    password_min_length: int = 8
    password_max_length: int = 128
    otp_length: int = 6
    otp_ttl_seconds: int = 300
    otp_max_attempts: int = 3
    magic_link_ttl_seconds: int = 300
    magic_link_base_url: str = "http://localhost:3000/api/auth/magic-link/verify"
    password_reset_ttl_seconds: int = 3600
    password_reset_base_url: str = "http://localhost:8081/reset-password"
    two_factor_ttl_seconds: int = 600
    passkey_challenge_ttl_seconds: int = 300
    passkey_rp_id: str = "localhost"
    passkey_rp_name: str = "Auth Core"
    passkey_origins: tuple[str, ...] = ("http://localhost:8081",)
    passkey_inactivity_days: int = 0
    delivery_timeout_seconds: float = 10.0
    enabled_features: frozenset[str] = field(default_factory=lambda: ALL_FEATURES)


@dataclass(frozen=True)
class StorageConfig:
    """Runtime storage locations."""

    sqlite_path: str = "runtime/auth_state.db"
    busy_timeout_seconds: float = 5.0
    mongo_uri: str = ""
    mongo_db: str = "authcore"


@dataclass(frozen=True)
class LoggingConfig:
    """Structured logging configuration."""

    level: str = "INFO"


@dataclass(frozen=True)
class SecurityConfig:
    """API perimeter security settings."""

    cors_allowed_origins: list[str] = field(
        default_factory=lambda: ["http://localhost:8081"]
    )
    request_max_bytes: int = 1024 * 1024
    rate_limits: dict[str, RateLimitRule] = field(
        default_factory=lambda: {
            "challenge:issue": RateLimitRule(window_seconds=300, max_requests=3),
            "sign-in:password": RateLimitRule(window_seconds=60, max_requests=10),
            "sign-in:challenge": RateLimitRule(window_seconds=300, max_requests=10),
        }
    )
    rate_limit_grace_seconds: int = 60


@dataclass(frozen=True)
class AppConfig:
    """Top-level application configuration."""

    auth: AuthConfig = field(default_factory=AuthConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)

    @staticmethod
    def from_env() -> "AppConfig":
        """Build app config from process environment."""
        eviction_policy = (
            os.getenv("AUTH_SESSION_EVICTION_POLICY", EVICTION_POLICY_EVICT_OLDEST)
            .strip()
            .lower()
        )
        if eviction_policy not in {EVICTION_POLICY_EVICT_OLDEST, EVICTION_POLICY_REJECT}:
            raise ValueError(f"Unknown session eviction policy: {eviction_policy}")

        features = frozenset(
            item.lower()
            for item in _env_list("AUTH_ENABLED_FEATURES", ",".join(sorted(ALL_FEATURES)))
        )
        unknown = features - ALL_FEATURES
        if unknown:
            raise ValueError(f"Unknown auth features: {', '.join(sorted(unknown))}")

        rate_limits = {
            "challenge:issue": RateLimitRule(
                window_seconds=int(os.getenv("RATE_LIMIT_CHALLENGE_WINDOW_SECONDS", "300")),
                max_requests=int(os.getenv("RATE_LIMIT_CHALLENGE_MAX", "3")),
            ),
            "sign-in:password": RateLimitRule(
                window_seconds=int(os.getenv("RATE_LIMIT_SIGN_IN_WINDOW_SECONDS", "60")),
                max_requests=int(os.getenv("RATE_LIMIT_SIGN_IN_MAX", "10")),
            ),
            "sign-in:challenge": RateLimitRule(
                window_seconds=int(os.getenv("RATE_LIMIT_VERIFY_WINDOW_SECONDS", "300")),
                max_requests=int(os.getenv("RATE_LIMIT_VERIFY_MAX", "10")),
            ),
        }

        return AppConfig(
            auth=AuthConfig(
                session_max_age_seconds=int(
                    os.getenv("AUTH_SESSION_MAX_AGE_SECONDS", str(60 * 60 * 24 * 30))
                ),
                session_update_age_seconds=int(
                    os.getenv("AUTH_SESSION_UPDATE_AGE_SECONDS", str(60 * 60 * 24))
                ),
                maximum_sessions=int(os.getenv("AUTH_MAXIMUM_SESSIONS", "5")),
                session_eviction_policy=eviction_policy,
                auto_sign_in=_env_flag("AUTH_AUTO_SIGN_IN", "1"),
                password_min_length=int(os.getenv("AUTH_PASSWORD_MIN_LENGTH", "8")),
                password_max_length=int(os.getenv("AUTH_PASSWORD_MAX_LENGTH", "128")),
                otp_length=int(os.getenv("AUTH_OTP_LENGTH", "6")),
                otp_ttl_seconds=int(os.getenv("AUTH_OTP_TTL_SECONDS", "300")),
                otp_max_attempts=int(os.getenv("AUTH_OTP_MAX_ATTEMPTS", "3")),
                magic_link_ttl_seconds=int(os.getenv("AUTH_MAGIC_LINK_TTL_SECONDS", "300")),
                magic_link_base_url=os.getenv(
                    "AUTH_MAGIC_LINK_BASE_URL",
                    "http://localhost:3000/api/auth/magic-link/verify",
                ).strip(),
                password_reset_ttl_seconds=int(
                    os.getenv("AUTH_PASSWORD_RESET_TTL_SECONDS", "3600")
                ),
                password_reset_base_url=os.getenv(
                    "AUTH_PASSWORD_RESET_BASE_URL", "http://localhost:8081/reset-password"
                ).strip(),
                two_factor_ttl_seconds=int(os.getenv("AUTH_TWO_FACTOR_TTL_SECONDS", "600")),
                passkey_challenge_ttl_seconds=int(
                    os.getenv("AUTH_PASSKEY_CHALLENGE_TTL_SECONDS", "300")
                ),
                passkey_rp_id=os.getenv("AUTH_PASSKEY_RP_ID", "localhost").strip(),
                passkey_rp_name=os.getenv("AUTH_PASSKEY_RP_NAME", "Auth Core").strip(),
                passkey_origins=tuple(
                    _env_list("AUTH_PASSKEY_ORIGINS", "http://localhost:8081")
                ),
                passkey_inactivity_days=int(os.getenv("AUTH_PASSKEY_INACTIVITY_DAYS", "0")),
                delivery_timeout_seconds=float(
                    os.getenv("AUTH_DELIVERY_TIMEOUT_SECONDS", "10")
                ),
                enabled_features=features,
            ),
            storage=StorageConfig(
                sqlite_path=(
                    os.getenv("AUTH_SQLITE_PATH", "runtime/auth_state.db").strip()
                    or "runtime/auth_state.db"
                ),
                busy_timeout_seconds=float(os.getenv("AUTH_SQLITE_BUSY_TIMEOUT", "5")),
                mongo_uri=os.getenv("MONGODB_URI", "").strip(),
                mongo_db=os.getenv("MONGODB_DB", "authcore").strip() or "authcore",
            ),
            logging=LoggingConfig(level=os.getenv("LOG_LEVEL", "INFO").strip() or "INFO"),
            security=SecurityConfig(
                cors_allowed_origins=_env_list(
                    "CORS_ALLOWED_ORIGINS",
                    "http://localhost:8081",
                ),
                request_max_bytes=int(os.getenv("REQUEST_MAX_BYTES", str(1024 * 1024))),
                rate_limits=rate_limits,
                rate_limit_grace_seconds=int(os.getenv("RATE_LIMIT_GRACE_SECONDS", "60")),
            ),
        )
