"""Security primitives for password hashing, secrets and token digests."""

from __future__ import annotations

import base64
import hashlib
import hmac
import os
import secrets

PBKDF2_ROUNDS = 120_000
SESSION_TOKEN_BYTES = 32
CHALLENGE_TOKEN_BYTES = 32


def b64url_encode(raw: bytes) -> str:
    """Return URL-safe base64 string without padding."""
    return base64.urlsafe_b64encode(raw).decode("utf-8").rstrip("=")


def b64url_decode(value: str) -> bytes:
    """Decode URL-safe base64 string with optional missing padding."""
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode((value + padding).encode("utf-8"))


def hash_password(password: str) -> str:
    """Hash password using PBKDF2-HMAC-SHA256 with random salt."""
    salt = os.urandom(16)
    derived = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, PBKDF2_ROUNDS)
    return f"pbkdf2_sha256${PBKDF2_ROUNDS}${b64url_encode(salt)}${b64url_encode(derived)}"


# Compared against when the account has no usable hash.
_DUMMY_PASSWORD_HASH = hash_password(secrets.token_urlsafe(16))


def verify_password(password: str, stored_hash: str | None) -> bool:
    """Verify password against a stored PBKDF2 hash."""
    target = stored_hash or _DUMMY_PASSWORD_HASH
    try:
        algo, rounds_raw, salt_b64, digest_b64 = target.split("$", 3)
        if algo != "pbkdf2_sha256":
            return False
        rounds = int(rounds_raw)
        salt = b64url_decode(salt_b64)
        expected = b64url_decode(digest_b64)
    except ValueError:
        return False

    derived = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, rounds)
    return hmac.compare_digest(derived, expected) and stored_hash is not None


def generate_token(num_bytes: int = SESSION_TOKEN_BYTES) -> str:
    """Return an unguessable URL-safe token."""
    return secrets.token_urlsafe(num_bytes)


def generate_numeric_code(length: int) -> str:
    """Return a uniformly random decimal code of fixed length."""
    if length < 4:
        raise ValueError("code length must be at least 4")
    return "".join(secrets.choice("0123456789") for _ in range(length))


def hash_secret(value: str) -> str:
    """Hash raw token or code for storage/comparison."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def secrets_equal(left: str, right: str) -> bool:
    """Constant-time string comparison."""
    return hmac.compare_digest(left.encode("utf-8"), right.encode("utf-8"))
