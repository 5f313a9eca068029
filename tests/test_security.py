from __future__ import annotations

import pytest

from authcore.core.security import (
    b64url_decode,
    b64url_encode,
    generate_numeric_code,
    generate_token,
    hash_password,
    hash_secret,
    secrets_equal,
    verify_password,
)


def test_password_hash_is_salted_and_verifiable() -> None:
    first = hash_password("correct horse battery")
    second = hash_password("correct horse battery")

    assert first != second
    assert first.startswith("pbkdf2_sha256$")
    assert verify_password("correct horse battery", first) is True
    assert verify_password("wrong", first) is False


def test_verify_password_rejects_missing_or_malformed_hash() -> None:
    assert verify_password("anything", None) is False
    assert verify_password("anything", "md5$1$abc$def") is False
    assert verify_password("anything", "not-a-hash") is False


def test_numeric_code_has_fixed_length() -> None:
    code = generate_numeric_code(6)

    assert len(code) == 6
    assert code.isdigit()
    with pytest.raises(ValueError):
        generate_numeric_code(3)


def test_tokens_are_unique_and_url_safe() -> None:
    tokens = {generate_token() for _ in range(50)}

    assert len(tokens) == 50
    assert all("=" not in token and "+" not in token and "/" not in token for token in tokens)


def test_b64url_decode_accepts_missing_padding() -> None:
    assert b64url_decode(b64url_encode(b"\x00\xffab")) == b"\x00\xffab"
    assert b64url_encode(b"a") == "YQ"


def test_hash_secret_is_stable_digest() -> None:
    digest = hash_secret("482913")

    assert digest == hash_secret("482913")
    assert digest != "482913"
    assert secrets_equal(digest, hash_secret("482913")) is True
    assert secrets_equal(digest, hash_secret("482914")) is False
