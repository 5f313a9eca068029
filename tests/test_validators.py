from __future__ import annotations

import pytest

from authcore.auth.errors import ValidationError
from authcore.core.validators import (
    check_password,
    length_password_policy,
    mask_email,
    normalize_email,
    normalize_phone,
)


def test_normalize_email_lowercases_and_trims() -> None:
    assert normalize_email("  Alice@Example.COM ") == "alice@example.com"


@pytest.mark.parametrize("value", ["", "alice", "alice@", "a b@example.com", "alice@example"])
def test_normalize_email_rejects_invalid(value: str) -> None:
    with pytest.raises(ValidationError):
        normalize_email(value)


def test_normalize_phone_keeps_plus_and_digits() -> None:
    assert normalize_phone("+1 (555) 123-4567") == "+15551234567"
    assert normalize_phone("44 20 7946 0958") == "+442079460958"


@pytest.mark.parametrize("value", ["", "123", "+0123456789"])
def test_normalize_phone_rejects_invalid(value: str) -> None:
    with pytest.raises(ValidationError):
        normalize_phone(value)


def test_length_password_policy() -> None:
    policy = length_password_policy(8, 12)

    check_password("12345678", policy)
    with pytest.raises(ValidationError):
        check_password("1234567", policy)
    with pytest.raises(ValidationError):
        check_password("x" * 13, policy)


def test_mask_email() -> None:
    assert mask_email("alice@example.com") == "a****@example.com"
    assert mask_email("broken") == "***"
