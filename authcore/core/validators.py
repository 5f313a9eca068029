from __future__ import annotations

import re
from typing import Callable

from authcore.auth.errors import ValidationError

PasswordPolicy = Callable[[str], bool]

_EMAIL_RE = re.compile(r"[^@\s]+@[^@\s]+\.[^@\s]+")
_PHONE_RE = re.compile(r"\+[1-9]\d{6,14}")


def normalize_email(email: str) -> str:
    value = (email or "").strip().lower()
    if len(value) > 254 or not _EMAIL_RE.fullmatch(value):
        raise ValidationError("Invalid email address")
    return value


def normalize_phone(phone: str) -> str:
    # Keep leading plus and digits: "+1 (555) 123-4567" -> "+15551234567"
    raw = (phone or "").strip()
    digits = re.sub(r"\D", "", raw)
    value = f"+{digits}"
    if not _PHONE_RE.fullmatch(value):
        raise ValidationError("Invalid phone number")
    return value


def mask_email(email: str) -> str:
    try:
        local, domain = email.split("@", 1)
    except ValueError:
        return "***"
    return f"{local[:1]}{'*' * max(0, len(local) - 1)}@{domain}"


def length_password_policy(min_length: int, max_length: int) -> PasswordPolicy:
    def policy(password: str) -> bool:
        return min_length <= len(password) <= max_length

    return policy


def check_password(password: str, policy: PasswordPolicy) -> None:
    if not policy(password):
        raise ValidationError("Password does not meet policy")
