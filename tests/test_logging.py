from __future__ import annotations

import json
import logging

from authcore.core.logging import JsonLogFormatter, set_correlation_id


def _record(message: str, **extra) -> logging.LogRecord:
    record = logging.LogRecord("authcore.test", logging.INFO, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_formatter_emits_auth_fields_and_correlation_id() -> None:
    set_correlation_id("req-42")

    payload = json.loads(
        JsonLogFormatter().format(
            _record("session_created", user_id="u1", session_id="s1", path="/api/auth/sign-in/email")
        )
    )

    assert payload["message"] == "session_created"
    assert payload["correlation_id"] == "req-42"
    assert payload["user_id"] == "u1"
    assert payload["session_id"] == "s1"
    assert payload["path"] == "/api/auth/sign-in/email"
    assert "purpose" not in payload


def test_formatter_masks_email_addresses() -> None:
    line = JsonLogFormatter().format(_record("magic_link_sent", email="alice@example.com"))

    assert json.loads(line)["email"] == "a****@example.com"
    assert "alice@example.com" not in line


def test_formatter_names_secret_fields_without_values() -> None:
    line = JsonLogFormatter().format(_record("otp_sent", code="123456", token="tok-secret"))
    payload = json.loads(line)

    assert payload["redacted_fields"] == ["code", "token"]
    assert "123456" not in line
    assert "tok-secret" not in line
