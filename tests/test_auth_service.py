from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterator

import pytest

from authcore.auth.errors import (
    ConflictError,
    DeliveryError,
    ExpiredError,
    FeatureDisabledError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
    RateLimitedError,
    ReplayDetectedError,
    ValidationError,
)
from authcore.auth.models import ChallengePurpose, DeviceMeta, ProviderIdentity
from authcore.auth.notifications import Channel
from authcore.core.config import (
    ALL_FEATURES,
    FEATURE_MAGIC_LINK,
    FEATURE_PASSWORD,
    AuthConfig,
    RateLimitRule,
)
from tests.fakes import Harness, SoftwareAuthenticator, StaticProviderVerifier, build_harness

PASSWORD = "correct horse battery"


@pytest.fixture
def harness(tmp_path: Path) -> Iterator[Harness]:
    verifier = StaticProviderVerifier(
        identities={
            "github:new-user": ProviderIdentity(
                external_id="gh-1", email="octo@example.com", email_verified=True, name="Octo"
            ),
            "github:verified-existing": ProviderIdentity(
                external_id="gh-2", email="alice@example.com", email_verified=True
            ),
            "github:unverified-existing": ProviderIdentity(
                external_id="gh-3", email="alice@example.com", email_verified=False
            ),
        }
    )
    built = build_harness(tmp_path, provider_verifier=verifier)
    yield built
    built.close()


def _signed_up(harness: Harness, email: str = "alice@example.com"):
    return harness.service.sign_up(email, PASSWORD, name="Alice")


def test_sign_up_then_sign_in_issues_distinct_tokens(harness: Harness) -> None:
    signed_up = _signed_up(harness)
    assert signed_up.session is not None

    first = harness.service.sign_in_password("Alice@Example.com", PASSWORD)
    second = harness.service.sign_in_password("alice@example.com", PASSWORD)

    assert first.status == "authenticated"
    assert first.session is not None and second.session is not None
    tokens = {signed_up.session.token, first.session.token, second.session.token}
    assert len(tokens) == 3
    assert first.user is not None
    assert first.user.last_login_method == "email"


def test_sign_up_rejects_duplicates_and_weak_passwords(harness: Harness) -> None:
    _signed_up(harness)

    with pytest.raises(ConflictError):
        harness.service.sign_up("ALICE@example.com", PASSWORD)
    with pytest.raises(ValidationError):
        harness.service.sign_up("bob@example.com", "short")
    with pytest.raises(ValidationError):
        harness.service.sign_up("not-an-email", PASSWORD)


def test_sign_up_without_auto_sign_in_returns_no_session(tmp_path: Path) -> None:
    harness = build_harness(tmp_path, config=AuthConfig(auto_sign_in=False))
    try:
        result = harness.service.sign_up("bob@example.com", PASSWORD)
    finally:
        harness.close()

    assert result.session is None
    assert result.user.email == "bob@example.com"


def test_password_sign_in_failures_are_indistinguishable(harness: Harness) -> None:
    _signed_up(harness)

    with pytest.raises(InvalidCredentialsError) as wrong_password:
        harness.service.sign_in_password("alice@example.com", "wrong password")
    with pytest.raises(InvalidCredentialsError) as unknown_user:
        harness.service.sign_in_password("nobody@example.com", PASSWORD)

    assert wrong_password.value.message == unknown_user.value.message


def test_password_sign_in_is_rate_limited(tmp_path: Path) -> None:
    harness = build_harness(
        tmp_path, rules={"sign-in:password": RateLimitRule(window_seconds=60, max_requests=2)}
    )
    try:
        for _ in range(2):
            with pytest.raises(InvalidCredentialsError):
                harness.service.sign_in_password("alice@example.com", "nope")
        with pytest.raises(RateLimitedError):
            harness.service.sign_in_password("alice@example.com", "nope")
    finally:
        harness.close()


def test_email_otp_sign_in_creates_verified_user(harness: Harness) -> None:
    harness.service.send_email_otp("new@example.com")
    channel, destination, _ = harness.sender.messages[-1]
    assert channel == Channel.EMAIL
    assert destination == "new@example.com"

    result = harness.service.sign_in_email_otp("new@example.com", harness.sender.last_code())

    assert result.user is not None
    assert result.user.email_verified is True
    assert result.user.last_login_method == "email-otp"


def test_email_otp_wrong_code_is_invalid_credentials(harness: Harness) -> None:
    harness.service.send_email_otp("new@example.com")
    code = harness.sender.last_code()
    wrong = "000000" if code != "000000" else "111111"

    with pytest.raises(InvalidCredentialsError):
        harness.service.sign_in_email_otp("new@example.com", wrong)
    harness.service.sign_in_email_otp("new@example.com", code)


def test_email_otp_expired_code(harness: Harness) -> None:
    harness.service.send_email_otp("new@example.com")
    harness.clock.advance(301)

    with pytest.raises(ExpiredError):
        harness.service.sign_in_email_otp("new@example.com", harness.sender.last_code())


def test_email_verification_marks_existing_account(harness: Harness) -> None:
    _signed_up(harness)

    harness.service.send_email_otp("alice@example.com", type="email-verification")
    user = harness.service.verify_challenge("alice@example.com", harness.sender.last_code())

    assert user.email_verified is True


def test_email_verification_for_unknown_email_sends_nothing(harness: Harness) -> None:
    harness.service.send_email_otp("ghost@example.com", type="email-verification")

    assert harness.sender.messages == []


def test_otp_issuance_is_rate_limited_per_email(tmp_path: Path) -> None:
    harness = build_harness(
        tmp_path, rules={"challenge:issue": RateLimitRule(window_seconds=300, max_requests=3)}
    )
    try:
        for _ in range(3):
            harness.service.send_email_otp("a@example.com")
        with pytest.raises(RateLimitedError):
            harness.service.send_email_otp("a@example.com")
        harness.clock.advance(300)
        harness.service.send_email_otp("a@example.com")
    finally:
        harness.close()


def test_otp_issuance_limit_applies_across_phone_formats(tmp_path: Path) -> None:
    harness = build_harness(
        tmp_path, rules={"challenge:issue": RateLimitRule(window_seconds=300, max_requests=3)}
    )
    try:
        for phone_number in ("+15551234567", "+1 555 123 4567", "+1 (555) 123-4567"):
            harness.service.send_phone_otp(phone_number)
        with pytest.raises(RateLimitedError):
            harness.service.send_phone_otp("1-555-123-4567")

        assert len(harness.sender.messages) == 3
        assert {destination for _, destination, _ in harness.sender.messages} == {"+15551234567"}
    finally:
        harness.close()


def test_otp_issuance_limit_applies_across_email_spellings(tmp_path: Path) -> None:
    harness = build_harness(
        tmp_path, rules={"challenge:issue": RateLimitRule(window_seconds=300, max_requests=2)}
    )
    try:
        harness.service.send_email_otp("a@example.com")
        harness.service.send_email_otp(" A@Example.com ")
        with pytest.raises(RateLimitedError):
            harness.service.send_magic_link("A@EXAMPLE.COM")

        assert len(harness.sender.messages) == 2
    finally:
        harness.close()


def test_phone_otp_sign_in_creates_placeholder_user(harness: Harness) -> None:
    harness.service.send_phone_otp("+1 (555) 123-4567")
    channel, destination, _ = harness.sender.messages[-1]
    assert channel == Channel.SMS
    assert destination == "+15551234567"

    result = harness.service.sign_in_phone_otp("+15551234567", harness.sender.last_code())

    assert result.user is not None
    assert result.user.phone == "+15551234567"
    assert result.user.phone_verified is True
    assert result.user.email == "15551234567@phone.invalid"
    assert result.user.last_login_method == "phone-number"

    harness.service.send_phone_otp("+15551234567")
    again = harness.service.sign_in_phone_otp("+15551234567", harness.sender.last_code())
    assert again.user is not None and again.user.user_id == result.user.user_id


def test_magic_link_sign_in_is_single_use(harness: Harness) -> None:
    harness.service.send_magic_link("link@example.com", callback_url="http://localhost:8081/home")
    token = harness.sender.last_token()
    assert "callbackURL=" in harness.sender.messages[-1][2]

    result = harness.service.sign_in_magic_link(token)
    assert result.user is not None
    assert result.user.email_verified is True

    with pytest.raises(InvalidCredentialsError):
        harness.service.sign_in_magic_link(token)


def _register_passkey(harness: Harness, authenticator: SoftwareAuthenticator):
    signed_up = _signed_up(harness)
    assert signed_up.session is not None
    ctx = harness.service.validate_session(signed_up.session.token)
    options = harness.service.register_passkey_start(ctx)
    passkey = harness.service.register_passkey_finish(ctx, authenticator.register(options["challenge"]))
    return ctx, passkey


def test_passkey_registration_and_sign_in_advances_counter(harness: Harness) -> None:
    authenticator = SoftwareAuthenticator()
    ctx, passkey = _register_passkey(harness, authenticator)
    assert passkey.credential_id == authenticator.credential_id_b64

    options = harness.service.passkey_authentication_start("alice@example.com")
    assert options["allowCredentials"][0]["id"] == authenticator.credential_id_b64
    result = harness.service.passkey_authentication_finish(
        authenticator.assert_challenge(options["challenge"])
    )

    assert result.user is not None
    assert result.user.user_id == ctx.user.user_id
    assert result.user.last_login_method == "passkey"
    stored = harness.store.find_passkey_by_credential_id(authenticator.credential_id_b64)
    assert stored is not None and stored.sign_count == 1


def test_passkey_replayed_counter_is_rejected(harness: Harness) -> None:
    authenticator = SoftwareAuthenticator()
    _register_passkey(harness, authenticator)
    options = harness.service.passkey_authentication_start()
    harness.service.passkey_authentication_finish(
        authenticator.assert_challenge(options["challenge"], counter=5)
    )

    options = harness.service.passkey_authentication_start()
    with pytest.raises(ReplayDetectedError):
        harness.service.passkey_authentication_finish(
            authenticator.assert_challenge(options["challenge"], counter=5)
        )


def test_passkey_without_counter_is_accepted(harness: Harness) -> None:
    authenticator = SoftwareAuthenticator()
    _register_passkey(harness, authenticator)

    for _ in range(2):
        options = harness.service.passkey_authentication_start()
        result = harness.service.passkey_authentication_finish(
            authenticator.assert_challenge(options["challenge"], counter=0)
        )
        assert result.status == "authenticated"


def test_passkey_challenge_cannot_be_reused(harness: Harness) -> None:
    authenticator = SoftwareAuthenticator()
    _register_passkey(harness, authenticator)
    options = harness.service.passkey_authentication_start()
    harness.service.passkey_authentication_finish(
        authenticator.assert_challenge(options["challenge"])
    )

    with pytest.raises(InvalidCredentialsError):
        harness.service.passkey_authentication_finish(
            authenticator.assert_challenge(options["challenge"])
        )


def test_revoked_passkey_cannot_authenticate(harness: Harness) -> None:
    authenticator = SoftwareAuthenticator()
    ctx, passkey = _register_passkey(harness, authenticator)

    harness.service.revoke_passkey(ctx, passkey.passkey_id)
    assert harness.service.list_passkeys(ctx) == []
    options = harness.service.passkey_authentication_start()

    with pytest.raises(InvalidCredentialsError):
        harness.service.passkey_authentication_finish(
            authenticator.assert_challenge(options["challenge"])
        )


def test_social_sign_in_creates_and_reuses_linked_user(harness: Harness) -> None:
    first = harness.service.sign_in_social("GitHub", "new-user")
    second = harness.service.sign_in_social("github", "new-user")

    assert first.user is not None and second.user is not None
    assert first.user.user_id == second.user.user_id
    assert first.user.name == "Octo"
    assert second.user.last_login_method == "social"


def test_social_sign_in_links_existing_user_only_with_verified_email(harness: Harness) -> None:
    signed_up = _signed_up(harness)

    with pytest.raises(ConflictError):
        harness.service.sign_in_social("github", "unverified-existing")

    linked = harness.service.sign_in_social("github", "verified-existing")
    assert linked.user is not None
    assert linked.user.user_id == signed_up.user.user_id


def test_social_sign_in_rejects_unknown_token(harness: Harness) -> None:
    with pytest.raises(InvalidTokenError):
        harness.service.sign_in_social("github", "forged")


def test_two_factor_escalation_flow(harness: Harness) -> None:
    signed_up = _signed_up(harness)
    assert signed_up.session is not None
    ctx = harness.service.validate_session(signed_up.session.token)

    with pytest.raises(InvalidCredentialsError):
        harness.service.enable_two_factor(ctx, "wrong password")
    assert harness.service.enable_two_factor(ctx, PASSWORD).two_factor_enabled is True

    pending = harness.service.sign_in_password("alice@example.com", PASSWORD)
    assert pending.status == "two_factor_required"
    assert pending.session is None
    assert pending.two_factor_token

    harness.service.send_two_factor_otp(pending.two_factor_token)
    assert harness.sender.messages[-1][1] == "alice@example.com"
    result = harness.service.verify_two_factor(
        pending.two_factor_token, harness.sender.last_code(), device=DeviceMeta(ip_address="1.2.3.4")
    )

    assert result.status == "authenticated"
    assert result.session is not None
    assert result.session.ip_address == "1.2.3.4"
    with pytest.raises(NotFoundError):
        harness.service.send_two_factor_otp(pending.two_factor_token)


def test_two_factor_wrong_code_keeps_sign_in_pending(harness: Harness) -> None:
    signed_up = _signed_up(harness)
    assert signed_up.session is not None
    ctx = harness.service.validate_session(signed_up.session.token)
    harness.service.enable_two_factor(ctx, PASSWORD)
    pending = harness.service.sign_in_password("alice@example.com", PASSWORD)
    harness.service.send_two_factor_otp(pending.two_factor_token)
    code = harness.sender.last_code()
    wrong = "000000" if code != "000000" else "111111"

    with pytest.raises(InvalidCredentialsError):
        harness.service.verify_two_factor(pending.two_factor_token, wrong)
    result = harness.service.verify_two_factor(pending.two_factor_token, code)
    assert result.status == "authenticated"


def test_password_reset_revokes_sessions(harness: Harness) -> None:
    signed_up = _signed_up(harness)
    assert signed_up.session is not None

    harness.service.request_password_reset("alice@example.com")
    token = harness.sender.last_token()
    harness.service.reset_password(token, "a brand new password")

    with pytest.raises(NotFoundError):
        harness.service.validate_session(signed_up.session.token)
    with pytest.raises(InvalidCredentialsError):
        harness.service.sign_in_password("alice@example.com", PASSWORD)
    harness.service.sign_in_password("alice@example.com", "a brand new password")
    with pytest.raises(InvalidCredentialsError):
        harness.service.reset_password(token, "another new password")


def test_password_reset_for_unknown_email_is_silent(harness: Harness) -> None:
    harness.service.request_password_reset("ghost@example.com")

    assert harness.sender.messages == []


def test_email_addresses_are_masked_in_log_records(
    harness: Harness, caplog: pytest.LogCaptureFixture
) -> None:
    with caplog.at_level(logging.INFO, logger="authcore.auth"):
        harness.service.request_password_reset("ghost@example.com")
        harness.service.send_magic_link("alice@example.com")

    by_message = {record.getMessage(): record for record in caplog.records}
    assert by_message["password_reset_unknown_email"].email == "g****@example.com"
    assert by_message["magic_link_sent"].email == "a****@example.com"
    for record in caplog.records:
        assert "ghost@example.com" not in str(record.__dict__)
        assert "alice@example.com" not in str(getattr(record, "email", ""))


def test_disabled_feature_is_refused(tmp_path: Path) -> None:
    harness = build_harness(
        tmp_path, config=AuthConfig(enabled_features=ALL_FEATURES - {FEATURE_MAGIC_LINK})
    )
    try:
        with pytest.raises(FeatureDisabledError):
            harness.service.send_magic_link("a@example.com")
        assert FEATURE_PASSWORD in harness.service.enabled_features
    finally:
        harness.close()


def test_delivery_failure_surfaces_as_delivery_error(harness: Harness) -> None:
    def fail(channel, destination, content) -> None:
        raise ConnectionError("smtp down")

    harness.sender.send_message = fail  # type: ignore[method-assign]

    with pytest.raises(DeliveryError):
        harness.service.send_email_otp("a@example.com")


def test_session_management_operations(harness: Harness) -> None:
    signed_up = _signed_up(harness)
    assert signed_up.session is not None
    other = harness.service.sign_in_password("alice@example.com", PASSWORD)
    third = harness.service.sign_in_password("alice@example.com", PASSWORD)
    assert other.session is not None and third.session is not None
    ctx = harness.service.validate_session(signed_up.session.token)

    assert len(harness.service.list_sessions(ctx)) == 3
    harness.service.revoke_session(ctx, third.session.session_id)
    assert harness.service.revoke_other_sessions(ctx) == 1
    assert [item.session_id for item in harness.service.list_sessions(ctx)] == [
        ctx.session.session_id
    ]

    harness.service.sign_out(signed_up.session.token)
    with pytest.raises(NotFoundError):
        harness.service.validate_session(signed_up.session.token)


def test_delete_account_revokes_everything(harness: Harness) -> None:
    authenticator = SoftwareAuthenticator()
    ctx, _ = _register_passkey(harness, authenticator)

    with pytest.raises(InvalidCredentialsError):
        harness.service.delete_account(ctx, "wrong password")
    harness.service.delete_account(ctx, PASSWORD)

    with pytest.raises(NotFoundError):
        harness.service.validate_session(ctx.session.token)
    assert harness.store.get_user(ctx.user.user_id) is None
    assert harness.store.list_passkeys(ctx.user.user_id) == []
    _signed_up(harness)


def test_sweep_reports_removed_records(tmp_path: Path) -> None:
    harness = build_harness(
        tmp_path,
        config=AuthConfig(session_max_age_seconds=100, passkey_inactivity_days=1),
        rules={"challenge:issue": RateLimitRule(window_seconds=300, max_requests=3)},
    )
    try:
        authenticator = SoftwareAuthenticator()
        _register_passkey(harness, authenticator)
        harness.service.send_email_otp("a@example.com")
        harness.challenges.issue(ChallengePurpose.MAGIC_LINK, "b@example.com")

        harness.clock.advance(2 * 24 * 60 * 60)
        removed = harness.service.sweep(rate_limit_grace_seconds=60)
    finally:
        harness.close()

    assert removed["sessions"] == 1
    assert removed["challenges"] == 3
    assert removed["rate_limit_buckets"] == 2
    assert removed["passkeys"] == 1
