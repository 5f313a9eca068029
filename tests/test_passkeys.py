from __future__ import annotations

import hashlib
import struct

import pytest
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ed25519, padding, rsa

from authcore.auth.errors import InvalidCredentialsError, ValidationError
from authcore.auth.models import PasskeyCredential, User
from authcore.auth.passkeys import (
    COSE_ALG_EDDSA,
    COSE_ALG_ES256,
    COSE_ALG_RS256,
    FLAG_USER_PRESENT,
    PasskeyVerifier,
    load_public_key,
    parse_authenticator_data,
    verify_signature,
)
from authcore.core.security import b64url_encode
from tests.fakes import START_TIME, SoftwareAuthenticator


def _verifier() -> PasskeyVerifier:
    return PasskeyVerifier(rp_id="localhost", rp_name="Auth Core", origins=("http://localhost:8081",))


def _spki(public_key) -> str:
    return b64url_encode(
        public_key.public_bytes(
            serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
        )
    )


def _stored(authenticator: SoftwareAuthenticator, sign_count: int = 0) -> PasskeyCredential:
    return PasskeyCredential(
        passkey_id="p1",
        user_id="u1",
        credential_id=authenticator.credential_id_b64,
        public_key=authenticator.public_key_b64(),
        algorithm=COSE_ALG_ES256,
        sign_count=sign_count,
        created_at=START_TIME,
    )


def test_parse_authenticator_data_reads_counter_and_credential_id() -> None:
    raw = (
        hashlib.sha256(b"localhost").digest()
        + bytes([0x41])
        + struct.pack(">I", 7)
        + b"\x00" * 16
        + struct.pack(">H", 3)
        + b"abc"
    )

    parsed = parse_authenticator_data(raw)

    assert parsed.sign_count == 7
    assert parsed.flags & FLAG_USER_PRESENT
    assert parsed.credential_id == b"abc"


def test_parse_authenticator_data_rejects_truncated_input() -> None:
    with pytest.raises(ValidationError):
        parse_authenticator_data(b"\x00" * 36)


def test_verify_registration_returns_credential() -> None:
    authenticator = SoftwareAuthenticator()

    verified = _verifier().verify_registration(authenticator.register("challenge-1"))

    assert verified.challenge == "challenge-1"
    assert verified.credential_id == authenticator.credential_id_b64
    assert verified.algorithm == COSE_ALG_ES256
    assert verified.sign_count == 0


def test_verify_registration_rejects_foreign_origin() -> None:
    authenticator = SoftwareAuthenticator(origin="https://evil.example")

    with pytest.raises(InvalidCredentialsError):
        _verifier().verify_registration(authenticator.register("challenge-1"))


def test_verify_registration_rejects_other_relying_party() -> None:
    authenticator = SoftwareAuthenticator(rp_id="other.example")

    with pytest.raises(InvalidCredentialsError):
        _verifier().verify_registration(authenticator.register("challenge-1"))


def test_verify_assertion_accepts_valid_signature() -> None:
    authenticator = SoftwareAuthenticator()
    credential = authenticator.assert_challenge("challenge-2")

    assertion = _verifier().verify_assertion(credential, _stored(authenticator))

    assert assertion.challenge == "challenge-2"
    assert assertion.sign_count == 1


def test_verify_assertion_rejects_signature_from_other_key() -> None:
    authenticator = SoftwareAuthenticator()
    impostor = SoftwareAuthenticator()
    credential = impostor.assert_challenge("challenge-2")

    with pytest.raises(InvalidCredentialsError):
        _verifier().verify_assertion(credential, _stored(authenticator))


def test_verify_assertion_requires_user_presence() -> None:
    authenticator = SoftwareAuthenticator()
    credential = authenticator.assert_challenge("challenge-2", flags=0x00)

    with pytest.raises(InvalidCredentialsError):
        _verifier().verify_assertion(credential, _stored(authenticator))


def test_verify_assertion_rejects_registration_client_data() -> None:
    authenticator = SoftwareAuthenticator()
    registration = authenticator.register("challenge-3")

    with pytest.raises(InvalidCredentialsError):
        _verifier().read_client_challenge(registration.client_data_json, "webauthn.get")


def test_verify_signature_supports_eddsa_and_rs256() -> None:
    data = b"signed payload"
    ed_key = ed25519.Ed25519PrivateKey.generate()
    rsa_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)

    assert verify_signature(_spki(ed_key.public_key()), COSE_ALG_EDDSA, ed_key.sign(data), data)
    rsa_signature = rsa_key.sign(data, padding.PKCS1v15(), hashes.SHA256())
    assert verify_signature(_spki(rsa_key.public_key()), COSE_ALG_RS256, rsa_signature, data)
    assert not verify_signature(
        _spki(rsa_key.public_key()), COSE_ALG_RS256, rsa_signature, b"tampered"
    )


def test_load_public_key_checks_declared_algorithm() -> None:
    ed_key = ed25519.Ed25519PrivateKey.generate()

    with pytest.raises(ValidationError):
        load_public_key(_spki(ed_key.public_key()), COSE_ALG_ES256)
    with pytest.raises(ValidationError):
        load_public_key(_spki(ed_key.public_key()), -999)


def test_registration_options_exclude_existing_credentials() -> None:
    authenticator = SoftwareAuthenticator()
    user = User(user_id="u1", email="a@example.com", created_at=START_TIME, updated_at=START_TIME)

    options = _verifier().registration_options(user, "c", [_stored(authenticator)], 300_000)

    assert options["rp"] == {"id": "localhost", "name": "Auth Core"}
    assert options["excludeCredentials"][0]["id"] == authenticator.credential_id_b64
    assert {item["alg"] for item in options["pubKeyCredParams"]} == {-7, -8, -257}
