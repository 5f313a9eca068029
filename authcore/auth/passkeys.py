"""WebAuthn-style passkey ceremony verification.

Registration accepts the JSON encoding that current platform authenticators
expose (``clientDataJSON``, ``authenticatorData`` and the credential public key
as SubjectPublicKeyInfo DER), so no CBOR attestation parsing is needed. Only
``none`` attestation is supported: the relying party trusts the device that
completed the ceremony, not its manufacturer.
"""

from __future__ import annotations

import binascii
import hashlib
import json
import struct
from dataclasses import dataclass
from typing import Any

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, padding, rsa

from authcore.auth.errors import InvalidCredentialsError, ValidationError
from authcore.auth.models import (
    PasskeyAuthenticationCredential,
    PasskeyCredential,
    PasskeyRegistrationCredential,
    User,
)
from authcore.core.security import b64url_decode, b64url_encode

COSE_ALG_ES256 = -7
COSE_ALG_EDDSA = -8
COSE_ALG_RS256 = -257
SUPPORTED_ALGORITHMS = (COSE_ALG_ES256, COSE_ALG_EDDSA, COSE_ALG_RS256)

FLAG_USER_PRESENT = 0x01
FLAG_USER_VERIFIED = 0x04
FLAG_ATTESTED_CREDENTIAL_DATA = 0x40

_AUTH_DATA_MIN_LENGTH = 37


@dataclass(frozen=True)
class AuthenticatorData:
    rp_id_hash: bytes
    flags: int
    sign_count: int
    credential_id: bytes | None = None


@dataclass(frozen=True)
class VerifiedRegistration:
    challenge: str
    credential_id: str
    public_key: str
    algorithm: int
    sign_count: int


@dataclass(frozen=True)
class VerifiedAssertion:
    challenge: str
    sign_count: int


def _decode_field(value: str, field: str) -> bytes:
    try:
        return b64url_decode(value)
    except (binascii.Error, ValueError) as exc:
        raise ValidationError(f"{field} is not valid base64url") from exc


def parse_authenticator_data(raw: bytes) -> AuthenticatorData:
    """Split authenticator data into RP id hash, flags, counter and credential id."""
    if len(raw) < _AUTH_DATA_MIN_LENGTH:
        raise ValidationError("authenticator data is truncated")
    rp_id_hash = raw[:32]
    flags = raw[32]
    (sign_count,) = struct.unpack(">I", raw[33:37])

    credential_id = None
    if flags & FLAG_ATTESTED_CREDENTIAL_DATA:
        # aaguid (16) | credentialIdLength (2) | credentialId | publicKey (COSE)
        if len(raw) < _AUTH_DATA_MIN_LENGTH + 18:
            raise ValidationError("attested credential data is truncated")
        (id_length,) = struct.unpack(">H", raw[53:55])
        credential_id = raw[55 : 55 + id_length]
        if len(credential_id) != id_length:
            raise ValidationError("attested credential id is truncated")
    return AuthenticatorData(
        rp_id_hash=rp_id_hash,
        flags=flags,
        sign_count=sign_count,
        credential_id=credential_id,
    )


def load_public_key(public_key_b64: str, algorithm: int) -> Any:
    """Load an SPKI public key and check it matches the declared COSE algorithm."""
    if algorithm not in SUPPORTED_ALGORITHMS:
        raise ValidationError(f"Unsupported public key algorithm {algorithm}")
    try:
        key = serialization.load_der_public_key(_decode_field(public_key_b64, "public_key"))
    except (ValueError, UnsupportedAlgorithm) as exc:
        raise ValidationError("public_key is not a valid SubjectPublicKeyInfo") from exc

    if algorithm == COSE_ALG_ES256 and not (
        isinstance(key, ec.EllipticCurvePublicKey) and isinstance(key.curve, ec.SECP256R1)
    ):
        raise ValidationError("ES256 requires a P-256 key")
    if algorithm == COSE_ALG_EDDSA and not isinstance(key, ed25519.Ed25519PublicKey):
        raise ValidationError("EdDSA requires an Ed25519 key")
    if algorithm == COSE_ALG_RS256 and not isinstance(key, rsa.RSAPublicKey):
        raise ValidationError("RS256 requires an RSA key")
    return key


def verify_signature(public_key_b64: str, algorithm: int, signature: bytes, data: bytes) -> bool:
    """Return whether ``signature`` over ``data`` verifies with the stored key."""
    key = load_public_key(public_key_b64, algorithm)
    try:
        if algorithm == COSE_ALG_ES256:
            key.verify(signature, data, ec.ECDSA(hashes.SHA256()))
        elif algorithm == COSE_ALG_EDDSA:
            key.verify(signature, data)
        else:
            key.verify(signature, data, padding.PKCS1v15(), hashes.SHA256())
    except InvalidSignature:
        return False
    return True


class PasskeyVerifier:
    """Relying-party checks for registration and authentication ceremonies."""

    def __init__(self, *, rp_id: str, rp_name: str, origins: tuple[str, ...]) -> None:
        self._rp_id = rp_id
        self._rp_name = rp_name
        self._origins = frozenset(origins)
        self._rp_id_hash = hashlib.sha256(rp_id.encode("utf-8")).digest()

    def registration_options(
        self, user: User, challenge: str, existing: list[PasskeyCredential], timeout_ms: int
    ) -> dict[str, Any]:
        """Build ``PublicKeyCredentialCreationOptions`` JSON for the client."""
        return {
            "challenge": challenge,
            "rp": {"id": self._rp_id, "name": self._rp_name},
            "user": {
                "id": b64url_encode(user.user_id.encode("utf-8")),
                "name": user.email,
                "displayName": user.name or user.email,
            },
            "pubKeyCredParams": [
                {"type": "public-key", "alg": alg} for alg in SUPPORTED_ALGORITHMS
            ],
            "timeout": timeout_ms,
            "attestation": "none",
            "excludeCredentials": [
                {"type": "public-key", "id": item.credential_id, "transports": item.transports}
                for item in existing
            ],
            "authenticatorSelection": {
                "residentKey": "preferred",
                "userVerification": "preferred",
            },
        }

    def authentication_options(
        self, challenge: str, allowed: list[PasskeyCredential], timeout_ms: int
    ) -> dict[str, Any]:
        """Build ``PublicKeyCredentialRequestOptions`` JSON for the client."""
        return {
            "challenge": challenge,
            "rpId": self._rp_id,
            "timeout": timeout_ms,
            "userVerification": "preferred",
            "allowCredentials": [
                {"type": "public-key", "id": item.credential_id, "transports": item.transports}
                for item in allowed
            ],
        }

    def read_client_challenge(self, client_data_json: str, expected_type: str) -> str:
        """Validate client data type and origin, returning the echoed challenge."""
        raw = _decode_field(client_data_json, "client_data_json")
        try:
            client_data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ValidationError("client_data_json is not JSON") from exc
        if not isinstance(client_data, dict):
            raise ValidationError("client_data_json is not an object")

        if client_data.get("type") != expected_type:
            raise InvalidCredentialsError()
        if str(client_data.get("origin") or "") not in self._origins:
            raise InvalidCredentialsError()
        challenge = str(client_data.get("challenge") or "")
        if not challenge:
            raise ValidationError("client data carries no challenge")
        return challenge

    def verify_registration(self, credential: PasskeyRegistrationCredential) -> VerifiedRegistration:
        """Check a registration response; the caller redeems the returned challenge."""
        challenge = self.read_client_challenge(credential.client_data_json, "webauthn.create")
        auth_data = self._check_authenticator_data(credential.authenticator_data)

        credential_id = _decode_field(credential.id, "id")
        if auth_data.credential_id is not None and auth_data.credential_id != credential_id:
            raise InvalidCredentialsError()
        load_public_key(credential.public_key, credential.public_key_algorithm)

        return VerifiedRegistration(
            challenge=challenge,
            credential_id=b64url_encode(credential_id),
            public_key=credential.public_key,
            algorithm=credential.public_key_algorithm,
            sign_count=auth_data.sign_count,
        )

    def read_assertion_challenge(self, credential: PasskeyAuthenticationCredential) -> str:
        return self.read_client_challenge(credential.client_data_json, "webauthn.get")

    def verify_assertion(
        self, credential: PasskeyAuthenticationCredential, stored: PasskeyCredential
    ) -> VerifiedAssertion:
        """Verify an assertion signature against the stored public key."""
        challenge = self.read_assertion_challenge(credential)
        auth_data_raw = _decode_field(credential.authenticator_data, "authenticator_data")
        auth_data = self._check_authenticator_data(credential.authenticator_data)
        client_data_hash = hashlib.sha256(
            _decode_field(credential.client_data_json, "client_data_json")
        ).digest()
        signature = _decode_field(credential.signature, "signature")

        if not verify_signature(
            stored.public_key, stored.algorithm, signature, auth_data_raw + client_data_hash
        ):
            raise InvalidCredentialsError()
        return VerifiedAssertion(challenge=challenge, sign_count=auth_data.sign_count)

    def _check_authenticator_data(self, authenticator_data_b64: str) -> AuthenticatorData:
        auth_data = parse_authenticator_data(
            _decode_field(authenticator_data_b64, "authenticator_data")
        )
        if auth_data.rp_id_hash != self._rp_id_hash:
            raise InvalidCredentialsError()
        if not auth_data.flags & FLAG_USER_PRESENT:
            raise InvalidCredentialsError()
        return auth_data
