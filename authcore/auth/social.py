"""External identity provider collaborator used by social sign-in."""

from __future__ import annotations

from typing import Protocol

from authcore.auth.errors import InvalidTokenError
from authcore.auth.models import ProviderIdentity


class ProviderTokenVerifier(Protocol):
    """Checks a provider-issued token and returns the identity it asserts."""

    def verify_provider_token(self, provider: str, token: str) -> ProviderIdentity:
        """Return identity or raise ``InvalidTokenError``."""


class RejectingProviderVerifier:
    """Default verifier for deployments without provider glue: trusts nothing."""

    def verify_provider_token(self, provider: str, token: str) -> ProviderIdentity:
        raise InvalidTokenError(f"No verifier configured for provider {provider!r}")
