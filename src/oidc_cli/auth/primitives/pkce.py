"""PKCE (Proof Key for Code Exchange) and state generation.

Implements RFC 7636 parameter generation to prevent authorization code
interception, plus the CSRF state token for the authorization redirect.
"""

from __future__ import annotations

import base64
import hashlib
import random
import secrets

from oidc_cli.auth.models.security import PKCEParameters, StateToken

DEFAULT_VERIFIER_BYTES = 32
DEFAULT_STATE_BYTES = 16


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def code_challenge_for(code_verifier: str) -> str:
    """Derive the S256 code challenge for a code verifier.

    RFC 7636 Section 4.2: BASE64URL-ENCODE(SHA256(ASCII(code_verifier)))
    """
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return _b64url(digest)


class PKCEGenerator:
    """Generates PKCE parameters and state tokens from an owned random source.

    The random source defaults to the operating system CSPRNG. A seeded
    ``random.Random`` may be passed in tests to get reproducible values;
    never do that outside tests.
    """

    def __init__(
        self,
        rng: random.Random | None = None,
        verifier_bytes: int = DEFAULT_VERIFIER_BYTES,
        state_bytes: int = DEFAULT_STATE_BYTES,
    ):
        """Initialize the generator.

        Args:
            rng: Random source, defaults to ``secrets.SystemRandom()``
            verifier_bytes: Entropy of the code verifier in bytes (32-96),
                giving a 43-128 character verifier
            state_bytes: Entropy of the state token in bytes (at least 16)
        """
        if not (32 <= verifier_bytes <= 96):
            raise ValueError("verifier_bytes must be between 32 and 96")
        if state_bytes < 16:
            raise ValueError("state_bytes must be at least 16")

        self._rng = rng if rng is not None else secrets.SystemRandom()
        self.verifier_bytes = verifier_bytes
        self.state_bytes = state_bytes

    def generate_pkce(self) -> PKCEParameters:
        """Generate a fresh code verifier and its S256 challenge.

        Base64url output only contains unreserved characters
        ``[A-Z] / [a-z] / [0-9] / "-" / "_"``, as RFC 7636 Section 4.1
        requires.
        """
        code_verifier = _b64url(self._rng.randbytes(self.verifier_bytes))
        return PKCEParameters(
            code_verifier=code_verifier,
            code_challenge=code_challenge_for(code_verifier),
            code_challenge_method="S256",
        )

    def generate_state(self) -> StateToken:
        return StateToken(_b64url(self._rng.randbytes(self.state_bytes)))


_default_generator = PKCEGenerator()


def generate_pkce() -> PKCEParameters:
    """Generate PKCE parameters from the system CSPRNG."""
    return _default_generator.generate_pkce()


def generate_state() -> StateToken:
    """Generate a state token from the system CSPRNG."""
    return _default_generator.generate_state()
