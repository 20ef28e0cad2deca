"""Security-related models for the authorization code flow.

Contains PKCE parameters and the CSRF state token.
"""

from __future__ import annotations

import hmac
import re
from dataclasses import dataclass, field

_UNRESERVED = re.compile(r"^[A-Za-z0-9\-._~]+$")


@dataclass(frozen=True)
class PKCEParameters:
    """PKCE (Proof Key for Code Exchange) parameters (RFC 7636).

    Immutable parameters generated for exactly one authorization attempt.
    """

    code_verifier: str = field(repr=False)
    code_challenge: str = field()
    code_challenge_method: str = field(default="S256")

    def __post_init__(self) -> None:
        """Validate PKCE parameters meet RFC 7636 requirements."""
        if not (43 <= len(self.code_verifier) <= 128):
            raise ValueError("code_verifier must be 43-128 characters")
        if not _UNRESERVED.match(self.code_verifier):
            raise ValueError("code_verifier must use only unreserved characters")
        if not (43 <= len(self.code_challenge) <= 128):
            raise ValueError("code_challenge must be 43-128 characters")
        if self.code_challenge_method != "S256":
            raise ValueError("Only S256 code challenge method is supported")


@dataclass(frozen=True)
class StateToken:
    """Opaque CSRF state value round-tripped through the authorization redirect."""

    value: str

    def __post_init__(self) -> None:
        if not self.value:
            raise ValueError("state must not be empty")

    def matches(self, received: str | None) -> bool:
        """Exact comparison against the state returned in the callback."""
        if received is None:
            return False
        return hmac.compare_digest(
            self.value.encode("utf-8"), received.encode("utf-8")
        )

    def __str__(self) -> str:
        return self.value
