"""Authorization flow models.

Contains the authorization request and the tagged states of a login attempt.
Each state carries exactly the data the next step needs, so a step cannot
run without the output of the one before it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Union
from urllib.parse import urlencode, urlsplit, urlunsplit

from oidc_cli.auth.models.discovery import AuthorizationEndpoints
from oidc_cli.auth.models.errors import FlowError
from oidc_cli.auth.models.security import PKCEParameters, StateToken
from oidc_cli.auth.models.tokens import TokenResponse


@dataclass(frozen=True)
class AuthorizationRequest:
    """Authorization request parameters for the code flow."""

    authorization_endpoint: str
    client_id: str
    redirect_uri: str
    scope: str
    state: str
    code_challenge: str
    code_challenge_method: str = "S256"

    def build_authorization_url(self) -> str:
        """Build the complete authorization URL.

        Existing query parameters on the endpoint are preserved.
        """
        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": self.scope,
            "state": self.state,
            "code_challenge": self.code_challenge,
            "code_challenge_method": self.code_challenge_method,
        }

        parts = urlsplit(self.authorization_endpoint)
        query = urlencode(params)
        if parts.query:
            query = f"{parts.query}&{query}"
        return urlunsplit(
            (parts.scheme, parts.netloc, parts.path, query, parts.fragment)
        )


@dataclass(frozen=True)
class Initialized:
    pass


@dataclass(frozen=True)
class EndpointsResolved:
    endpoints: AuthorizationEndpoints


@dataclass(frozen=True)
class ListenerArmed:
    endpoints: AuthorizationEndpoints
    pkce: PKCEParameters
    state: StateToken
    authorization_url: str


@dataclass(frozen=True)
class AwaitingCallback:
    endpoints: AuthorizationEndpoints
    pkce: PKCEParameters
    state: StateToken
    authorization_url: str


@dataclass(frozen=True)
class CodeReceived:
    endpoints: AuthorizationEndpoints
    pkce: PKCEParameters
    code: str = field(repr=False)


@dataclass(frozen=True)
class TokenExchanged:
    tokens: TokenResponse


@dataclass(frozen=True)
class Failed:
    error: FlowError


FlowState = Union[
    Initialized,
    EndpointsResolved,
    ListenerArmed,
    AwaitingCallback,
    CodeReceived,
    TokenExchanged,
    Failed,
]
