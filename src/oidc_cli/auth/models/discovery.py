"""Discovery-related models for OpenID Connect provider metadata.

Contains the OIDC discovery document and the resolved endpoint pair that the
authorization flow runs against.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from pydantic import BaseModel, ConfigDict, ValidationInfo, field_validator

from oidc_cli.auth.primitives.urls import check_endpoint_url


class DiscoveryDocument(BaseModel):
    """OpenID Connect discovery document (OpenID Connect Discovery 1.0).

    Only the endpoints the authorization code flow needs are required.
    Unknown provider fields are ignored.
    """

    model_config = ConfigDict(extra="ignore")

    # Required for authorization code flow (our use case)
    authorization_endpoint: str
    token_endpoint: str

    issuer: str | None = None
    userinfo_endpoint: str | None = None
    jwks_uri: str | None = None
    scopes_supported: list[str] | None = None
    response_types_supported: list[str] | None = None
    code_challenge_methods_supported: list[str] | None = None
    token_endpoint_auth_methods_supported: list[str] | None = None

    @field_validator("authorization_endpoint", "token_endpoint")
    @classmethod
    def validate_endpoint(cls, v: str, info: ValidationInfo) -> str:
        problem = check_endpoint_url(v, info.field_name)
        if problem:
            raise ValueError(problem)
        return v

    @field_validator("response_types_supported")
    @classmethod
    def validate_response_types(cls, v: list[str] | None) -> list[str] | None:
        if v is not None and "code" not in v:
            raise ValueError("Authorization code flow not supported by provider")
        return v

    def supports_pkce(self) -> bool:
        """Check whether the provider advertises S256 PKCE support.

        Providers that omit ``code_challenge_methods_supported`` are assumed
        to support it.
        """
        if self.code_challenge_methods_supported is None:
            return True
        return "S256" in self.code_challenge_methods_supported


@dataclass(frozen=True)
class AuthorizationEndpoints:
    """Resolved authorization and token endpoint pair for one login attempt."""

    authorization_endpoint: str
    token_endpoint: str
    source: Literal["manual", "discovery"] = "manual"
