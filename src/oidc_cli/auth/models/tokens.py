"""Token exchange request and response models.

Tokens live only in process memory; nothing here persists them.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

TokenEndpointAuthMethod = Literal["client_secret_post", "client_secret_basic"]


@dataclass(frozen=True)
class TokenRequest:
    """Authorization code token request (RFC 6749 Section 4.1.3).

    Includes the PKCE code_verifier (RFC 7636).
    """

    # Required fields first
    token_endpoint: str
    code: str = field(repr=False)
    redirect_uri: str
    client_id: str
    code_verifier: str = field(repr=False)

    # Optional fields with defaults last
    client_secret: str | None = field(default=None, repr=False)
    auth_method: TokenEndpointAuthMethod = "client_secret_post"
    grant_type: str = "authorization_code"

    def to_form_data(self) -> dict[str, str]:
        """Convert to form data for application/x-www-form-urlencoded request.

        The client secret goes in the body only for ``client_secret_post``;
        ``client_secret_basic`` sends it as HTTP Basic credentials instead.
        """
        data = {
            "grant_type": self.grant_type,
            "code": self.code,
            "redirect_uri": self.redirect_uri,
            "client_id": self.client_id,
            "code_verifier": self.code_verifier,
        }

        if self.client_secret and self.auth_method == "client_secret_post":
            data["client_secret"] = self.client_secret

        return data

    def basic_auth(self) -> tuple[str, str] | None:
        if self.client_secret and self.auth_method == "client_secret_basic":
            return (self.client_id, self.client_secret)
        return None


class TokenResponse(BaseModel):
    """Successful token response (RFC 6749 Section 5.1).

    ``expires_at`` is an absolute Unix timestamp computed when the response
    was received, or None if the provider sent no ``expires_in``.
    """

    access_token: str = Field(min_length=1, repr=False)
    token_type: str = Field(min_length=1)
    expires_in: int | None = None
    expires_at: float | None = None
    refresh_token: str | None = Field(default=None, repr=False)
    id_token: str | None = Field(default=None, repr=False)
    scope: str | None = None

    @field_validator("expires_in")
    @classmethod
    def validate_expires_in(cls, v: int | None) -> int | None:
        if v is not None and v < 0:
            raise ValueError("expires_in must not be negative")
        return v

    @classmethod
    def from_payload(
        cls, payload: dict[str, Any], received_at: float | None = None
    ) -> TokenResponse:
        """Build a token response from a token endpoint JSON body.

        Args:
            payload: Decoded JSON object from the token endpoint
            received_at: Unix timestamp of receipt, defaults to now

        Raises:
            pydantic.ValidationError: If required fields are missing or invalid
        """
        if received_at is None:
            received_at = time.time()

        data = {
            key: payload.get(key)
            for key in (
                "access_token",
                "token_type",
                "expires_in",
                "refresh_token",
                "id_token",
                "scope",
            )
        }
        response = cls.model_validate(data)
        if response.expires_in is not None:
            response = response.model_copy(
                update={"expires_at": received_at + response.expires_in}
            )
        return response

    def is_expired(self, buffer_seconds: float = 0.0) -> bool:
        """Check if the access token has expired, with optional buffer."""
        if self.expires_at is None:
            return False
        return time.time() >= (self.expires_at - buffer_seconds)
