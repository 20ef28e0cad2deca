"""Profile model consumed by the login flow.

A profile is a named configuration record owned by the profile store. The
flow only reads it; validation mirrors the rules applied when profiles are
created.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any
from urllib.parse import urlparse

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    ValidationInfo,
    field_validator,
    model_validator,
)

from oidc_cli.auth.models.errors import ConfigurationError
from oidc_cli.auth.models.tokens import TokenEndpointAuthMethod
from oidc_cli.auth.primitives.urls import check_endpoint_url

DEFAULT_CALLBACK_TIMEOUT = 300.0

_SCOPE_VALUE = re.compile(r"^[A-Za-z0-9_.:\-]+$")


class Profile(BaseModel):
    """OAuth client configuration for one identity provider."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    client_id: str
    redirect_uri: str
    scope: str
    client_secret: str | None = Field(default=None, repr=False)
    discovery_uri: str | None = None
    authorization_endpoint: str | None = None
    token_endpoint: str | None = None
    timeout: float = Field(default=DEFAULT_CALLBACK_TIMEOUT, gt=0)
    token_endpoint_auth_method: TokenEndpointAuthMethod = "client_secret_post"

    @field_validator("client_id")
    @classmethod
    def validate_client_id(cls, v: str) -> str:
        if not v:
            raise ValueError("Client ID cannot be empty")
        if v.strip() != v:
            raise ValueError("Client ID cannot have leading or trailing whitespace")
        if len(v) > 255:
            raise ValueError("Client ID cannot exceed 255 characters")
        return v

    @field_validator("redirect_uri")
    @classmethod
    def validate_redirect_uri(cls, v: str) -> str:
        if not v:
            raise ValueError("Redirect URI cannot be empty")
        parsed = urlparse(v)
        if parsed.scheme not in ("http", "https"):
            raise ValueError("Redirect URI must use http or https scheme")
        if not parsed.hostname:
            raise ValueError("Redirect URI must have a valid host")
        return v

    @field_validator("scope")
    @classmethod
    def validate_scope(cls, v: str) -> str:
        values = v.split()
        if not values:
            raise ValueError("Scope must contain at least one valid scope value")
        for value in values:
            if not _SCOPE_VALUE.match(value):
                raise ValueError(
                    f"Invalid scope value '{value}': must contain only alphanumeric "
                    "characters, underscores, hyphens, dots, or colons"
                )
        return " ".join(values)

    @field_validator("discovery_uri", "authorization_endpoint", "token_endpoint")
    @classmethod
    def validate_urls(cls, v: str | None, info: ValidationInfo) -> str | None:
        if v is None:
            return v
        problem = check_endpoint_url(v, info.field_name.replace("_", " "))
        if problem:
            raise ValueError(problem)
        return v

    @model_validator(mode="after")
    def validate_endpoint_configuration(self) -> Profile:
        if self.discovery_uri is None and not self.has_manual_endpoints:
            raise ValueError(
                "Either discovery_uri or both authorization_endpoint and "
                "token_endpoint must be provided"
            )
        return self

    @property
    def has_manual_endpoints(self) -> bool:
        return bool(self.authorization_endpoint and self.token_endpoint)

    @property
    def is_confidential(self) -> bool:
        return bool(self.client_secret)

    @classmethod
    def from_record(cls, record: Profile | Mapping[str, Any]) -> Profile:
        """Build a profile from a store record, raising ConfigurationError."""
        if isinstance(record, cls):
            return record
        try:
            return cls.model_validate(dict(record))
        except ValidationError as e:
            raise ConfigurationError(f"Invalid profile: {e}") from e
