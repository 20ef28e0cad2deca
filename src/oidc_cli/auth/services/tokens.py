"""Authorization code to token exchange service.

Implements the RFC 6749 Section 4.1.3 token request with the PKCE
code_verifier (RFC 7636). A single POST per login; no retries.
"""

from __future__ import annotations

import logging
import time
from types import TracebackType
from typing import Any

import httpx
from pydantic import ValidationError

from oidc_cli.auth.models.errors import (
    OAuthTokenError,
    TokenEndpointError,
    TokenResponseValidationError,
)
from oidc_cli.auth.models.tokens import (
    TokenEndpointAuthMethod,
    TokenRequest,
    TokenResponse,
)

logger = logging.getLogger(__name__)


class TokenExchangeClient:
    """Exchanges authorization codes for tokens at the token endpoint.

    Uses application/x-www-form-urlencoded encoding as RFC 6749 requires.
    Failures are split into transport/HTTP errors, OAuth error bodies and
    invalid success bodies.
    """

    def __init__(
        self, timeout: float = 30.0, http_client: httpx.AsyncClient | None = None
    ):
        """Initialize the token exchange client.

        Args:
            timeout: HTTP request timeout in seconds
            http_client: Optional shared client; only clients created here
                are closed by close()
        """
        self.timeout = timeout
        self._owns_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)

    async def exchange(
        self,
        endpoint: str,
        code: str,
        verifier: str,
        redirect_uri: str,
        client_id: str,
        client_secret: str | None = None,
        auth_method: TokenEndpointAuthMethod = "client_secret_post",
    ) -> TokenResponse:
        """Exchange an authorization code for tokens.

        Args:
            endpoint: Token endpoint URL
            code: Authorization code from the callback
            verifier: PKCE code verifier of the same attempt
            redirect_uri: Redirect URI used in the authorization request
            client_id: OAuth client identifier
            client_secret: Secret for confidential clients
            auth_method: How the secret is sent to the token endpoint

        Returns:
            Validated token response with ``expires_at`` stamped at receipt

        Raises:
            TokenEndpointError: On network errors, timeouts or non-OAuth
                HTTP failures
            OAuthTokenError: If the endpoint returned an OAuth error body
            TokenResponseValidationError: If a success body is unusable
        """
        return await self.exchange_request(
            TokenRequest(
                token_endpoint=endpoint,
                code=code,
                redirect_uri=redirect_uri,
                client_id=client_id,
                code_verifier=verifier,
                client_secret=client_secret,
                auth_method=auth_method,
            )
        )

    async def exchange_request(self, token_request: TokenRequest) -> TokenResponse:
        endpoint = token_request.token_endpoint
        logger.debug(f"Exchanging authorization code at {endpoint}")

        headers = {
            "Content-Type": "application/x-www-form-urlencoded",
            "Accept": "application/json",
        }
        form_data = token_request.to_form_data()

        # Log request details (without sensitive data)
        logger.debug(
            f"Token request: grant_type={form_data['grant_type']}, "
            f"client_id={form_data['client_id']}, "
            f"client_auth={token_request.auth_method if token_request.client_secret else 'none'}"
        )

        request_kwargs: dict[str, Any] = {
            "data": form_data,
            "headers": headers,
            "timeout": self.timeout,
        }
        basic_auth = token_request.basic_auth()
        if basic_auth is not None:
            request_kwargs["auth"] = httpx.BasicAuth(*basic_auth)

        try:
            response = await self._http_client.post(endpoint, **request_kwargs)
        except httpx.TimeoutException as e:
            raise TokenEndpointError(
                f"Token request to {endpoint} timed out after {self.timeout}s",
                endpoint=endpoint,
            ) from e
        except httpx.HTTPError as e:
            raise TokenEndpointError(
                f"HTTP error during token exchange with {endpoint}: {e}",
                endpoint=endpoint,
            ) from e

        received_at = time.time()
        return self._parse_token_response(response, endpoint, received_at)

    def _parse_token_response(
        self, response: httpx.Response, endpoint: str, received_at: float
    ) -> TokenResponse:
        """Parse a token endpoint response (RFC 6749 Section 5).

        Raises:
            OAuthTokenError: For error responses carrying an ``error`` field
            TokenEndpointError: For other non-2xx responses
            TokenResponseValidationError: For unusable 2xx responses
        """
        status_code = response.status_code
        try:
            payload = response.json()
        except ValueError:
            payload = None

        if not response.is_success:
            if isinstance(payload, dict) and isinstance(payload.get("error"), str):
                logger.warning(
                    f"Token exchange failed with {status_code}: "
                    f"{payload['error']} - {payload.get('error_description')}"
                )
                raise OAuthTokenError(
                    error=payload["error"],
                    error_description=payload.get("error_description"),
                    endpoint=endpoint,
                    status_code=status_code,
                )
            raise TokenEndpointError(
                f"Token exchange failed with status {status_code}: "
                f"{response.text[:500]}",
                endpoint=endpoint,
                status_code=status_code,
            )

        if not isinstance(payload, dict):
            raise TokenResponseValidationError(
                "Token response is not a JSON object", endpoint=endpoint
            )

        # Some providers answer 200 with an OAuth error body
        if isinstance(payload.get("error"), str):
            raise OAuthTokenError(
                error=payload["error"],
                error_description=payload.get("error_description"),
                endpoint=endpoint,
                status_code=status_code,
            )

        for required in ("access_token", "token_type"):
            if not payload.get(required):
                raise TokenResponseValidationError(
                    f"Token response missing required {required}", endpoint=endpoint
                )

        try:
            token_response = TokenResponse.from_payload(payload, received_at)
        except ValidationError as e:
            raise TokenResponseValidationError(
                f"Invalid token response format: {e}", endpoint=endpoint
            ) from e

        logger.info("Token exchange successful")
        return token_response

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client:
            await self._http_client.aclose()

    async def __aenter__(self) -> TokenExchangeClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()
