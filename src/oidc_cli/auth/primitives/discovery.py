"""OpenID Connect discovery primitive.

Fetches a provider's discovery document and resolves the authorization and
token endpoints used by the authorization code flow. One attempt per login:
no retries and no caching across attempts.
"""

from __future__ import annotations

import logging
from types import TracebackType

import httpx
from pydantic import ValidationError

from oidc_cli.auth.models.discovery import AuthorizationEndpoints, DiscoveryDocument
from oidc_cli.auth.models.errors import DiscoveryError
from oidc_cli.auth.primitives.urls import check_endpoint_url

logger = logging.getLogger(__name__)


class DiscoveryResolver:
    """Resolves OAuth endpoints from an OpenID Connect discovery document."""

    def __init__(
        self, timeout: float = 30.0, http_client: httpx.AsyncClient | None = None
    ):
        """Initialize discovery.

        Args:
            timeout: HTTP request timeout in seconds
            http_client: Optional shared client; the resolver only closes
                clients it created itself
        """
        self.timeout = timeout
        self._owns_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)

    async def resolve(self, discovery_uri: str) -> AuthorizationEndpoints:
        """Fetch the discovery document and extract the endpoint pair.

        Args:
            discovery_uri: URL of the provider's discovery document, usually
                ``https://provider/.well-known/openid-configuration``

        Returns:
            Resolved endpoints

        Raises:
            DiscoveryError: If the document cannot be fetched or is invalid
        """
        document = await self.fetch_document(discovery_uri)
        return AuthorizationEndpoints(
            authorization_endpoint=document.authorization_endpoint,
            token_endpoint=document.token_endpoint,
            source="discovery",
        )

    async def fetch_document(self, discovery_uri: str) -> DiscoveryDocument:
        """Fetch and validate the discovery document.

        Raises:
            DiscoveryError: If the URI is invalid, the request fails or times
                out, or the document is malformed
        """
        problem = check_endpoint_url(discovery_uri, "discovery URI")
        if problem:
            raise DiscoveryError(problem)

        try:
            logger.debug(f"Fetching discovery document from: {discovery_uri}")
            response = await self._http_client.get(
                discovery_uri,
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise DiscoveryError(
                f"Timed out after {self.timeout}s fetching discovery document "
                f"from {discovery_uri}"
            ) from e
        except httpx.HTTPStatusError as e:
            raise DiscoveryError(
                f"Discovery request to {discovery_uri} failed with status "
                f"{e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise DiscoveryError(
                f"Failed to fetch discovery document from {discovery_uri}: {e}"
            ) from e

        try:
            document = DiscoveryDocument.model_validate_json(response.content)
        except ValidationError as e:
            raise DiscoveryError(
                f"Invalid discovery document from {discovery_uri}: {e}"
            ) from e

        if not document.supports_pkce():
            logger.warning(
                f"Provider at {discovery_uri} does not advertise S256 PKCE support; "
                "continuing anyway"
            )

        logger.debug(
            f"Discovered authorization endpoint {document.authorization_endpoint} "
            f"and token endpoint {document.token_endpoint}"
        )
        return document

    async def close(self) -> None:
        """Close the HTTP client if this resolver created it."""
        if self._owns_client:
            await self._http_client.aclose()

    async def __aenter__(self) -> DiscoveryResolver:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()
