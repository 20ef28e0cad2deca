"""Login entry point for profile and display collaborators.

Wires a validated profile into an AuthorizationFlow with shared HTTP
resources and returns the token set.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from collections.abc import Callable, Mapping
from typing import Any

import httpx

from oidc_cli.auth.models.profile import Profile
from oidc_cli.auth.models.tokens import TokenResponse
from oidc_cli.auth.primitives.browser import BrowserLauncher
from oidc_cli.auth.primitives.discovery import DiscoveryResolver
from oidc_cli.auth.primitives.pkce import PKCEGenerator
from oidc_cli.auth.services.flow import AuthorizationFlow
from oidc_cli.auth.services.tokens import TokenExchangeClient

logger = logging.getLogger(__name__)

DEFAULT_HTTP_TIMEOUT = 30.0


async def run_login(
    profile: Profile | Mapping[str, Any],
    *,
    browser: BrowserLauncher | None = None,
    cancel_event: asyncio.Event | None = None,
    generator: PKCEGenerator | None = None,
    http_client: httpx.AsyncClient | None = None,
    http_timeout: float = DEFAULT_HTTP_TIMEOUT,
    url_handler: Callable[[str], None] | None = None,
) -> TokenResponse:
    """Log in with a profile using the authorization code flow with PKCE.

    Args:
        profile: Profile model or the raw record from the profile store
        browser: Launcher for the authorization URL, defaults to the system
            browser
        cancel_event: Setting this event aborts the login promptly
        generator: PKCE and state generator, defaults to the system CSPRNG
        http_client: Optional shared client for discovery and token calls
        http_timeout: Timeout in seconds for discovery and token requests
        url_handler: Receives the authorization URL if no browser opened

    Returns:
        Token response; tokens are never persisted here

    Raises:
        ConfigurationError: If the profile record is invalid
        FlowError: Any failure of the login attempt
    """
    resolved = Profile.from_record(profile)

    owns_client = http_client is None
    client = http_client or httpx.AsyncClient(timeout=http_timeout)
    try:
        flow = AuthorizationFlow(
            resolved,
            browser=browser,
            generator=generator,
            discovery=DiscoveryResolver(timeout=http_timeout, http_client=client),
            token_client=TokenExchangeClient(timeout=http_timeout, http_client=client),
            cancel_event=cancel_event,
            url_handler=url_handler,
        )
        return await flow.run()
    finally:
        if owns_client:
            await client.aclose()


def run_login_blocking(
    profile: Profile | Mapping[str, Any], **kwargs: Any
) -> TokenResponse:
    """Run run_login() in a fresh event loop, mapping Ctrl-C to cancellation.

    On platforms without loop signal handlers, Ctrl-C falls back to
    asyncio.run()'s task cancellation, which still releases the listener.
    """

    async def _main() -> TokenResponse:
        cancel_event = kwargs.pop("cancel_event", None) or asyncio.Event()
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, cancel_event.set)
            installed = True
        except (NotImplementedError, RuntimeError):
            installed = False
        try:
            return await run_login(profile, cancel_event=cancel_event, **kwargs)
        finally:
            if installed:
                loop.remove_signal_handler(signal.SIGINT)

    return asyncio.run(_main())
