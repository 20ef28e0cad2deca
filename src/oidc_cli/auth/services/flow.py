"""Authorization code flow orchestration service.

Coordinates endpoint resolution, PKCE, the authorization redirect, state
validation and the token exchange for one login attempt. Progress is held
as an explicit state value; every step consumes the state it needs and
returns the next one.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from oidc_cli.auth.models.callback import (
    CallbackCancelled,
    CallbackProviderError,
    CallbackSuccess,
    CallbackTimeout,
)
from oidc_cli.auth.models.discovery import AuthorizationEndpoints
from oidc_cli.auth.models.errors import (
    CallbackTimeoutError,
    ConfigurationError,
    FlowCancelledError,
    FlowError,
    FlowStateError,
    ProviderError,
    StateMismatchError,
)
from oidc_cli.auth.models.flow import (
    AuthorizationRequest,
    AwaitingCallback,
    CodeReceived,
    EndpointsResolved,
    Failed,
    FlowState,
    Initialized,
    ListenerArmed,
    TokenExchanged,
)
from oidc_cli.auth.models.profile import Profile
from oidc_cli.auth.models.tokens import TokenResponse
from oidc_cli.auth.primitives.browser import BrowserLauncher, SystemBrowser
from oidc_cli.auth.primitives.discovery import DiscoveryResolver
from oidc_cli.auth.primitives.listener import CallbackListener
from oidc_cli.auth.primitives.pkce import PKCEGenerator
from oidc_cli.auth.primitives.urls import bind_address_from_redirect_uri
from oidc_cli.auth.services.tokens import TokenExchangeClient

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _log_authorization_url(url: str) -> None:
    logger.warning(
        "Unable to open browser automatically. "
        f"Please open the following URL in your browser: {url}"
    )


class AuthorizationFlow:
    """Runs one OAuth 2.0 authorization code + PKCE login attempt.

    States: Initialized -> EndpointsResolved -> ListenerArmed ->
    AwaitingCallback -> CodeReceived -> TokenExchanged, with Failed reachable
    from any of them. An instance runs at most once.
    """

    def __init__(
        self,
        profile: Profile,
        *,
        browser: BrowserLauncher | None = None,
        generator: PKCEGenerator | None = None,
        discovery: DiscoveryResolver | None = None,
        token_client: TokenExchangeClient | None = None,
        listener_factory: Callable[[str], CallbackListener] = CallbackListener,
        cancel_event: asyncio.Event | None = None,
        url_handler: Callable[[str], None] | None = None,
    ):
        """Initialize the flow for a profile.

        Args:
            profile: Validated profile record
            browser: Launcher for the authorization URL
            generator: PKCE and state generator
            discovery: Discovery resolver; created and closed here if omitted
            token_client: Token exchange client; created and closed here if
                omitted
            listener_factory: Builds the callback listener from the redirect URI
            cancel_event: Setting this event aborts the attempt
            url_handler: Receives the authorization URL when no browser
                could be opened

        Raises:
            ConfigurationError: If the redirect URI is not a loopback URI
        """
        try:
            bind_address_from_redirect_uri(profile.redirect_uri)
        except ValueError as e:
            raise ConfigurationError(str(e)) from e

        self.profile = profile
        self._browser = browser or SystemBrowser()
        self._generator = generator or PKCEGenerator()
        self._owned: list[DiscoveryResolver | TokenExchangeClient] = []
        if discovery is None:
            discovery = DiscoveryResolver()
            self._owned.append(discovery)
        if token_client is None:
            token_client = TokenExchangeClient()
            self._owned.append(token_client)
        self._discovery = discovery
        self._token_client = token_client
        self._listener_factory = listener_factory
        self._cancel_event = cancel_event
        self._url_handler = url_handler or _log_authorization_url

        self.state: FlowState = Initialized()
        self.browser_opened: bool | None = None
        self._browser_launch: asyncio.Task[None] | None = None

    async def run(self) -> TokenResponse:
        """Run the login attempt to completion.

        Returns:
            Token response from the token endpoint

        Raises:
            DiscoveryError: Endpoint resolution failed
            BindError: The callback listener could not bind
            StateMismatchError: Callback state differs from the generated one
            ProviderError: The provider redirected back with an OAuth error
            CallbackTimeoutError: No callback before the profile timeout
            FlowCancelledError: The cancel event was set
            TokenExchangeError: The code exchange failed
            FlowStateError: The flow already ran
        """
        if not isinstance(self.state, Initialized):
            raise FlowStateError(
                f"Authorization flow already ran (state: {type(self.state).__name__})"
            )

        logger.info(f"Starting authorization flow for client {self.profile.client_id}")
        try:
            self.state = await self._resolve_endpoints(self.state)

            listener = self._listener_factory(self.profile.redirect_uri)
            try:
                self.state = await self._arm_listener(self.state, listener)
                self.state = self._open_browser(self.state)
                self.state = await self._await_code(self.state, listener)
            finally:
                try:
                    await self._stop_browser_launch()
                finally:
                    await listener.close()

            self.state = await self._exchange_code(self.state)
            logger.info("Authorization flow completed")
            return self.state.tokens

        except FlowError as e:
            self.state = Failed(e)
            raise
        except asyncio.CancelledError:
            self.state = Failed(FlowCancelledError("Login task was cancelled"))
            raise
        finally:
            for service in self._owned:
                await service.close()

    async def _resolve_endpoints(self, state: Initialized) -> EndpointsResolved:
        """Resolve endpoints from manual configuration or discovery.

        Manual endpoints take precedence. When both are configured, discovery
        is skipped; a single manual endpoint overrides its discovered value.
        """
        profile = self.profile
        if profile.has_manual_endpoints:
            logger.debug("Using manually configured endpoints")
            return EndpointsResolved(
                AuthorizationEndpoints(
                    authorization_endpoint=profile.authorization_endpoint,
                    token_endpoint=profile.token_endpoint,
                    source="manual",
                )
            )

        logger.debug(f"Resolving endpoints from {profile.discovery_uri}")
        discovered = await self._cancellable(
            self._discovery.resolve(profile.discovery_uri), "endpoint discovery"
        )
        return EndpointsResolved(self._apply_manual_overrides(discovered))

    def _apply_manual_overrides(
        self, discovered: AuthorizationEndpoints
    ) -> AuthorizationEndpoints:
        authorization_endpoint = discovered.authorization_endpoint
        token_endpoint = discovered.token_endpoint

        if self.profile.authorization_endpoint:
            logger.info(
                "Configured authorization_endpoint overrides discovered "
                f"{authorization_endpoint}"
            )
            authorization_endpoint = self.profile.authorization_endpoint
        if self.profile.token_endpoint:
            logger.info(
                f"Configured token_endpoint overrides discovered {token_endpoint}"
            )
            token_endpoint = self.profile.token_endpoint

        return AuthorizationEndpoints(
            authorization_endpoint=authorization_endpoint,
            token_endpoint=token_endpoint,
            source=discovered.source,
        )

    async def _arm_listener(
        self, state: EndpointsResolved, listener: CallbackListener
    ) -> ListenerArmed:
        pkce = self._generator.generate_pkce()
        state_token = self._generator.generate_state()

        auth_request = AuthorizationRequest(
            authorization_endpoint=state.endpoints.authorization_endpoint,
            client_id=self.profile.client_id,
            redirect_uri=self.profile.redirect_uri,
            scope=self.profile.scope,
            state=state_token.value,
            code_challenge=pkce.code_challenge,
            code_challenge_method=pkce.code_challenge_method,
        )
        authorization_url = auth_request.build_authorization_url()

        await listener.start()

        return ListenerArmed(
            endpoints=state.endpoints,
            pkce=pkce,
            state=state_token,
            authorization_url=authorization_url,
        )

    def _open_browser(self, state: ListenerArmed) -> AwaitingCallback:
        """Start handing the authorization URL to the browser launcher.

        The launch runs concurrently with the callback wait, so a launcher
        that blocks delays neither the timeout nor cancellation. Launch
        failures are not fatal: the URL goes to the url handler so the user
        can open it by hand while the listener keeps waiting.
        """
        self._browser_launch = asyncio.create_task(
            self._launch_browser(state.authorization_url)
        )
        return AwaitingCallback(
            endpoints=state.endpoints,
            pkce=state.pkce,
            state=state.state,
            authorization_url=state.authorization_url,
        )

    async def _launch_browser(self, url: str) -> None:
        try:
            opened = await asyncio.to_thread(self._browser.open, url)
        except Exception as e:
            logger.warning(f"Browser launcher failed: {e}")
            opened = False

        self.browser_opened = bool(opened)
        if opened:
            logger.info("Opened browser for authentication")
        else:
            self._url_handler(url)

    async def _stop_browser_launch(self) -> None:
        """Stop waiting for a launcher that has not returned yet.

        The launcher thread itself cannot be interrupted; its result is
        ignored once the callback wait is over.
        """
        launch = self._browser_launch
        if launch is None:
            return
        if not launch.done():
            logger.debug("Browser launcher still running; no longer waiting for it")
            launch.cancel()
        await asyncio.wait({launch})
        if not launch.cancelled() and launch.exception() is not None:
            logger.warning(
                f"Handing out the authorization URL failed: {launch.exception()}"
            )

    async def _await_code(
        self, state: AwaitingCallback, listener: CallbackListener
    ) -> CodeReceived:
        timeout = self.profile.timeout
        logger.info("Waiting for authentication callback...")
        result = await listener.await_callback(timeout, self._cancel_event)

        if isinstance(result, CallbackSuccess):
            if not state.state.matches(result.state):
                logger.error("State parameter mismatch - possible CSRF attack")
                raise StateMismatchError(
                    "State parameter mismatch - possible CSRF attack; "
                    "authorization code discarded"
                )
            logger.debug("Callback state verified")
            return CodeReceived(
                endpoints=state.endpoints, pkce=state.pkce, code=result.code
            )

        if isinstance(result, CallbackProviderError):
            # A present but foreign state means the error did not come from
            # our request.
            if result.state is not None and not state.state.matches(result.state):
                raise StateMismatchError(
                    f"State parameter mismatch in error response ({result.error})"
                )
            raise ProviderError(
                result.error, result.error_description, result.error_uri
            )

        if isinstance(result, CallbackTimeout):
            message = f"Authentication timeout ({timeout:g} seconds)"
            if result.malformed_requests:
                message += (
                    f"; ignored {result.malformed_requests} malformed callback "
                    "request(s)"
                )
            raise CallbackTimeoutError(message, timeout)

        if isinstance(result, CallbackCancelled):
            raise FlowCancelledError(
                "Login cancelled while waiting for the authorization callback"
            )

        raise FlowStateError(f"Unexpected callback outcome: {result!r}")

    async def _exchange_code(self, state: CodeReceived) -> TokenExchanged:
        logger.debug("Exchanging authorization code for tokens")
        tokens = await self._cancellable(
            self._token_client.exchange(
                endpoint=state.endpoints.token_endpoint,
                code=state.code,
                verifier=state.pkce.code_verifier,
                redirect_uri=self.profile.redirect_uri,
                client_id=self.profile.client_id,
                client_secret=self.profile.client_secret,
                auth_method=self.profile.token_endpoint_auth_method,
            ),
            "token exchange",
        )
        return TokenExchanged(tokens)

    async def _cancellable(self, operation: Awaitable[T], description: str) -> T:
        """Await a network operation, aborting it when the cancel event fires."""
        if self._cancel_event is None:
            return await operation

        task = asyncio.ensure_future(operation)
        cancel_waiter = asyncio.create_task(self._cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, cancel_waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            cancel_waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        await asyncio.wait({task})
        raise FlowCancelledError(f"Login cancelled during {description}")
