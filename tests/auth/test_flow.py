"""Tests for AuthorizationFlow orchestration.

The listener, browser, discovery and token collaborators are replaced with
stubs so each mapping from callback outcome to flow result is exercised
without sockets.
"""

import asyncio
import inspect
import random
import threading
import time
from unittest.mock import AsyncMock, MagicMock
from urllib.parse import parse_qs, urlparse

import pytest

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
    DiscoveryError,
    FlowCancelledError,
    FlowStateError,
    OAuthTokenError,
    ProviderError,
    StateMismatchError,
)
from oidc_cli.auth.models.flow import Failed, TokenExchanged
from oidc_cli.auth.models.profile import Profile
from oidc_cli.auth.models.tokens import TokenResponse
from oidc_cli.auth.primitives.pkce import PKCEGenerator, code_challenge_for
from oidc_cli.auth.services.flow import AuthorizationFlow

REDIRECT_URI = "http://localhost:8080/callback"
TOKENS = TokenResponse(access_token="tok1", token_type="Bearer", expires_in=3600)


class StubBrowser:
    def __init__(self, opens: bool = True):
        self.opens = opens
        self.urls: list[str] = []

    def open(self, url: str) -> bool:
        self.urls.append(url)
        return self.opens

    @property
    def state(self) -> str:
        return parse_qs(urlparse(self.urls[-1]).query)["state"][0]


class StubListener:
    """Stands in for CallbackListener; the outcome is built at wait time."""

    def __init__(self, outcome):
        self.outcome = outcome
        self.started = False
        self.closed = False
        self.waited_with = None

    async def start(self) -> None:
        self.started = True

    async def await_callback(self, timeout, cancel_event=None):
        self.waited_with = (timeout, cancel_event)
        result = self.outcome()
        if inspect.isawaitable(result):
            result = await result
        return result

    async def close(self) -> None:
        self.closed = True


async def _eventually(predicate, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def _profile(**overrides) -> Profile:
    record = {
        "authorization_endpoint": "https://auth.example.com/authorize",
        "token_endpoint": "https://auth.example.com/token",
        "client_id": "test-client",
        "redirect_uri": REDIRECT_URI,
        "scope": "openid profile",
        "timeout": 60,
    }
    record.update(overrides)
    return Profile.model_validate(record)


class TestAuthorizationFlow:
    def setup_method(self):
        self.browser = StubBrowser()
        self.discovery = MagicMock()
        self.discovery.resolve = AsyncMock(
            return_value=AuthorizationEndpoints(
                authorization_endpoint="https://idp.example.com/authorize",
                token_endpoint="https://idp.example.com/token",
                source="discovery",
            )
        )
        self.discovery.close = AsyncMock()
        self.token_client = MagicMock()
        self.token_client.exchange = AsyncMock(return_value=TOKENS)
        self.token_client.close = AsyncMock()
        self.listener = None

    def _flow(self, outcome, profile=None, **kwargs) -> AuthorizationFlow:
        def factory(redirect_uri):
            assert redirect_uri == REDIRECT_URI
            self.listener = StubListener(outcome)
            return self.listener

        return AuthorizationFlow(
            profile or _profile(),
            browser=self.browser,
            discovery=self.discovery,
            token_client=self.token_client,
            listener_factory=factory,
            **kwargs,
        )

    async def _success(self):
        await _eventually(lambda: self.browser.urls)
        return CallbackSuccess(code="ABC123", state=self.browser.state)

    async def test_successful_flow_exchanges_code(self):
        # Arrange
        flow = self._flow(self._success)

        # Act
        tokens = await flow.run()

        # Assert
        assert tokens is TOKENS
        assert isinstance(flow.state, TokenExchanged)
        assert self.listener.started and self.listener.closed
        assert self.listener.waited_with == (60.0, None)
        self.discovery.resolve.assert_not_awaited()

        kwargs = self.token_client.exchange.await_args.kwargs
        assert kwargs["endpoint"] == "https://auth.example.com/token"
        assert kwargs["code"] == "ABC123"
        assert kwargs["redirect_uri"] == REDIRECT_URI
        assert kwargs["client_id"] == "test-client"
        assert kwargs["client_secret"] is None
        assert kwargs["auth_method"] == "client_secret_post"

    async def test_authorization_url_carries_pkce_and_state(self):
        # Arrange
        flow = self._flow(self._success, generator=PKCEGenerator(rng=random.Random(7)))
        twin = PKCEGenerator(rng=random.Random(7))
        expected_pkce = twin.generate_pkce()
        expected_state = twin.generate_state()

        # Act
        await flow.run()

        # Assert
        url = urlparse(self.browser.urls[0])
        params = parse_qs(url.query)
        assert f"{url.scheme}://{url.netloc}{url.path}" == (
            "https://auth.example.com/authorize"
        )
        assert params == {
            "response_type": ["code"],
            "client_id": ["test-client"],
            "redirect_uri": [REDIRECT_URI],
            "scope": ["openid profile"],
            "state": [expected_state.value],
            "code_challenge": [expected_pkce.code_challenge],
            "code_challenge_method": ["S256"],
        }
        verifier = self.token_client.exchange.await_args.kwargs["verifier"]
        assert verifier == expected_pkce.code_verifier
        assert code_challenge_for(verifier) == params["code_challenge"][0]

    async def test_state_mismatch_discards_code(self):
        # Arrange
        flow = self._flow(lambda: CallbackSuccess(code="ABC123", state="forged"))

        # Act & Assert
        with pytest.raises(StateMismatchError) as exc_info:
            await flow.run()

        assert exc_info.value.security_violation
        self.token_client.exchange.assert_not_awaited()
        assert isinstance(flow.state, Failed)
        assert flow.state.error is exc_info.value
        assert self.listener.closed

    async def test_provider_error_is_reported(self):
        async def denied():
            await _eventually(lambda: self.browser.urls)
            return CallbackProviderError(
                error="access_denied",
                error_description="User denied access",
                state=self.browser.state,
            )

        flow = self._flow(denied)

        with pytest.raises(ProviderError) as exc_info:
            await flow.run()

        assert exc_info.value.error == "access_denied"
        assert exc_info.value.error_description == "User denied access"
        self.token_client.exchange.assert_not_awaited()

    async def test_provider_error_without_state_is_still_a_provider_error(self):
        flow = self._flow(lambda: CallbackProviderError(error="server_error"))

        with pytest.raises(ProviderError, match="server_error"):
            await flow.run()

    async def test_provider_error_with_foreign_state_is_a_mismatch(self):
        flow = self._flow(
            lambda: CallbackProviderError(error="access_denied", state="forged")
        )

        with pytest.raises(StateMismatchError):
            await flow.run()

    async def test_timeout_maps_to_callback_timeout_error(self):
        flow = self._flow(lambda: CallbackTimeout(timeout=60.0, malformed_requests=2))

        with pytest.raises(CallbackTimeoutError) as exc_info:
            await flow.run()

        assert exc_info.value.timeout == 60.0
        assert "60 seconds" in str(exc_info.value)
        assert "2 malformed" in str(exc_info.value)

    async def test_cancelled_wait_maps_to_flow_cancelled_error(self):
        cancel_event = asyncio.Event()
        flow = self._flow(CallbackCancelled, cancel_event=cancel_event)

        with pytest.raises(FlowCancelledError):
            await flow.run()

        assert self.listener.waited_with == (60.0, cancel_event)
        assert self.listener.closed

    async def test_cancel_during_discovery(self):
        # Arrange
        async def hang(uri):
            await asyncio.sleep(3600)

        self.discovery.resolve = AsyncMock(side_effect=hang)
        cancel_event = asyncio.Event()
        profile = _profile(
            authorization_endpoint=None,
            token_endpoint=None,
            discovery_uri="https://idp.example.com/.well-known/openid-configuration",
        )
        flow = self._flow(self._success, profile=profile, cancel_event=cancel_event)
        asyncio.get_running_loop().call_later(0.05, cancel_event.set)

        # Act & Assert
        with pytest.raises(FlowCancelledError, match="endpoint discovery"):
            await flow.run()
        assert self.listener is None

    async def test_discovery_is_used_without_manual_endpoints(self):
        profile = _profile(
            authorization_endpoint=None,
            token_endpoint=None,
            discovery_uri="https://idp.example.com/.well-known/openid-configuration",
        )
        flow = self._flow(self._success, profile=profile)

        await flow.run()

        self.discovery.resolve.assert_awaited_once_with(
            "https://idp.example.com/.well-known/openid-configuration"
        )
        assert self.browser.urls[0].startswith("https://idp.example.com/authorize?")
        assert (
            self.token_client.exchange.await_args.kwargs["endpoint"]
            == "https://idp.example.com/token"
        )

    async def test_single_manual_endpoint_overrides_discovery(self):
        profile = _profile(
            authorization_endpoint=None,
            token_endpoint="https://proxy.example.com/token",
            discovery_uri="https://idp.example.com/.well-known/openid-configuration",
        )
        flow = self._flow(self._success, profile=profile)

        await flow.run()

        assert self.browser.urls[0].startswith("https://idp.example.com/authorize?")
        assert (
            self.token_client.exchange.await_args.kwargs["endpoint"]
            == "https://proxy.example.com/token"
        )

    async def test_discovery_failure_never_arms_listener(self):
        self.discovery.resolve = AsyncMock(side_effect=DiscoveryError("unreachable"))
        profile = _profile(
            authorization_endpoint=None,
            token_endpoint=None,
            discovery_uri="https://idp.example.com/.well-known/openid-configuration",
        )
        flow = self._flow(self._success, profile=profile)

        with pytest.raises(DiscoveryError):
            await flow.run()

        assert self.listener is None
        assert isinstance(flow.state, Failed)

    async def test_token_error_is_propagated(self):
        self.token_client.exchange = AsyncMock(
            side_effect=OAuthTokenError("invalid_grant", "Code expired")
        )
        flow = self._flow(self._success)

        with pytest.raises(OAuthTokenError):
            await flow.run()

        assert isinstance(flow.state, Failed)

    async def test_confidential_client_passes_secret_and_method(self):
        profile = _profile(
            client_secret="s3cret", token_endpoint_auth_method="client_secret_basic"
        )
        flow = self._flow(self._success, profile=profile)

        await flow.run()

        kwargs = self.token_client.exchange.await_args.kwargs
        assert kwargs["client_secret"] == "s3cret"
        assert kwargs["auth_method"] == "client_secret_basic"

    def _success_after_handler(self, shown: list[str]):
        async def outcome():
            await _eventually(lambda: shown)
            state = parse_qs(urlparse(shown[0]).query)["state"][0]
            return CallbackSuccess(code="c", state=state)

        return outcome

    async def test_browser_failure_hands_url_to_handler(self):
        # Arrange
        self.browser = StubBrowser(opens=False)
        shown: list[str] = []
        flow = self._flow(
            self._success_after_handler(shown), url_handler=shown.append
        )

        # Act
        await flow.run()

        # Assert
        assert shown == self.browser.urls
        assert flow.browser_opened is False

    async def test_browser_exception_is_not_fatal(self):
        shown: list[str] = []
        self.browser.open = MagicMock(side_effect=OSError("no display"))
        flow = self._flow(
            self._success_after_handler(shown), url_handler=shown.append
        )

        assert await flow.run() is TOKENS
        assert len(shown) == 1

    async def test_opened_browser_skips_url_handler(self):
        shown: list[str] = []
        flow = self._flow(self._success, url_handler=shown.append)

        await flow.run()

        assert shown == []
        assert flow.browser_opened is True

    async def test_blocking_launcher_does_not_delay_cancellation(self):
        # Arrange
        release = threading.Event()

        class BlockingBrowser:
            def open(self, url: str) -> bool:
                release.wait(5.0)
                return True

        self.browser = BlockingBrowser()
        cancel_event = asyncio.Event()

        async def cancelled():
            await cancel_event.wait()
            return CallbackCancelled()

        flow = self._flow(cancelled, cancel_event=cancel_event)
        asyncio.get_running_loop().call_later(0.1, cancel_event.set)

        # Act
        started = time.monotonic()
        try:
            with pytest.raises(FlowCancelledError):
                await flow.run()
            elapsed = time.monotonic() - started
        finally:
            release.set()

        # Assert
        assert elapsed < 1.0
        assert flow.browser_opened is None
        assert isinstance(flow.state, Failed)
        assert self.listener.closed

    async def test_callback_is_received_while_launcher_blocks(self):
        # Arrange
        release = threading.Event()
        launched: list[str] = []

        class BlockingBrowser:
            def open(self, url: str) -> bool:
                launched.append(url)
                release.wait(5.0)
                return True

        self.browser = BlockingBrowser()

        async def redirected():
            await _eventually(lambda: launched)
            state = parse_qs(urlparse(launched[0]).query)["state"][0]
            return CallbackSuccess(code="ABC123", state=state)

        flow = self._flow(redirected)

        # Act
        try:
            tokens = await flow.run()
        finally:
            release.set()

        # Assert
        assert tokens is TOKENS
        assert self.token_client.exchange.await_args.kwargs["code"] == "ABC123"

    async def test_cancel_during_token_exchange(self):
        # Arrange
        exchange_cancelled = asyncio.Event()

        async def hang(**kwargs):
            try:
                await asyncio.sleep(3600)
            except asyncio.CancelledError:
                exchange_cancelled.set()
                raise

        self.token_client.exchange = AsyncMock(side_effect=hang)
        cancel_event = asyncio.Event()

        async def success_then_cancel():
            result = await self._success()
            asyncio.get_running_loop().call_later(0.05, cancel_event.set)
            return result

        flow = self._flow(success_then_cancel, cancel_event=cancel_event)

        # Act & Assert
        with pytest.raises(FlowCancelledError, match="token exchange"):
            await flow.run()

        assert exchange_cancelled.is_set()
        self.token_client.exchange.assert_awaited_once()
        assert isinstance(flow.state, Failed)
        assert isinstance(flow.state.error, FlowCancelledError)

    async def test_flow_runs_only_once(self):
        flow = self._flow(self._success)
        await flow.run()

        with pytest.raises(FlowStateError):
            await flow.run()

    async def test_failed_flow_cannot_be_rerun(self):
        flow = self._flow(lambda: CallbackTimeout(timeout=60.0))
        with pytest.raises(CallbackTimeoutError):
            await flow.run()

        with pytest.raises(FlowStateError):
            await flow.run()

    def test_non_loopback_redirect_uri_is_rejected(self):
        profile = _profile(redirect_uri="https://myapp.example.com/callback")

        with pytest.raises(ConfigurationError):
            AuthorizationFlow(profile, browser=self.browser)

    async def test_injected_services_are_not_closed(self):
        flow = self._flow(self._success)

        await flow.run()

        self.discovery.close.assert_not_awaited()
        self.token_client.close.assert_not_awaited()
