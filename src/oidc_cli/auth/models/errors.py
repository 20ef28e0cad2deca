"""Exception hierarchy for the authorization code flow.

Each failure mode of a login attempt has its own exception type so callers
can tell a provider refusal from a CSRF violation or a closed port.
"""

from __future__ import annotations


class OIDCError(Exception):
    """Base exception for all oidc-cli errors."""

    pass


class ConfigurationError(OIDCError):
    """Raised when a profile record is incomplete or invalid."""

    pass


class FlowStateError(RuntimeError):
    """Raised when a flow step is invoked from the wrong state.

    This is a programming error, not a login failure.
    """

    pass


class FlowError(OIDCError):
    """Base exception for failures of a single login attempt."""

    pass


class DiscoveryError(FlowError):
    """Raised when the discovery document is unreachable or malformed."""

    pass


class BindError(FlowError):
    """Raised when the local callback listener cannot bind its address."""

    def __init__(self, message: str, host: str, port: int):
        super().__init__(message)
        self.host = host
        self.port = port


class StateMismatchError(FlowError):
    """Raised when the callback state does not match the generated state.

    Always treated as a possible CSRF attack: the flow is aborted and the
    authorization code is never exchanged.
    """

    security_violation = True


class ProviderError(FlowError):
    """Raised when the identity provider redirected back with an OAuth error."""

    def __init__(
        self,
        error: str,
        error_description: str | None = None,
        error_uri: str | None = None,
    ):
        message = f"Authorization failed: {error}"
        if error_description:
            message += f" ({error_description})"
        if error_uri:
            message += f" See: {error_uri}"
        super().__init__(message)
        self.error = error
        self.error_description = error_description
        self.error_uri = error_uri


class CallbackTimeoutError(FlowError):
    """Raised when no valid callback arrived before the deadline."""

    def __init__(self, message: str, timeout: float):
        super().__init__(message)
        self.timeout = timeout


class FlowCancelledError(FlowError):
    """Raised when the user cancels the login attempt."""

    pass


class TokenExchangeError(FlowError):
    """Raised when the authorization code to token exchange fails."""

    def __init__(self, message: str, endpoint: str | None = None):
        super().__init__(message)
        self.endpoint = endpoint


class TokenEndpointError(TokenExchangeError):
    """Raised on transport failures or non-OAuth HTTP errors from the token endpoint."""

    def __init__(
        self,
        message: str,
        endpoint: str | None = None,
        status_code: int | None = None,
    ):
        super().__init__(message, endpoint)
        self.status_code = status_code


class OAuthTokenError(TokenExchangeError):
    """Raised when the token endpoint returns an OAuth error body (RFC 6749 5.2)."""

    def __init__(
        self,
        error: str,
        error_description: str | None = None,
        endpoint: str | None = None,
        status_code: int | None = None,
    ):
        message = f"Token endpoint returned {error}"
        if error_description:
            message += f": {error_description}"
        super().__init__(message, endpoint)
        self.error = error
        self.error_description = error_description
        self.status_code = status_code


class TokenResponseValidationError(TokenExchangeError):
    """Raised when a token response is unparseable or lacks required fields."""

    pass
