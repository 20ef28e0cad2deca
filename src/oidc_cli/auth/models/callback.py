"""Outcomes of the local callback listener.

The listener produces exactly one terminal outcome per attempt. Malformed
requests are classified too, but the listener keeps waiting after them.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Union


@dataclass(frozen=True)
class CallbackSuccess:
    """Provider redirected back with an authorization code."""

    code: str = field(repr=False)
    state: str


@dataclass(frozen=True)
class CallbackProviderError:
    """Provider redirected back with an OAuth error (RFC 6749 Section 4.1.2.1)."""

    error: str
    error_description: str | None = None
    error_uri: str | None = None
    state: str | None = None


@dataclass(frozen=True)
class CallbackTimeout:
    """No completing callback arrived before the deadline."""

    timeout: float
    malformed_requests: int = 0


@dataclass(frozen=True)
class CallbackCancelled:
    """The wait was aborted by the cancellation signal."""

    pass


@dataclass(frozen=True)
class CallbackMalformed:
    """A request hit the callback path without usable parameters."""

    reason: str


CallbackResult = Union[
    CallbackSuccess,
    CallbackProviderError,
    CallbackTimeout,
    CallbackCancelled,
    CallbackMalformed,
]


def classify_callback(params: Mapping[str, str]) -> CallbackResult:
    """Classify callback query parameters.

    ``error`` takes precedence over ``code``; a success needs both ``code``
    and ``state``.
    """
    if "error" in params:
        return CallbackProviderError(
            error=params["error"],
            error_description=params.get("error_description") or None,
            error_uri=params.get("error_uri") or None,
            state=params.get("state"),
        )

    code = params.get("code")
    state = params.get("state")
    if code and state:
        return CallbackSuccess(code=code, state=state)

    if not code and not state:
        return CallbackMalformed("Missing code and state parameters")
    if not code:
        return CallbackMalformed("Missing code parameter")
    return CallbackMalformed("Missing state parameter")


def is_terminal(result: CallbackResult) -> bool:
    """Check whether a callback outcome completes the listener."""
    return not isinstance(result, CallbackMalformed)
