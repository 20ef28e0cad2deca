"""URL utilities shared by discovery, profile validation and the callback listener."""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass
from urllib.parse import parse_qs, urlparse


@dataclass(frozen=True)
class BindAddress:
    """Local address the callback listener binds, derived from a redirect URI."""

    host: str
    port: int
    path: str

    @property
    def is_ipv6(self) -> bool:
        return ":" in self.host


def is_loopback_host(host: str | None) -> bool:
    """Check whether a hostname is ``localhost`` or a loopback IP literal."""
    if not host:
        return False
    if host.lower() == "localhost":
        return True
    try:
        return ipaddress.ip_address(host.strip("[]")).is_loopback
    except ValueError:
        return False


def is_loopback_redirect_uri(uri: str) -> bool:
    parsed = urlparse(uri)
    return parsed.scheme in ("http", "https") and is_loopback_host(parsed.hostname)


def check_endpoint_url(url: str, name: str) -> str | None:
    """Check an endpoint URL is absolute and uses an allowed scheme.

    ``https`` is always allowed; plain ``http`` only for loopback hosts.

    Args:
        url: URL to check
        name: Human-readable field name used in the problem message

    Returns:
        A description of the problem, or None if the URL is acceptable
    """
    if not url:
        return f"{name} cannot be empty"

    try:
        parsed = urlparse(url)
        hostname = parsed.hostname
    except ValueError:
        return f"Invalid {name} URL: {url}"

    if not parsed.scheme or not parsed.netloc or not hostname:
        return f"{name} must be an absolute URL: {url}"
    if parsed.scheme == "https":
        return None
    if parsed.scheme == "http" and is_loopback_host(hostname):
        return None
    if parsed.scheme == "http":
        return f"{name} must use HTTPS: {url}"
    return f"{name} uses unsupported scheme '{parsed.scheme}': {url}"


def bind_address_from_redirect_uri(redirect_uri: str) -> BindAddress:
    """Derive the listener bind address from a loopback redirect URI.

    ``localhost`` binds the IPv4 loopback address. A missing port falls back
    to the scheme default. A missing path is the root path, which is
    where the provider sends the browser for such a URI.

    Raises:
        ValueError: If the URI is malformed or does not target a loopback host
    """
    parsed = urlparse(redirect_uri)
    hostname = parsed.hostname
    if parsed.scheme not in ("http", "https") or not hostname:
        raise ValueError(f"Invalid redirect URI: {redirect_uri}")
    if not is_loopback_host(hostname):
        raise ValueError(
            f"Redirect URI host '{hostname}' is not a loopback address; "
            "the local callback listener cannot receive it"
        )

    port = parsed.port
    if port is None:
        port = 443 if parsed.scheme == "https" else 80

    host = "127.0.0.1" if hostname.lower() == "localhost" else hostname
    return BindAddress(host=host, port=port, path=parsed.path or "/")


def single_query_params(query: str) -> dict[str, str]:
    """Parse a query string keeping the first value of each parameter."""
    return {
        key: values[0]
        for key, values in parse_qs(query, keep_blank_values=True).items()
        if values
    }
