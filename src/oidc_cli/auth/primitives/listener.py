"""Local HTTP listener that captures the authorization redirect.

Binds the host and port of a loopback redirect URI, waits for one completing
callback, answers the browser with a static page, and unbinds. The wait is a
race between three independent sources: the callback, the deadline and the
cancellation event.
"""

from __future__ import annotations

import asyncio
import contextlib
import html
import logging
import os
import socket
from collections.abc import Iterator
from types import TracebackType

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import HTMLResponse
from starlette.routing import Route

from oidc_cli.auth.models.callback import (
    CallbackCancelled,
    CallbackProviderError,
    CallbackResult,
    CallbackSuccess,
    CallbackTimeout,
    classify_callback,
    is_terminal,
)
from oidc_cli.auth.models.errors import BindError, ConfigurationError, FlowStateError
from oidc_cli.auth.primitives.urls import (
    BindAddress,
    bind_address_from_redirect_uri,
    single_query_params,
)

logger = logging.getLogger(__name__)

SHUTDOWN_TIMEOUT = 5.0

_NO_STORE = {"Cache-Control": "no-cache, no-store, must-revalidate"}

_PAGE = """<!DOCTYPE html>
<html>
<head>
    <title>{title}</title>
    <style>
        body {{ font-family: Arial, sans-serif; display: flex; justify-content: center;
               align-items: center; height: 100vh; margin: 0; background-color: #f5f5f5; }}
        .container {{ text-align: center; background: white; padding: 2rem;
                     border-radius: 8px; box-shadow: 0 2px 10px rgba(0,0,0,0.1); }}
        .success {{ color: #28a745; }}
        .error {{ color: #dc3545; }}
        .message {{ margin-top: 1rem; color: #666; }}
        .details {{ margin-top: 1rem; padding: 1rem; background: #f8f9fa; border-radius: 4px; }}
    </style>
</head>
<body>
    <div class="container">
        <h1 class="{css_class}">{heading}</h1>
        <p class="message">{message}</p>
        {details}
    </div>
</body>
</html>
"""


def _render_page(
    title: str, heading: str, message: str, css_class: str, details: str = ""
) -> str:
    return _PAGE.format(
        title=title,
        heading=heading,
        message=message,
        css_class=css_class,
        details=details,
    )


SUCCESS_PAGE = _render_page(
    title="Authentication Successful",
    heading="&#10003; Authentication Successful!",
    message="You can now close this browser window and return to the terminal.",
    css_class="success",
)


def provider_error_page(error: str, error_description: str | None) -> str:
    description = error_description or "An authentication error occurred"
    details = (
        '<div class="details">'
        f"<strong>Error:</strong> {html.escape(error)}<br>"
        f"<strong>Description:</strong> {html.escape(description)}"
        "</div>"
    )
    return _render_page(
        title="Authentication Error",
        heading="&#10007; Authentication Failed",
        message="Please close this browser window and try again.",
        css_class="error",
        details=details,
    )


def status_page(status_code: int, message: str) -> str:
    return _render_page(
        title="Error",
        heading=f"{status_code} - {html.escape(message)}",
        message="",
        css_class="error",
    )


class _CallbackServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the login flow."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


class CallbackListener:
    """Single-use HTTP listener for the OAuth redirect.

    Accepts at most one completing callback (success or provider error).
    Requests on the callback path without usable parameters are answered
    with 400 and the listener keeps waiting. The socket is released on every
    exit path.
    """

    def __init__(self, redirect_uri: str):
        """Initialize the listener for a redirect URI.

        Args:
            redirect_uri: Loopback redirect URI registered with the provider

        Raises:
            ConfigurationError: If the redirect URI is not a loopback URI
        """
        try:
            self.address: BindAddress = bind_address_from_redirect_uri(redirect_uri)
        except ValueError as e:
            raise ConfigurationError(str(e)) from e

        self.redirect_uri = redirect_uri
        self._app = Starlette(
            routes=[
                Route(self.address.path, self._handle_callback, methods=["GET"]),
            ]
        )
        self._socket: socket.socket | None = None
        self._server: _CallbackServer | None = None
        self._serve_task: asyncio.Task[None] | None = None
        self._outcome: asyncio.Future[CallbackResult] | None = None
        self._malformed_requests = 0
        self._closed = False

    @property
    def is_serving(self) -> bool:
        return self._serve_task is not None and not self._closed

    @property
    def bound_port(self) -> int | None:
        """Actual bound port, useful when the redirect URI uses port 0."""
        if self._socket is None or self._closed:
            return None
        return self._socket.getsockname()[1]

    async def start(self) -> None:
        """Bind the socket and start serving.

        Raises:
            BindError: If the address is unavailable; no other port is tried
            FlowStateError: If the listener was already closed
        """
        if self._closed:
            raise FlowStateError("Callback listener is single-use and already closed")
        if self._serve_task is not None:
            return

        self._socket = self._bind()
        self._outcome = asyncio.get_running_loop().create_future()

        config = uvicorn.Config(
            app=self._app,
            log_config=None,
            log_level="warning",
            access_log=False,
            lifespan="off",
            timeout_graceful_shutdown=SHUTDOWN_TIMEOUT,
        )
        self._server = _CallbackServer(config)
        self._serve_task = asyncio.create_task(
            self._server.serve(sockets=[self._socket])
        )

        logger.info(
            f"Callback listener bound on {self.address.host}:{self.bound_port}"
            f"{self.address.path}"
        )

    async def await_callback(
        self, timeout: float, cancel_event: asyncio.Event | None = None
    ) -> CallbackResult:
        """Wait for the authorization redirect.

        Starts the listener if needed. Returns on the first completing
        callback, when ``timeout`` seconds elapse, or when ``cancel_event`` is
        set, whichever comes first. The socket is closed before returning.

        Args:
            timeout: Seconds to wait for a completing callback
            cancel_event: Optional event that aborts the wait when set

        Returns:
            CallbackSuccess, CallbackProviderError, CallbackTimeout or
            CallbackCancelled

        Raises:
            BindError: If the address is unavailable or the server stopped
                unexpectedly
        """
        cancel_waiter: asyncio.Task[bool] | None = None
        try:
            await self.start()
            if self._outcome is None or self._serve_task is None:
                raise FlowStateError("Callback listener did not start")

            waiters: set[asyncio.Future] = {self._outcome, self._serve_task}
            if cancel_event is not None:
                cancel_waiter = asyncio.create_task(cancel_event.wait())
                waiters.add(cancel_waiter)

            done, _ = await asyncio.wait(
                waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )

            if self._outcome in done:
                return self._outcome.result()

            if cancel_waiter is not None and cancel_waiter in done:
                logger.info("Callback wait cancelled")
                return CallbackCancelled()

            if self._serve_task in done:
                raise BindError(
                    "Callback listener stopped unexpectedly",
                    self.address.host,
                    self.address.port,
                ) from self._serve_task.exception()

            logger.warning(
                f"No authorization callback received within {timeout} seconds"
            )
            return CallbackTimeout(
                timeout=timeout, malformed_requests=self._malformed_requests
            )
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()
            await self.close()

    async def close(self) -> None:
        """Stop serving and release the socket. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True

        if self._outcome is not None and not self._outcome.done():
            self._outcome.cancel()

        try:
            if self._server is not None and self._serve_task is not None:
                await self._stop_server(self._server, self._serve_task)
        finally:
            if self._socket is not None:
                self._socket.close()
            logger.debug("Callback listener closed")

    async def _stop_server(
        self, server: _CallbackServer, serve_task: asyncio.Task[None]
    ) -> None:
        server.should_exit = True
        try:
            await asyncio.wait_for(serve_task, timeout=SHUTDOWN_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning("Callback listener did not shut down in time")
        except Exception as e:
            logger.warning(f"Callback listener stopped with error: {e}")

        # Startup may not have reached the main loop, which skips shutdown.
        for asyncio_server in getattr(server, "servers", []):
            asyncio_server.close()

    def _bind(self) -> socket.socket:
        host, port = self.address.host, self.address.port
        family = socket.AF_INET6 if self.address.is_ipv6 else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_STREAM)
        try:
            if os.name != "nt":
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((host, port))
            sock.listen()
            sock.setblocking(False)
        except OSError as e:
            sock.close()
            raise BindError(
                f"Cannot bind callback listener to {host}:{port}: "
                f"{e.strerror or e}",
                host,
                port,
            ) from e
        return sock

    async def _handle_callback(self, request: Request) -> HTMLResponse:
        if self._outcome is None or self._outcome.done():
            logger.warning("Ignoring request received after the callback completed")
            return HTMLResponse(
                status_page(410, "Authorization already completed"),
                status_code=410,
                headers=_NO_STORE,
            )

        result = classify_callback(single_query_params(request.url.query))

        if not is_terminal(result):
            self._malformed_requests += 1
            logger.warning(f"Ignoring malformed callback request: {result.reason}")
            return HTMLResponse(
                status_page(400, "Missing required parameters"),
                status_code=400,
                headers=_NO_STORE,
            )

        if isinstance(result, CallbackSuccess):
            self._outcome.set_result(result)
            logger.info("Received authorization callback")
            return HTMLResponse(SUCCESS_PAGE, status_code=200, headers=_NO_STORE)

        if not isinstance(result, CallbackProviderError):
            raise FlowStateError(f"Unexpected callback outcome: {result!r}")

        self._outcome.set_result(result)
        logger.warning(
            f"Authorization callback contained error: {result.error} - "
            f"{result.error_description}"
        )
        return HTMLResponse(
            provider_error_page(result.error, result.error_description),
            status_code=400,
            headers=_NO_STORE,
        )

    async def __aenter__(self) -> CallbackListener:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()
