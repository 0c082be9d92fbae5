"""Loopback callback server for OAuth redirects.

This module provides a small HTTP listener bound to 127.0.0.1 that receives
the provider's redirect after the user authorizes in their browser. It:
- Listens on a fixed loopback port and serves two GET routes
  (/auth/callback and /cancel)
- Holds at most one pending authorization at a time
- Validates the CSRF state parameter before releasing the code
- Expires a pending authorization after a timeout
- Delivers the outcome to the caller on a later event-loop iteration
"""

import asyncio
import hmac
import html
import logging
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any, Callable
from urllib.parse import parse_qs

logger = logging.getLogger(__name__)

DEFAULT_PORT = 1455
DEFAULT_HOST = "127.0.0.1"
CALLBACK_PATH = "/auth/callback"
CANCEL_PATH = "/cancel"

# Default timeout for waiting for callback
DEFAULT_TIMEOUT = 5 * 60  # seconds

# Request header blocks larger than this are rejected
MAX_HEADER_BYTES = 16 * 1024
READ_CHUNK_SIZE = 4096

# Idle connections (browser preconnects) are dropped after this long
REQUEST_READ_TIMEOUT = 10.0  # seconds

HEADER_TERMINATOR = b"\r\n\r\n"

SuccessCallback = Callable[[str], Any]
ErrorCallback = Callable[["CallbackError"], Any]


class CallbackError(Exception):
    """Error during OAuth callback handling."""

    pass


class MalformedRequestError(CallbackError):
    """Inbound request could not be parsed as a GET request."""

    pass


class ProviderError(CallbackError):
    """The provider redirected back with an error."""

    pass


class MissingCodeError(CallbackError):
    """Callback arrived without an authorization code."""

    pass


class StateMismatchError(CallbackError):
    """Callback state did not match the pending authorization."""

    pass


class CallbackTimeoutError(CallbackError):
    """Timeout waiting for OAuth callback."""

    pass


class CallbackCancelledError(CallbackError):
    """The pending authorization was cancelled."""

    pass


class CallbackPendingError(CallbackError):
    """Another authorization is already waiting for its callback."""

    pass


@dataclass
class ServerBinding:
    """Where the callback server is listening."""

    port: int
    redirect_uri: str


@dataclass
class CallbackResult:
    """Query parameters from an OAuth callback.

    Attributes:
        code: The authorization code from the callback
        state: The state parameter from the callback
        error: Error code if authorization failed
        error_description: Human-readable error description
    """

    code: str | None = None
    state: str | None = None
    error: str | None = None
    error_description: str | None = None


@dataclass
class HTTPRequest:
    """The parts of a request line the server cares about."""

    method: str
    path: str
    query: str


@dataclass
class PendingAuthorization:
    """The single authorization waiting for its callback."""

    expected_state: str
    on_success: SuccessCallback
    on_error: ErrorCallback
    timer: asyncio.TimerHandle | None = None


# HTML templates for callback responses
SUCCESS_HTML = """<!DOCTYPE html>
<html>
<head>
    <title>Authorization Successful</title>
    <style>
        body {
            font-family: system-ui, -apple-system, sans-serif;
            display: flex;
            justify-content: center;
            align-items: center;
            height: 100vh;
            margin: 0;
            background: #131010;
            color: #f1ecec;
        }
        .card { text-align: center; padding: 2rem; }
        h1 { margin: 0 0 1rem 0; }
        p { color: #b7b1b1; margin: 0; }
    </style>
</head>
<body>
    <div class="card">
        <h1>Authorization Successful</h1>
        <p>You can close this window and return to your editor.</p>
    </div>
</body>
</html>"""

MESSAGE_HTML = """<!DOCTYPE html>
<html>
<head>
    <title>{title}</title>
    <style>
        body {{
            font-family: system-ui, -apple-system, sans-serif;
            display: flex;
            justify-content: center;
            align-items: center;
            height: 100vh;
            margin: 0;
            background: #131010;
            color: #f1ecec;
        }}
        .card {{ text-align: center; padding: 2rem; max-width: 480px; }}
        h1 {{ color: #fc533a; margin: 0 0 1rem 0; }}
        p {{ color: #b7b1b1; margin: 0 0 1rem 0; }}
        .error {{
            color: #ff917b;
            font-family: monospace;
            padding: 1rem;
            background: #3c140d;
            border-radius: 0.5rem;
        }}
    </style>
</head>
<body>
    <div class="card">
        <h1>{title}</h1>
        <p>{message}</p>
        <div class="error">{reason}</div>
    </div>
</body>
</html>"""


def render_error_page(reason: str) -> str:
    """Render the failure page, HTML-escaping the reason."""
    return MESSAGE_HTML.format(
        title="Authorization Failed",
        message="An error occurred during authorization.",
        reason=html.escape(reason),
    )


def render_cancelled_page() -> str:
    """Render the page shown after /cancel."""
    return MESSAGE_HTML.format(
        title="Login Cancelled",
        message="The pending login was cancelled.",
        reason="You can close this window.",
    )


def parse_request_head(data: bytes) -> HTTPRequest:
    """Parse the request line of a raw HTTP request head.

    Args:
        data: Raw bytes up to (and possibly including) the header terminator

    Returns:
        HTTPRequest with method, path and raw query string

    Raises:
        MalformedRequestError: If the request line is missing or unparseable
    """
    head = data.decode("latin-1")
    request_line = head.split("\r\n", 1)[0].split("\n", 1)[0].strip()
    if not request_line:
        raise MalformedRequestError("Malformed request")

    parts = request_line.split()
    if len(parts) < 2:
        raise MalformedRequestError("Invalid request")

    method, target = parts[0], parts[1]
    if not target.startswith("/"):
        raise MalformedRequestError("Invalid request target")

    path, _, query = target.partition("?")
    return HTTPRequest(method=method, path=path, query=query)


def parse_callback_query(query: str) -> CallbackResult:
    """Percent-decode OAuth callback query parameters.

    Empty values are treated as absent.

    Args:
        query: The raw query string (without the leading '?')

    Returns:
        CallbackResult with parsed parameters
    """
    params = parse_qs(query)

    # Get first value of each parameter (or None if not present)
    def get_param(name: str) -> str | None:
        values = params.get(name, [])
        return values[0] if values else None

    return CallbackResult(
        code=get_param("code"),
        state=get_param("state"),
        error=get_param("error"),
        error_description=get_param("error_description"),
    )


def _deliver(callback: Callable[[Any], Any], value: Any) -> None:
    """Invoke a caller callback, logging rather than propagating its errors."""
    try:
        callback(value)
    except Exception:
        logger.exception("OAuth callback handler raised")


class LocalhostCallbackServer:
    """Loopback HTTP server that captures one OAuth redirect at a time.

    The server is a session object: the application creates one, starts it,
    and passes it to whatever runs the login. Starting it twice is harmless.

    Usage:
        server = LocalhostCallbackServer()
        binding = await server.start()
        # Build the authorization URL with binding.redirect_uri and state
        code = await server.authorize(state)
        await server.stop()
    """

    def __init__(
        self,
        port: int = DEFAULT_PORT,
        timeout: float = DEFAULT_TIMEOUT,
        host: str = DEFAULT_HOST,
        read_timeout: float = REQUEST_READ_TIMEOUT,
    ):
        """Initialize callback server.

        Args:
            port: Loopback port to bind (0 lets the OS choose)
            timeout: Seconds a pending authorization may wait for its callback
            host: Interface to bind; loopback only
            read_timeout: Seconds a connection may take to send its request head
        """
        self.port = port
        self.timeout = timeout
        self.host = host
        self.read_timeout = read_timeout

        self._server: asyncio.Server | None = None
        self._binding: ServerBinding | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._pending: PendingAuthorization | None = None
        self._writers: set[asyncio.StreamWriter] = set()

    @property
    def is_running(self) -> bool:
        """Whether the listener is bound."""
        return self._server is not None

    @property
    def is_pending(self) -> bool:
        """Whether an authorization is waiting for its callback."""
        return self._pending is not None

    @property
    def redirect_uri(self) -> str | None:
        """Redirect URI of the running server, if any."""
        return self._binding.redirect_uri if self._binding else None

    async def start(self) -> ServerBinding:
        """Start listening on the loopback port.

        Returns the existing binding if the server is already running.

        Returns:
            ServerBinding with the bound port and redirect URI

        Raises:
            CallbackError: If the port cannot be bound
        """
        if self._server is not None and self._binding is not None:
            return self._binding

        try:
            self._server = await asyncio.start_server(
                self._handle_connection,
                self.host,
                self.port,
            )
        except OSError as e:
            raise CallbackError(
                f"Failed to start callback server on {self.host}:{self.port}: {e}"
            ) from e

        sockets = self._server.sockets
        if not sockets:
            self._server.close()
            self._server = None
            raise CallbackError("Failed to start callback server: no sockets created")

        port: int = sockets[0].getsockname()[1]
        self._loop = asyncio.get_running_loop()
        self._binding = ServerBinding(
            port=port,
            redirect_uri=f"http://localhost:{port}{CALLBACK_PATH}",
        )

        logger.debug(f"Callback server started on {self._binding.redirect_uri}")
        return self._binding

    async def stop(self) -> None:
        """Stop the server and silently drop any pending authorization."""
        pending = self._pending
        self._pending = None
        if pending is not None and pending.timer is not None:
            pending.timer.cancel()

        if self._server:
            self._server.close()
            # wait_closed() also waits for open connections on 3.12+
            for writer in list(self._writers):
                writer.close()
            await self._server.wait_closed()
            self._server = None
            self._binding = None
            logger.debug("Callback server stopped")

    def wait_for_callback(
        self,
        expected_state: str,
        on_success: SuccessCallback,
        on_error: ErrorCallback,
    ) -> None:
        """Register the pending authorization and start its expiry timer.

        Exactly one of ``on_success(code)`` or ``on_error(error)`` is called,
        once, on a later iteration of the event loop.

        Args:
            expected_state: The state parameter sent in the authorization URL
            on_success: Receives the authorization code
            on_error: Receives a CallbackError describing the failure

        Raises:
            CallbackError: If the server has not been started
        """
        if self._loop is None or self._server is None:
            raise CallbackError("Server not started")

        if self._pending is not None:
            self._loop.call_soon(
                _deliver, on_error, CallbackPendingError("OAuth callback already pending")
            )
            return

        pending = PendingAuthorization(
            expected_state=expected_state,
            on_success=on_success,
            on_error=on_error,
        )
        pending.timer = self._loop.call_later(self.timeout, self._expire, pending)
        self._pending = pending
        logger.debug(f"Waiting up to {self.timeout}s for OAuth callback")

    async def authorize(self, expected_state: str) -> str:
        """Wait for the callback and return the authorization code.

        Args:
            expected_state: The state parameter sent in the authorization URL

        Returns:
            The authorization code

        Raises:
            CallbackError: The failure reported for this authorization
        """
        loop = asyncio.get_running_loop()
        future: asyncio.Future[str] = loop.create_future()

        def on_success(code: str) -> None:
            if not future.done():
                future.set_result(code)

        def on_error(error: CallbackError) -> None:
            if not future.done():
                future.set_exception(error)

        existing = self._pending
        self.wait_for_callback(expected_state, on_success, on_error)
        pending = self._pending if self._pending is not existing else None

        try:
            return await future
        except asyncio.CancelledError:
            if pending is not None and self._pending is pending:
                self._discard(pending)
            raise

    def cancel(self) -> bool:
        """Cancel the pending authorization, if any.

        Returns:
            True if an authorization was pending
        """
        if self._pending is None:
            return False
        self._reject(CallbackCancelledError("Login cancelled"))
        return True

    def _discard(self, pending: PendingAuthorization) -> None:
        """Drop a pending authorization without invoking its callbacks."""
        if self._pending is pending:
            self._pending = None
        if pending.timer is not None:
            pending.timer.cancel()

    def _take_pending(self) -> PendingAuthorization | None:
        """Clear and return the pending authorization, cancelling its timer."""
        pending = self._pending
        if pending is None:
            return None
        self._pending = None
        if pending.timer is not None:
            pending.timer.cancel()
        return pending

    def _resolve(self, code: str) -> None:
        pending = self._take_pending()
        if pending is not None and self._loop is not None:
            self._loop.call_soon(_deliver, pending.on_success, code)

    def _reject(self, error: CallbackError) -> None:
        pending = self._take_pending()
        if pending is not None and self._loop is not None:
            logger.debug(f"OAuth authorization failed: {error}")
            self._loop.call_soon(_deliver, pending.on_error, error)

    def _expire(self, pending: PendingAuthorization) -> None:
        """Timer callback: fail the authorization if it is still the pending one."""
        if self._pending is not pending:
            return
        pending.timer = None
        self._reject(
            CallbackTimeoutError(
                f"OAuth callback timeout - authorization took longer than {self.timeout} seconds"
            )
        )

    async def _read_request_head(self, reader: asyncio.StreamReader) -> bytes | None:
        """Buffer bytes until the blank line that ends the header block.

        Returns:
            The buffered bytes, or None if the peer closed first

        Raises:
            MalformedRequestError: If the header block is too large
        """
        buffer = b""
        while HEADER_TERMINATOR not in buffer:
            if len(buffer) > MAX_HEADER_BYTES:
                raise MalformedRequestError("Request headers too large")
            chunk = await reader.read(READ_CHUNK_SIZE)
            if not chunk:
                return None
            buffer += chunk
        return buffer

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Handle incoming HTTP connection."""
        self._writers.add(writer)
        try:
            try:
                head = await asyncio.wait_for(
                    self._read_request_head(reader), self.read_timeout
                )
                if head is None:
                    return
                request = parse_request_head(head)
                if request.method != "GET":
                    raise MalformedRequestError(f"Unsupported method {request.method}")
            except MalformedRequestError as e:
                # Noise on the port must not disturb a genuine pending flow
                logger.debug(f"Rejected malformed callback request: {e}")
                await self._send_html_response(
                    writer, HTTPStatus.BAD_REQUEST, render_error_page(str(e))
                )
                return

            status, body = self._route(request)
            await self._send_html_response(writer, status, body)

        except asyncio.TimeoutError:
            logger.debug("Closing idle callback connection")
        except (ConnectionError, asyncio.IncompleteReadError) as e:
            logger.debug(f"Callback connection dropped: {e}")
        except Exception as e:
            logger.warning(f"Error handling callback request: {e}")

        finally:
            self._writers.discard(writer)
            try:
                writer.close()
                await writer.wait_closed()
            except Exception:
                pass

    def _route(self, request: HTTPRequest) -> tuple[HTTPStatus, str]:
        """Apply a parsed GET request to the pending state.

        Returns:
            Status and HTML body for the response
        """
        if request.path == CALLBACK_PATH:
            return self._handle_callback(parse_callback_query(request.query))

        if request.path == CANCEL_PATH:
            self.cancel()
            return HTTPStatus.OK, render_cancelled_page()

        return HTTPStatus.NOT_FOUND, render_error_page("Not found")

    def _handle_callback(self, result: CallbackResult) -> tuple[HTTPStatus, str]:
        if result.error:
            reason = result.error_description or result.error
            self._reject(ProviderError(reason))
            return HTTPStatus.BAD_REQUEST, render_error_page(reason)

        if not result.code:
            error: CallbackError = MissingCodeError("Missing authorization code")
            self._reject(error)
            return HTTPStatus.BAD_REQUEST, render_error_page(str(error))

        pending = self._pending
        if (
            pending is None
            or result.state is None
            or not hmac.compare_digest(result.state.encode(), pending.expected_state.encode())
        ):
            error = StateMismatchError("Invalid state - possible CSRF attack")
            self._reject(error)
            return HTTPStatus.BAD_REQUEST, render_error_page(str(error))

        self._resolve(result.code)
        logger.debug("OAuth callback received authorization code")
        return HTTPStatus.OK, SUCCESS_HTML

    async def _send_html_response(
        self,
        writer: asyncio.StreamWriter,
        status: HTTPStatus,
        html_content: str,
    ) -> None:
        """Send an HTML HTTP response with security headers."""
        body = html_content.encode("utf-8")
        headers = (
            f"HTTP/1.1 {status.value} {status.phrase}\r\n"
            f"Content-Type: text/html; charset=utf-8\r\n"
            f"Content-Length: {len(body)}\r\n"
            f"X-Content-Type-Options: nosniff\r\n"
            f"X-Frame-Options: DENY\r\n"
            f"Content-Security-Policy: default-src 'none'; style-src 'unsafe-inline'\r\n"
            f"Connection: close\r\n"
            f"\r\n"
        )
        writer.write(headers.encode("utf-8") + body)
        await writer.drain()

    async def __aenter__(self) -> "LocalhostCallbackServer":
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.stop()
