"""OAuth authorization code flow with PKCE over a loopback redirect.

This module orchestrates one browser login:
1. Generate PKCE pair and state
2. Start the loopback callback server
3. Build the authorization URL and hand it to the UI / open the browser
4. Wait for the callback with the authorization code
5. Exchange the code for a token
6. Persist the token in the shared credential store
"""

from __future__ import annotations

import asyncio
import logging
import webbrowser
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Callable
from urllib.parse import urlencode

import httpx

from .callback import CallbackError, LocalhostCallbackServer
from .pkce import PKCEError, generate_pkce_pair, generate_state
from .store import CredentialStore

if TYPE_CHECKING:
    from ..config import AuthConfig

logger = logging.getLogger(__name__)

# Seconds allowed for the token endpoint request
TOKEN_REQUEST_TIMEOUT = 30.0


class LoginError(Exception):
    """Error during the login flow."""

    pass


class TokenExchangeError(LoginError):
    """Error during token exchange."""

    pass


@dataclass
class OAuthProvider:
    """Static OAuth settings for one provider.

    Attributes:
        name: Provider identifier, also the key in the credential store
        client_id: Public client id registered with the provider
        authorize_url: The provider's authorization endpoint
        token_url: The provider's token endpoint
        scopes: Scopes to request
        extra_params: Additional authorization URL parameters
    """

    name: str
    client_id: str
    authorize_url: str
    token_url: str
    scopes: list[str] = field(default_factory=list)
    extra_params: dict[str, str] = field(default_factory=dict)


@dataclass
class AuthURLPrompt:
    """What the UI needs to show or open the authorization page."""

    provider_name: str
    auth_url: str


def build_authorization_url(
    provider: OAuthProvider,
    redirect_uri: str,
    code_challenge: str,
    state: str,
) -> str:
    """Build the authorization URL for browser redirect.

    Args:
        provider: Provider settings
        redirect_uri: The loopback callback URI
        code_challenge: PKCE code challenge
        state: State parameter for CSRF protection

    Returns:
        Complete authorization URL
    """
    params: dict[str, str] = {
        "response_type": "code",
        "client_id": provider.client_id,
        "redirect_uri": redirect_uri,
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
        "state": state,
    }

    if provider.scopes:
        params["scope"] = " ".join(provider.scopes)

    params.update(provider.extra_params)

    separator = "&" if "?" in provider.authorize_url else "?"
    return f"{provider.authorize_url}{separator}{urlencode(params)}"


def _error_detail(response: httpx.Response) -> str:
    """The OAuth error fields of a failed token response, and nothing else.

    The raw body is never echoed since it may carry tokens or secrets.
    """
    try:
        body = response.json()
    except ValueError:
        return ""
    if not isinstance(body, dict) or "error" not in body:
        return ""

    detail = f": {body['error']}"
    if body.get("error_description"):
        detail += f" - {body['error_description']}"
    return detail


def _with_expiry(response: dict[str, Any]) -> dict[str, Any]:
    """Add an absolute expires_at timestamp when the response has expires_in."""
    token = dict(response)
    expires_in = token.get("expires_in")
    if expires_in is not None:
        try:
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=int(expires_in))
        except (TypeError, ValueError):
            logger.warning(f"Ignoring invalid expires_in value: {expires_in!r}")
        else:
            token["expires_at"] = expires_at.isoformat()
    return token


async def exchange_code_for_token(
    provider: OAuthProvider,
    code: str,
    code_verifier: str,
    redirect_uri: str,
    state: str | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> dict[str, Any]:
    """Exchange an authorization code for a token.

    Args:
        provider: Provider settings
        code: Authorization code from callback
        code_verifier: PKCE code verifier
        redirect_uri: The redirect URI used in authorization
        state: State parameter, for providers that require it at exchange
        http_client: Optional HTTP client

    Returns:
        Token endpoint response, plus expires_at when expires_in was given

    Raises:
        TokenExchangeError: If token exchange fails
    """
    http = http_client or httpx.AsyncClient(timeout=TOKEN_REQUEST_TIMEOUT)
    should_close = http_client is None

    try:
        token_request: dict[str, str] = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "code_verifier": code_verifier,
            "client_id": provider.client_id,
        }
        if state is not None:
            token_request["state"] = state

        response = await http.post(
            provider.token_url,
            data=token_request,
            headers={"Accept": "application/json"},
        )

        if response.status_code != 200:
            raise TokenExchangeError(
                f"Token exchange failed (HTTP {response.status_code}){_error_detail(response)}"
            )

        try:
            result = response.json()
        except ValueError as e:
            raise TokenExchangeError("Token endpoint returned invalid JSON") from e

        if not isinstance(result, dict) or "access_token" not in result:
            raise TokenExchangeError("Token endpoint response missing access_token")

        return _with_expiry(result)

    except httpx.RequestError as e:
        raise TokenExchangeError(f"Network error during token exchange: {e}") from e
    finally:
        if should_close:
            await http.aclose()


TokenExchanger = Callable[..., Any]


class LoginSession:
    """Owns the callback server and credential store for one application.

    Usage:
        session = LoginSession(config)
        token = await session.login(provider, on_auth_url=show_url)
        await session.close()
    """

    def __init__(
        self,
        config: AuthConfig | None = None,
        store: CredentialStore | None = None,
        server: LocalhostCallbackServer | None = None,
        exchange: TokenExchanger = exchange_code_for_token,
        on_status: Callable[[str], None] | None = None,
    ):
        """Initialize login session.

        Args:
            config: Settings (loaded from the environment if omitted)
            store: Credential store (built from config if omitted)
            server: Callback server (built from config if omitted)
            exchange: Coroutine function exchanging a code for a token
            on_status: Optional callback for status messages
        """
        if config is None:
            from ..config import load_config

            config = load_config()

        self.config = config
        self.store = store or CredentialStore(
            data_dir=config.data_dir,
            lock_retry_attempts=config.lock_retry_attempts,
            lock_retry_delay=config.lock_retry_delay,
        )
        self.server = server or LocalhostCallbackServer(
            port=config.port,
            timeout=config.callback_timeout,
        )
        self.exchange = exchange
        self.on_status = on_status or (lambda msg: None)

    def _emit_status(self, message: str) -> None:
        """Emit a status message."""
        logger.info(message)
        self.on_status(message)

    async def login(
        self,
        provider: OAuthProvider,
        on_auth_url: Callable[[AuthURLPrompt], None] | None = None,
        open_browser: bool | None = None,
    ) -> dict[str, Any]:
        """Run the complete browser login for one provider.

        Args:
            provider: Provider settings
            on_auth_url: UI hook that shows or copies the authorization URL
            open_browser: Open the URL with the system browser
                (defaults to config.open_browser)

        Returns:
            The token blob that was stored

        Raises:
            LoginError: If any step fails (PKCE, callback, exchange, storage)
        """
        try:
            pkce = generate_pkce_pair()
            state = generate_state()
        except PKCEError as e:
            raise LoginError(f"Cannot start login: {e}") from e

        try:
            binding = await self.server.start()
        except CallbackError as e:
            raise LoginError(str(e)) from e

        auth_url = build_authorization_url(provider, binding.redirect_uri, pkce.challenge, state)

        if on_auth_url is not None:
            on_auth_url(AuthURLPrompt(provider_name=provider.name, auth_url=auth_url))

        should_open = self.config.open_browser if open_browser is None else open_browser
        if should_open:
            self._emit_status(f"Opening browser for {provider.name} authorization...")
            try:
                if not webbrowser.open(auth_url):
                    self._emit_status("Could not open a browser; open the URL manually")
            except webbrowser.Error as e:
                logger.warning(f"Failed to open browser: {e}")

        self._emit_status("Waiting for authorization...")
        try:
            code = await self.server.authorize(state)
        except CallbackError as e:
            raise LoginError(f"Authorization failed: {e}") from e

        self._emit_status("Exchanging authorization code for token...")
        token = await self.exchange(
            provider,
            code,
            pkce.verifier,
            binding.redirect_uri,
            state=state,
        )

        # update() may sleep between lock attempts and fsyncs
        saved = await asyncio.to_thread(self.store.update, provider.name, token)
        if not saved:
            raise LoginError(
                f"Logged in to {provider.name} but the token could not be saved to {self.store.path}"
            )

        self._emit_status(f"Logged in to {provider.name}")
        return token

    def logout(self, provider_name: str) -> bool:
        """Forget the stored token for a provider."""
        return self.store.remove(provider_name)

    async def close(self) -> None:
        """Stop the callback server and the store watcher."""
        await self.server.stop()
        self.store.cleanup()

    async def __aenter__(self) -> LoginSession:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()
