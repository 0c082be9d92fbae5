"""Browser-based OAuth login over a loopback redirect.

Main Components:
    LocalhostCallbackServer: Loopback listener holding one pending authorization
    CredentialStore: Cross-process, atomically written token storage
    generate_pkce_pair: PKCE verifier/challenge from secure randomness
    LoginSession: Composes the three into a complete login

Quick Start:
    from loopauth.oauth import LoginSession, OAuthProvider

    provider = OAuthProvider(
        name="example",
        client_id="...",
        authorize_url="https://auth.example.com/authorize",
        token_url="https://auth.example.com/token",
    )

    async with LoginSession() as session:
        token = await session.login(provider, on_auth_url=print)
"""

from .callback import (
    CallbackCancelledError,
    CallbackError,
    CallbackPendingError,
    CallbackResult,
    CallbackTimeoutError,
    LocalhostCallbackServer,
    MalformedRequestError,
    MissingCodeError,
    ProviderError,
    ServerBinding,
    StateMismatchError,
)
from .flow import (
    AuthURLPrompt,
    LoginError,
    LoginSession,
    OAuthProvider,
    TokenExchangeError,
    build_authorization_url,
    exchange_code_for_token,
)
from .pkce import (
    CryptoUnavailable,
    PKCEError,
    PKCEPair,
    RandomnessUnavailable,
    generate_code_challenge,
    generate_code_verifier,
    generate_pkce_pair,
    generate_state,
)
from .store import (
    CredentialStore,
    CredentialStoreError,
    LockBusyError,
    StoreCorruptedError,
    StoreDecodeError,
    StoreWriteError,
)

__all__ = [
    # Flow (main entry point)
    "LoginSession",
    "OAuthProvider",
    "AuthURLPrompt",
    "LoginError",
    "TokenExchangeError",
    "build_authorization_url",
    "exchange_code_for_token",
    # Callback
    "LocalhostCallbackServer",
    "ServerBinding",
    "CallbackResult",
    "CallbackError",
    "MalformedRequestError",
    "ProviderError",
    "MissingCodeError",
    "StateMismatchError",
    "CallbackTimeoutError",
    "CallbackCancelledError",
    "CallbackPendingError",
    # Storage
    "CredentialStore",
    "CredentialStoreError",
    "StoreCorruptedError",
    "StoreDecodeError",
    "StoreWriteError",
    "LockBusyError",
    # PKCE
    "generate_pkce_pair",
    "generate_code_verifier",
    "generate_code_challenge",
    "generate_state",
    "PKCEPair",
    "PKCEError",
    "RandomnessUnavailable",
    "CryptoUnavailable",
]
