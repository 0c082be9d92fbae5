"""loopauth - Browser-based OAuth2 PKCE login with a loopback redirect and shared token storage."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("loopauth")
except PackageNotFoundError:
    __version__ = "0.1.0"  # Fallback for development

__all__ = [
    "__version__",
    "AuthConfig",
    "load_config",
    "LoginSession",
    "OAuthProvider",
    "CredentialStore",
    "LocalhostCallbackServer",
    "generate_pkce_pair",
]

# Lazy imports to avoid circular dependencies
def __getattr__(name: str) -> object:
    """Lazy import module components."""
    if name in ("AuthConfig", "load_config"):
        from .config import AuthConfig, load_config
        return {"AuthConfig": AuthConfig, "load_config": load_config}[name]
    elif name in ("LoginSession", "OAuthProvider"):
        from .oauth.flow import LoginSession, OAuthProvider
        return {"LoginSession": LoginSession, "OAuthProvider": OAuthProvider}[name]
    elif name == "CredentialStore":
        from .oauth.store import CredentialStore
        return CredentialStore
    elif name == "LocalhostCallbackServer":
        from .oauth.callback import LocalhostCallbackServer
        return LocalhostCallbackServer
    elif name == "generate_pkce_pair":
        from .oauth.pkce import generate_pkce_pair
        return generate_pkce_pair
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
