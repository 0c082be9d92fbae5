"""Shared fixtures and utilities for loopauth tests."""

import subprocess
import sys
from collections.abc import Generator
from pathlib import Path

import pytest

from loopauth.config import AuthConfig
from loopauth.oauth.flow import OAuthProvider
from loopauth.oauth.store import CredentialStore

# Environment variables read by load_config / get_data_dir
LOOPAUTH_ENV_VARS = [
    "LOOPAUTH_PORT",
    "LOOPAUTH_CALLBACK_TIMEOUT",
    "LOOPAUTH_DATA_DIR",
    "LOOPAUTH_LOCK_RETRY_ATTEMPTS",
    "LOOPAUTH_LOCK_RETRY_DELAY",
    "LOOPAUTH_NO_BROWSER",
    "LOOPAUTH_CLIENT_ID",
    "LOOPAUTH_AUTHORIZE_URL",
    "LOOPAUTH_TOKEN_URL",
]


# ============================================================================
# Environment Fixtures
# ============================================================================


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    """Remove LOOPAUTH_* variables, restoring them (or their absence) afterwards.

    Setting before deleting makes monkeypatch record the variable, so values
    that load_dotenv writes during a test are removed on teardown.
    """
    for name in LOOPAUTH_ENV_VARS:
        monkeypatch.setenv(name, "placeholder")
        monkeypatch.delenv(name)
    yield


@pytest.fixture
def data_dir(tmp_path: Path, clean_env: None, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point the user data directory at a temporary directory."""
    directory = tmp_path / "data"
    monkeypatch.setenv("LOOPAUTH_DATA_DIR", str(directory))
    return directory


# ============================================================================
# Component Fixtures
# ============================================================================


@pytest.fixture
def store(tmp_path: Path) -> Generator[CredentialStore, None, None]:
    """Create a credential store in a temporary directory."""
    credential_store = CredentialStore(
        data_dir=tmp_path / "store",
        lock_retry_delay=0.01,
    )
    yield credential_store
    credential_store.cleanup()


@pytest.fixture
def auth_config(tmp_path: Path) -> AuthConfig:
    """Config with an OS-assigned port and no browser."""
    return AuthConfig(
        port=0,
        callback_timeout=5,
        data_dir=tmp_path / "store",
        lock_retry_delay=0.01,
        open_browser=False,
    )


@pytest.fixture
def provider() -> OAuthProvider:
    """A sample OAuth provider."""
    return OAuthProvider(
        name="example",
        client_id="client-123",
        authorize_url="https://auth.example.com/oauth/authorize",
        token_url="https://auth.example.com/oauth/token",
        scopes=["profile", "offline_access"],
    )


@pytest.fixture
def dead_pid() -> int:
    """PID of a process that has already exited and been reaped."""
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    return proc.pid
