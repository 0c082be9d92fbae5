"""Config discovery and loading for loopauth."""

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from .oauth.callback import DEFAULT_PORT, DEFAULT_TIMEOUT
from .oauth.store import LOCK_RETRY_ATTEMPTS, LOCK_RETRY_DELAY
from .platform import get_data_dir


class ConfigError(Exception):
    """Invalid configuration value."""

    pass


@dataclass
class AuthConfig:
    """Settings shared by the callback server, the store and the CLI."""

    port: int = DEFAULT_PORT
    callback_timeout: float = DEFAULT_TIMEOUT
    data_dir: Path = field(default_factory=get_data_dir)
    lock_retry_attempts: int = LOCK_RETRY_ATTEMPTS
    lock_retry_delay: float = LOCK_RETRY_DELAY
    open_browser: bool = True
    env_path: Path | None = None


# Env file search paths in priority order (the data dir is appended at load time)
ENV_SEARCH_PATHS = [
    Path(".env"),
]

TRUTHY = {"1", "true", "yes", "on"}


def find_env_file(explicit_path: Path | None = None) -> Path | None:
    """Find the .env file, checking the working directory then the data dir."""
    if explicit_path:
        if explicit_path.exists():
            return explicit_path
        return None

    for path in [*ENV_SEARCH_PATHS, get_data_dir() / ".env"]:
        if path.exists():
            return path
    return None


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    try:
        parsed = int(value)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from None
    if parsed < minimum:
        raise ConfigError(f"{name} must be at least {minimum}, got {parsed}")
    return parsed


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    try:
        parsed = float(value)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {value!r}") from None
    if parsed <= 0:
        raise ConfigError(f"{name} must be positive, got {parsed}")
    return parsed


def load_config(env_path: Path | None = None) -> AuthConfig:
    """Load configuration from the environment.

    A .env file (explicit, ./.env, or <data dir>/.env) is loaded first; values
    already present in the environment take precedence over it.

    Args:
        env_path: Explicit path to .env file (optional)

    Returns:
        AuthConfig built from LOOPAUTH_* variables and defaults

    Raises:
        ConfigError: If a variable holds an invalid value
    """
    env_file = find_env_file(env_path)
    if env_file:
        load_dotenv(env_file)

    port = _env_int("LOOPAUTH_PORT", DEFAULT_PORT)
    if port > 65535:
        raise ConfigError(f"LOOPAUTH_PORT must be a valid TCP port, got {port}")

    return AuthConfig(
        port=port,
        callback_timeout=_env_float("LOOPAUTH_CALLBACK_TIMEOUT", DEFAULT_TIMEOUT),
        data_dir=get_data_dir(),
        lock_retry_attempts=_env_int("LOOPAUTH_LOCK_RETRY_ATTEMPTS", LOCK_RETRY_ATTEMPTS, minimum=1),
        lock_retry_delay=_env_float("LOOPAUTH_LOCK_RETRY_DELAY", LOCK_RETRY_DELAY),
        open_browser=os.environ.get("LOOPAUTH_NO_BROWSER", "").strip().lower() not in TRUTHY,
        env_path=env_file,
    )
