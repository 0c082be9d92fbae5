"""PKCE (Proof Key for Code Exchange) implementation per RFC 7636.

The verifier is drawn from an ordered list of secure randomness strategies
and the challenge is hashed through an ordered list of SHA-256 backends. In
both lists the first backend that succeeds wins; a backend that fails (or
returns fewer bytes than asked for) is skipped, never padded or replaced with
a non-cryptographic source.
"""

import base64
import hashlib
import logging
import secrets
import shutil
import ssl
import subprocess
from dataclasses import dataclass
from typing import Callable, Sequence

from ..platform import IS_WINDOWS

logger = logging.getLogger(__name__)

# PKCE code verifier length constraints per RFC 7636
MIN_VERIFIER_LENGTH = 43
MAX_VERIFIER_LENGTH = 128

# 32 random bytes encode to a 43-character base64url verifier
VERIFIER_BYTES = 32
STATE_BYTES = 32

URANDOM_PATH = "/dev/urandom"

# Seconds to wait for the last-resort OS utility
UTILITY_TIMEOUT = 10

RandomStrategy = Callable[[int], bytes]
HashStrategy = Callable[[bytes], bytes]


class PKCEError(Exception):
    """Error generating PKCE material."""

    pass


class RandomnessUnavailable(PKCEError):
    """No secure randomness source produced the requested bytes."""

    pass


class CryptoUnavailable(PKCEError):
    """No SHA-256 implementation is available."""

    pass


@dataclass
class PKCEPair:
    """PKCE code verifier and challenge pair.

    The verifier is a cryptographically random string sent in the token request.
    The challenge is a SHA256 hash of the verifier sent in the authorization request.
    """

    verifier: str
    challenge: str
    method: str = "S256"


def base64url_encode(data: bytes) -> str:
    """Encode bytes as base64url without padding."""
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


# Randomness strategies


def random_bytes_native(n: int) -> bytes:
    """Read bytes from the interpreter's secure RNG."""
    return secrets.token_bytes(n)


def random_bytes_openssl(n: int) -> bytes:
    """Read bytes from OpenSSL's CSPRNG."""
    return ssl.RAND_bytes(n)


def random_bytes_device(n: int, path: str = URANDOM_PATH) -> bytes:
    """Read exactly ``n`` bytes from the OS random device."""
    with open(path, "rb") as f:
        return f.read(n)


def random_bytes_utility(n: int) -> bytes:
    """Ask a trusted OS utility for ``n`` random bytes.

    Uses PowerShell's RandomNumberGenerator on Windows and ``openssl rand``
    elsewhere. Both print base64 so the output survives text pipes.
    """
    if IS_WINDOWS:
        script = (
            f"$bytes = New-Object byte[] ({n}); "
            "[System.Security.Cryptography.RandomNumberGenerator]::Create().GetBytes($bytes); "
            "[Convert]::ToBase64String($bytes)"
        )
        command = ["powershell", "-NoProfile", "-Command", script]
    else:
        if shutil.which("openssl") is None:
            raise FileNotFoundError("openssl executable not found")
        command = ["openssl", "rand", "-base64", str(n)]

    result = subprocess.run(
        command,
        capture_output=True,
        text=True,
        timeout=UTILITY_TIMEOUT,
        check=True,
    )
    return base64.b64decode("".join(result.stdout.split()), validate=True)


DEFAULT_RANDOM_STRATEGIES: tuple[RandomStrategy, ...] = (
    random_bytes_native,
    random_bytes_openssl,
    random_bytes_device,
    random_bytes_utility,
)


def get_random_bytes(
    n: int,
    strategies: Sequence[RandomStrategy] | None = None,
) -> bytes:
    """Get ``n`` secure random bytes from the first strategy that works.

    Args:
        n: Number of bytes required
        strategies: Ordered strategies to try (defaults to DEFAULT_RANDOM_STRATEGIES)

    Returns:
        Exactly ``n`` random bytes

    Raises:
        RandomnessUnavailable: If every strategy fails or returns a short read
    """
    errors: list[str] = []

    for strategy in strategies if strategies is not None else DEFAULT_RANDOM_STRATEGIES:
        name = getattr(strategy, "__name__", repr(strategy))
        try:
            data = strategy(n)
        except Exception as e:
            logger.debug(f"Random strategy {name} failed: {e}")
            errors.append(f"{name}: {e}")
            continue

        if not isinstance(data, bytes) or len(data) != n:
            got = len(data) if isinstance(data, (bytes, bytearray)) else type(data).__name__
            logger.debug(f"Random strategy {name} returned {got} instead of {n} bytes")
            errors.append(f"{name}: short read")
            continue

        return data

    detail = "; ".join(errors) or "no strategies configured"
    raise RandomnessUnavailable(f"Cannot generate secure random bytes ({detail})")


# Hashing strategies


def sha256_hashlib(data: bytes) -> bytes:
    """SHA-256 via hashlib."""
    return hashlib.sha256(data).digest()


def sha256_cryptography(data: bytes) -> bytes:
    """SHA-256 via the cryptography package."""
    from cryptography.hazmat.primitives import hashes

    digest = hashes.Hash(hashes.SHA256())
    digest.update(data)
    return digest.finalize()


DEFAULT_HASH_STRATEGIES: tuple[HashStrategy, ...] = (
    sha256_hashlib,
    sha256_cryptography,
)


def sha256_digest(
    data: bytes,
    strategies: Sequence[HashStrategy] | None = None,
) -> bytes:
    """Hash ``data`` with the first SHA-256 backend that works.

    Raises:
        CryptoUnavailable: If no backend produced a 32-byte digest
    """
    errors: list[str] = []

    for strategy in strategies if strategies is not None else DEFAULT_HASH_STRATEGIES:
        name = getattr(strategy, "__name__", repr(strategy))
        try:
            digest = strategy(data)
        except Exception as e:
            logger.debug(f"Hash strategy {name} failed: {e}")
            errors.append(f"{name}: {e}")
            continue

        if len(digest) != 32:
            errors.append(f"{name}: bad digest length {len(digest)}")
            continue

        return digest

    detail = "; ".join(errors) or "no strategies configured"
    raise CryptoUnavailable(f"Cannot compute SHA-256 ({detail})")


def generate_code_verifier(strategies: Sequence[RandomStrategy] | None = None) -> str:
    """Generate a cryptographically random code verifier.

    Per RFC 7636 Section 4.1 the verifier must be 43-128 unreserved
    characters. 32 random bytes encoded as base64url give 43.

    Args:
        strategies: Optional randomness strategies (for testing)

    Returns:
        Code verifier string

    Raises:
        RandomnessUnavailable: If no secure randomness source is reachable
    """
    return base64url_encode(get_random_bytes(VERIFIER_BYTES, strategies))


def generate_code_challenge(
    verifier: str,
    strategies: Sequence[HashStrategy] | None = None,
) -> str:
    """Generate S256 code challenge from verifier.

    Per RFC 7636 Section 4.2:
    code_challenge = BASE64URL(SHA256(code_verifier))

    Args:
        verifier: The code verifier string
        strategies: Optional hash backends (for testing)

    Returns:
        Base64URL-encoded SHA256 hash of the verifier
    """
    return base64url_encode(sha256_digest(verifier.encode("ascii"), strategies))


def generate_pkce_pair() -> PKCEPair:
    """Generate a complete PKCE pair (verifier + challenge).

    This is the main entry point for PKCE generation.

    Raises:
        RandomnessUnavailable: If no secure randomness source is reachable
        CryptoUnavailable: If no SHA-256 backend is available
    """
    verifier = generate_code_verifier()
    challenge = generate_code_challenge(verifier)

    return PKCEPair(verifier=verifier, challenge=challenge, method="S256")


def generate_state() -> str:
    """Generate a cryptographically random state parameter.

    The state parameter protects against CSRF attacks by ensuring
    the authorization response came from a request we initiated.
    """
    return base64url_encode(get_random_bytes(STATE_BYTES))
