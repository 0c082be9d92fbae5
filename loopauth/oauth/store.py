"""Cross-process credential storage for OAuth tokens.

Tokens for every provider live in a single JSON file shared by all running
instances of the host application. This module keeps that file safe with:
- Atomic replacement (write a temp sibling, then rename over the target)
- Owner-only file permissions, since the file holds secrets
- An advisory lock file naming the writer's PID, with stale-lock reclamation
  when the recorded process is no longer alive
- watchdog-based change notification so other instances see new logins
"""

import asyncio
import json
import logging
import os
import stat
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Generator

from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from ..platform import IS_WINDOWS, get_data_dir, is_process_alive

logger = logging.getLogger(__name__)

# File names
STORE_FILE = "auth.json"
LEGACY_FILE = "claude-auth.json"
LOCK_FILE = "auth.lock"

# Key the legacy single-provider file is migrated under
LEGACY_PROVIDER = "claude"

# Lock contention: attempts and spacing between them (seconds)
LOCK_RETRY_ATTEMPTS = 5
LOCK_RETRY_DELAY = 0.05

CHANGE_EVENTS = {EVENT_TYPE_CREATED, EVENT_TYPE_DELETED, EVENT_TYPE_MODIFIED, EVENT_TYPE_MOVED}

CredentialSet = dict[str, Any]
WatchCallback = Callable[[CredentialSet | None], Any]


class CredentialStoreError(Exception):
    """Error in credential storage operations."""

    pass


class StoreDecodeError(CredentialStoreError):
    """Stored text is not a JSON object."""

    pass


class StoreCorruptedError(CredentialStoreError):
    """A store file exists but cannot be decoded."""

    def __init__(self, path: Path, reason: str):
        super().__init__(f"{path.name} is corrupted: {reason}")
        self.path = path


class LockBusyError(CredentialStoreError):
    """Another live process holds the store lock."""

    def __init__(self, holder_pid: int | None):
        super().__init__(f"Credential store is locked by process {holder_pid}")
        self.holder_pid = holder_pid


class StoreWriteError(CredentialStoreError):
    """Writing a store or lock file failed."""

    pass


def decode_credentials(text: str) -> CredentialSet:
    """Decode the store file contents.

    Raises:
        StoreDecodeError: If the text is not valid JSON or not an object
    """
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise StoreDecodeError(f"invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise StoreDecodeError(f"expected a JSON object, got {type(data).__name__}")
    return data


def encode_credentials(data: CredentialSet) -> str:
    """Encode a credential mapping for storage.

    Raises:
        StoreWriteError: If the mapping is not JSON-serializable
    """
    try:
        return json.dumps(data, indent=2)
    except (TypeError, ValueError) as e:
        raise StoreWriteError(f"Credentials are not JSON-serializable: {e}") from e


def _read_pid(path: Path) -> int | None:
    """PID written in a lock file, or None if missing or unreadable."""
    try:
        return int(path.read_text(encoding="utf-8").strip())
    except (OSError, ValueError):
        return None


class _StoreFileHandler(FileSystemEventHandler):
    """Forward changes to one file in the watched directory."""

    def __init__(self, filename: str, on_change: Callable[[], None]):
        super().__init__()
        self.filename = filename
        self.on_change = on_change

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type not in CHANGE_EVENTS:
            return

        paths = [event.src_path]
        if event.event_type == EVENT_TYPE_MOVED:
            paths.append(event.dest_path)

        if any(os.path.basename(os.fsdecode(p)) == self.filename for p in paths):
            self.on_change()


class CredentialStore:
    """Provider → token mapping shared by every process of the application.

    Reads never take the lock; atomic replacement guarantees they see either
    the previous or the next complete file. Mutations take the advisory lock,
    retry briefly when another live process holds it, and give up with a
    warning instead of raising.
    """

    def __init__(
        self,
        data_dir: Path | None = None,
        lock_retry_attempts: int = LOCK_RETRY_ATTEMPTS,
        lock_retry_delay: float = LOCK_RETRY_DELAY,
        pid: int | None = None,
    ):
        """Initialize credential store.

        Args:
            data_dir: Directory holding the store (defaults to the user data dir)
            lock_retry_attempts: Lock attempts before a mutation is abandoned
            lock_retry_delay: Seconds between lock attempts
            pid: Process id recorded in the lock file (defaults to os.getpid())
        """
        self.data_dir = data_dir or get_data_dir()
        self.lock_retry_attempts = max(1, lock_retry_attempts)
        self.lock_retry_delay = lock_retry_delay
        self.pid = pid if pid is not None else os.getpid()

        self._thread_lock = threading.RLock()
        self._lock_depth = 0

        self._watch_lock = threading.Lock()
        self._observer: Any = None  # Observer instance or None
        self._subscribers: list[tuple[WatchCallback, asyncio.AbstractEventLoop | None]] = []

    @property
    def path(self) -> Path:
        """Path of the store file."""
        return self.data_dir / STORE_FILE

    @property
    def legacy_path(self) -> Path:
        """Path of the legacy single-provider file."""
        return self.data_dir / LEGACY_FILE

    @property
    def lock_path(self) -> Path:
        """Path of the advisory lock file."""
        return self.data_dir / LOCK_FILE

    # Reading

    def read(self) -> CredentialSet | None:
        """Read every stored credential.

        A corrupted store file is deleted and reported as absent. If only the
        legacy single-provider file exists it is migrated to the new format.

        Returns:
            The provider → token mapping, or None if nothing is stored
        """
        try:
            data = self._load(self.path)
        except StoreCorruptedError as e:
            logger.warning(f"Credential store is corrupted, re-authentication required ({e})")
            self._unlink_quietly(self.path)
            return None

        if data is not None:
            if self.legacy_path.exists():
                self._unlink_quietly(self.legacy_path)
            return data

        return self._migrate_legacy()

    def get(self, provider: str) -> Any:
        """Get the stored token for one provider, or None."""
        data = self.read()
        if data is None:
            return None
        return data.get(provider)

    def _load(self, path: Path) -> CredentialSet | None:
        """Load and decode one file.

        Returns:
            The decoded mapping, or None if the file does not exist

        Raises:
            StoreCorruptedError: If the file exists but cannot be decoded
        """
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except UnicodeDecodeError as e:
            raise StoreCorruptedError(path, str(e)) from e
        except OSError as e:
            logger.warning(f"Could not read {path}: {e}")
            return None

        try:
            return decode_credentials(text)
        except StoreDecodeError as e:
            raise StoreCorruptedError(path, str(e)) from e

    def _migrate_legacy(self) -> CredentialSet | None:
        """Wrap the legacy single-provider token under its provider key."""
        try:
            token = self._load(self.legacy_path)
        except StoreCorruptedError as e:
            logger.warning(f"Legacy credential file is corrupted, re-authentication required ({e})")
            self._unlink_quietly(self.legacy_path)
            return None

        if token is None:
            return None

        data: CredentialSet = {LEGACY_PROVIDER: token}
        if self._mutate(lambda: self._write_json(data), "migrate legacy credentials"):
            self._unlink_quietly(self.legacy_path)
            logger.info(f"Migrated legacy credentials to {self.path}")
        return data

    # Writing

    def write_all(self, data: CredentialSet | None) -> bool:
        """Replace the whole store.

        Returns:
            True if written, False if the write was abandoned
        """
        snapshot = dict(data or {})
        return self._mutate(lambda: self._write_json(snapshot), "write credentials")

    def update(self, provider: str, token: Any) -> bool:
        """Set the token for one provider, keeping every other entry.

        Returns:
            True if written, False if the update was abandoned
        """

        def apply() -> None:
            data = self.read() or {}
            data[provider] = token
            self._write_json(data)

        return self._mutate(apply, f"update credentials for {provider}")

    def remove(self, provider: str) -> bool:
        """Delete the token for one provider.

        Returns:
            True if a token was removed, False if absent or the write was abandoned
        """
        removed = False

        def apply() -> None:
            nonlocal removed
            data = self.read()
            if not data or provider not in data:
                return
            del data[provider]
            self._write_json(data)
            removed = True

        return self._mutate(apply, f"remove credentials for {provider}") and removed

    def _mutate(self, apply: Callable[[], None], description: str) -> bool:
        """Run ``apply`` under the store lock, reporting failure as False."""
        try:
            with self._locked():
                apply()
        except LockBusyError as e:
            logger.warning(
                f"Could not {description}: {e}; gave up after {self.lock_retry_attempts} attempts"
            )
            return False
        except CredentialStoreError as e:
            logger.warning(f"Could not {description}: {e}")
            return False
        return True

    def _write_json(self, data: CredentialSet) -> None:
        """Encode and atomically replace the store file."""
        text = encode_credentials(data)
        self._ensure_dir()
        self._atomic_write(self.path, text)
        self._restrict_permissions(self.path)

    def _ensure_dir(self) -> None:
        """Create the data directory with owner-only permissions."""
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreWriteError(f"Could not create {self.data_dir}: {e}") from e

        if not IS_WINDOWS:
            try:
                self.data_dir.chmod(stat.S_IRWXU)
            except OSError as e:
                logger.warning(f"Could not set directory permissions: {e}")

    def _atomic_write(self, path: Path, text: str) -> None:
        """Write ``text`` to a temp sibling and rename it over ``path``.

        Raises:
            StoreWriteError: If any step fails; ``path`` is left untouched
        """
        tmp_path = path.with_name(f"{path.name}.tmp.{self.pid}")
        try:
            self._write_private(tmp_path, text)
            os.replace(tmp_path, path)
        except OSError as e:
            self._unlink_quietly(tmp_path)
            raise StoreWriteError(f"Could not write {path.name}: {e}") from e

    @staticmethod
    def _write_private(path: Path, text: str) -> None:
        """Write and flush a file created with owner-only permissions."""
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())

    def _restrict_permissions(self, path: Path) -> None:
        if IS_WINDOWS:
            return
        try:
            path.chmod(stat.S_IRUSR | stat.S_IWUSR)  # 0600
        except OSError as e:
            logger.warning(f"Could not set file permissions: {e}")

    def _unlink_quietly(self, path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove {path}: {e}")

    # Locking

    @contextmanager
    def _locked(self) -> Generator[None, None, None]:
        """Hold the cross-process lock; re-entrant within this store."""
        with self._thread_lock:
            if self._lock_depth:
                self._lock_depth += 1
                try:
                    yield
                finally:
                    self._lock_depth -= 1
                return

            self._acquire_lock()
            self._lock_depth = 1
            try:
                yield
            finally:
                self._lock_depth = 0
                self._release_lock()

    def _acquire_lock(self) -> None:
        """Acquire the lock, retrying while another live process holds it.

        Raises:
            LockBusyError: If every attempt found the lock held
            StoreWriteError: If the lock file cannot be written
        """
        busy: LockBusyError | None = None
        for attempt in range(self.lock_retry_attempts):
            try:
                self._try_acquire_lock()
                return
            except LockBusyError as e:
                busy = e
                logger.debug(f"Store lock busy (attempt {attempt + 1}/{self.lock_retry_attempts})")
                if attempt + 1 < self.lock_retry_attempts:
                    time.sleep(self.lock_retry_delay)
        raise busy or LockBusyError(None)

    def _try_acquire_lock(self) -> None:
        """Make one attempt at claiming the lock file.

        The claim is written to a temp file first, then hard-linked into place,
        which fails if a lock exists. A stale lock is moved aside before the
        link is retried.
        """
        self._ensure_dir()
        tmp_path = self.lock_path.with_name(f"{LOCK_FILE}.tmp.{self.pid}")
        try:
            self._write_private(tmp_path, str(self.pid))
        except OSError as e:
            self._unlink_quietly(tmp_path)
            raise StoreWriteError(f"Could not write lock file: {e}") from e

        try:
            try:
                os.link(tmp_path, self.lock_path)
                return
            except FileExistsError:
                pass
            except OSError:
                # No hard links on this filesystem: fall back to check-then-rename
                if not self.lock_path.exists():
                    self._claim_lock(tmp_path)
                    return

            holder = self._read_lock_pid()
            if holder is None and not self.lock_path.exists():
                # Released since the link attempt; the next attempt links again
                raise LockBusyError(None)
            if holder is not None and is_process_alive(holder):
                raise LockBusyError(holder)

            logger.info(f"Reclaiming stale credential store lock (process {holder})")
            self._break_stale_lock(holder)
            try:
                os.link(tmp_path, self.lock_path)
            except FileExistsError:
                raise LockBusyError(self._read_lock_pid()) from None
            except OSError:
                self._claim_lock(tmp_path)
        finally:
            self._unlink_quietly(tmp_path)

    def _break_stale_lock(self, holder: int | None) -> None:
        """Move a stale lock out of the way.

        The rename is atomic, so at most one process moves a given lock file.
        If what we moved is no longer the stale lock we inspected, another
        process has already reclaimed it and the lock is put back.

        Raises:
            LockBusyError: If the lock changed hands since it was inspected
            StoreWriteError: If the lock file cannot be moved
        """
        aside = self.lock_path.with_name(f"{LOCK_FILE}.stale.{self.pid}")
        try:
            os.replace(self.lock_path, aside)
        except FileNotFoundError:
            raise LockBusyError(None) from None
        except OSError as e:
            raise StoreWriteError(f"Could not remove stale lock file: {e}") from e

        try:
            moved = _read_pid(aside)
            if moved != holder:
                try:
                    os.link(aside, self.lock_path)
                except OSError as e:
                    logger.warning(f"Could not restore credential store lock: {e}")
                raise LockBusyError(moved)
        finally:
            self._unlink_quietly(aside)

    def _claim_lock(self, tmp_path: Path) -> None:
        """Rename our claim over the lock file and confirm it stuck."""
        try:
            os.replace(tmp_path, self.lock_path)
        except OSError as e:
            raise StoreWriteError(f"Could not write lock file: {e}") from e

        holder = self._read_lock_pid()
        if holder != self.pid:
            raise LockBusyError(holder)

    def _read_lock_pid(self) -> int | None:
        """PID recorded in the lock file, or None if missing or unreadable."""
        return _read_pid(self.lock_path)

    def _release_lock(self) -> None:
        """Delete the lock file if it still names this process."""
        if self._read_lock_pid() == self.pid:
            self._unlink_quietly(self.lock_path)

    # Watching

    def watch(
        self,
        callback: WatchCallback,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        """Call ``callback`` with the new contents whenever the store file changes.

        The first call creates an empty store if none exists and starts a
        single observer; later calls only add subscribers.

        Args:
            callback: Receives the result of read() after each change
            loop: Optional event loop to deliver the callback on; otherwise
                it runs on the observer thread
        """
        with self._watch_lock:
            self._subscribers.append((callback, loop))
            if self._observer is not None:
                return

            if not self.path.exists():
                self.write_all({})
            self._ensure_dir()

            handler = _StoreFileHandler(STORE_FILE, self._notify)
            observer = Observer()
            observer.schedule(handler, str(self.data_dir), recursive=False)
            observer.daemon = True
            observer.start()
            self._observer = observer
            logger.debug(f"Watching {self.path} for changes")

    def _notify(self) -> None:
        """Push the current contents to every subscriber."""
        data = self.read()
        with self._watch_lock:
            subscribers = list(self._subscribers)

        for callback, loop in subscribers:
            if loop is not None:
                try:
                    loop.call_soon_threadsafe(self._deliver, callback, data)
                except RuntimeError:
                    logger.debug("Dropping store change notification for a closed event loop")
            else:
                self._deliver(callback, data)

    @staticmethod
    def _deliver(callback: WatchCallback, data: CredentialSet | None) -> None:
        try:
            callback(data)
        except Exception:
            logger.exception("Credential store watcher raised")

    def cleanup(self) -> None:
        """Stop watching and release the observer."""
        with self._watch_lock:
            observer = self._observer
            self._observer = None
            self._subscribers.clear()

        if observer is not None:
            observer.stop()
            observer.join(timeout=5)
            logger.debug("Stopped watching credential store")
