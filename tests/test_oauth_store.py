"""Tests for the cross-process credential store."""

import asyncio
import json
import logging
import stat
import sys
import threading
from pathlib import Path
from unittest.mock import patch

import pytest

from loopauth.oauth.store import (
    LEGACY_FILE,
    LOCK_FILE,
    STORE_FILE,
    CredentialStore,
    LockBusyError,
    StoreDecodeError,
    StoreWriteError,
    decode_credentials,
    encode_credentials,
)

OTHER_PID = 424242


def write_lock(store: CredentialStore, content: str) -> None:
    store.data_dir.mkdir(parents=True, exist_ok=True)
    store.lock_path.write_text(content)


class TestCodec:
    """Tests for decode_credentials / encode_credentials."""

    def test_decode_object(self) -> None:
        """Test decoding a JSON object."""
        assert decode_credentials('{"a": {"access_token": "x"}}') == {"a": {"access_token": "x"}}

    def test_decode_invalid_json(self) -> None:
        """Test that invalid JSON raises StoreDecodeError."""
        with pytest.raises(StoreDecodeError, match="invalid JSON"):
            decode_credentials("{not json")

    def test_decode_non_object(self) -> None:
        """Test that a JSON array is not accepted."""
        with pytest.raises(StoreDecodeError, match="list"):
            decode_credentials("[1, 2]")

    def test_encode_unserializable(self) -> None:
        """Test that non-JSON values raise StoreWriteError."""
        with pytest.raises(StoreWriteError):
            encode_credentials({"a": object()})


class TestReadWrite:
    """Tests for reading and writing the store file."""

    def test_read_missing_store(self, store: CredentialStore) -> None:
        """Test that a missing store reads as None."""
        assert store.read() is None
        assert store.get("anything") is None

    def test_write_and_read(self, store: CredentialStore) -> None:
        """Test that written credentials read back identically."""
        data = {"claude": {"access_token": "a1"}, "github": {"access_token": "g1"}}

        assert store.write_all(data) is True
        assert store.read() == data
        assert store.get("github") == {"access_token": "g1"}
        assert store.get("missing") is None

    def test_write_all_none_clears(self, store: CredentialStore) -> None:
        """Test that writing None stores an empty mapping."""
        store.write_all({"a": 1})
        assert store.write_all(None) is True
        assert store.read() == {}

    def test_file_is_pretty_json(self, store: CredentialStore) -> None:
        """Test the on-disk format."""
        store.write_all({"a": {"access_token": "x"}})
        text = store.path.read_text()
        assert json.loads(text) == {"a": {"access_token": "x"}}
        assert "\n" in text

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
    def test_file_permissions(self, store: CredentialStore) -> None:
        """Test that the store is owner read/write only."""
        store.write_all({"a": 1})
        assert stat.S_IMODE(store.path.stat().st_mode) == 0o600
        assert stat.S_IMODE(store.data_dir.stat().st_mode) == 0o700

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
    def test_existing_permissive_file_tightened(self, store: CredentialStore) -> None:
        """Test that an existing world-readable file ends up 0600."""
        store.data_dir.mkdir(parents=True)
        store.path.write_text("{}")
        store.path.chmod(0o644)

        store.update("a", 1)
        assert stat.S_IMODE(store.path.stat().st_mode) == 0o600

    def test_no_leftover_files(self, store: CredentialStore) -> None:
        """Test that temp files and the lock are gone after a write."""
        store.write_all({"a": 1})
        store.update("b", 2)
        assert sorted(p.name for p in store.data_dir.iterdir()) == [STORE_FILE]

    def test_update_keeps_other_providers(self, store: CredentialStore) -> None:
        """Test that updating one provider leaves the others alone."""
        store.write_all({"a": {"access_token": "1"}, "b": {"access_token": "2"}})

        assert store.update("a", {"access_token": "new"}) is True
        assert store.read() == {"a": {"access_token": "new"}, "b": {"access_token": "2"}}

    def test_update_creates_store(self, store: CredentialStore) -> None:
        """Test that update works with no existing store."""
        assert store.update("a", {"access_token": "1"}) is True
        assert store.read() == {"a": {"access_token": "1"}}

    def test_remove(self, store: CredentialStore) -> None:
        """Test removing one provider."""
        store.write_all({"a": 1, "b": 2})

        assert store.remove("a") is True
        assert store.read() == {"b": 2}

    def test_remove_missing(self, store: CredentialStore) -> None:
        """Test that removing an absent provider returns False."""
        assert store.remove("a") is False
        store.write_all({"b": 2})
        assert store.remove("a") is False
        assert store.read() == {"b": 2}

    def test_write_failure_leaves_previous_file(self, store: CredentialStore) -> None:
        """Test that a failed rename reports False and keeps the old contents."""
        store.write_all({"a": 1})

        with patch("loopauth.oauth.store.os.replace", side_effect=OSError("disk full")):
            assert store.update("a", 2) is False

        assert store.read() == {"a": 1}
        assert sorted(p.name for p in store.data_dir.iterdir()) == [STORE_FILE]

    def test_unserializable_token(self, store: CredentialStore, caplog) -> None:
        """Test that a non-JSON token is refused without touching the file."""
        store.write_all({"a": 1})

        with caplog.at_level(logging.WARNING, logger="loopauth.oauth.store"):
            assert store.update("b", object()) is False

        assert "JSON-serializable" in caplog.text
        assert store.read() == {"a": 1}


class TestCorruption:
    """Tests for corrupted store handling."""

    def test_invalid_json_deleted(self, store: CredentialStore, caplog) -> None:
        """Test that a corrupted store is deleted and reads as None."""
        store.data_dir.mkdir(parents=True)
        store.path.write_text("{not json")

        with caplog.at_level(logging.WARNING, logger="loopauth.oauth.store"):
            assert store.read() is None

        assert not store.path.exists()
        assert "corrupted" in caplog.text

    def test_non_object_deleted(self, store: CredentialStore) -> None:
        """Test that a JSON array is treated as corruption."""
        store.data_dir.mkdir(parents=True)
        store.path.write_text('["a"]')

        assert store.read() is None
        assert not store.path.exists()

    def test_invalid_utf8_deleted(self, store: CredentialStore) -> None:
        """Test that undecodable bytes are treated as corruption."""
        store.data_dir.mkdir(parents=True)
        store.path.write_bytes(b"\xff\xfe\x00garbage")

        assert store.read() is None
        assert not store.path.exists()

    def test_update_after_corruption(self, store: CredentialStore) -> None:
        """Test that updating a corrupted store starts fresh."""
        store.data_dir.mkdir(parents=True)
        store.path.write_text("garbage")

        assert store.update("a", 1) is True
        assert store.read() == {"a": 1}


class TestLegacyMigration:
    """Tests for migrating the single-provider legacy file."""

    def test_migrates_legacy_file(self, store: CredentialStore) -> None:
        """Test that the legacy token is wrapped under the claude key."""
        store.data_dir.mkdir(parents=True)
        store.legacy_path.write_text(json.dumps({"access_token": "old"}))

        assert store.read() == {"claude": {"access_token": "old"}}
        assert not store.legacy_path.exists()
        assert json.loads(store.path.read_text()) == {"claude": {"access_token": "old"}}

    def test_new_file_wins_and_legacy_removed(self, store: CredentialStore) -> None:
        """Test that an existing store is used and the legacy file deleted."""
        store.write_all({"github": 1})
        store.legacy_path.write_text(json.dumps({"access_token": "old"}))

        assert store.read() == {"github": 1}
        assert not store.legacy_path.exists()

    def test_corrupted_legacy_file(self, store: CredentialStore, caplog) -> None:
        """Test that a corrupted legacy file is deleted."""
        store.data_dir.mkdir(parents=True)
        store.legacy_path.write_text("nope")

        with caplog.at_level(logging.WARNING, logger="loopauth.oauth.store"):
            assert store.read() is None

        assert not store.legacy_path.exists()
        assert "corrupted" in caplog.text

    def test_update_migrates_first(self, store: CredentialStore) -> None:
        """Test that an update on a legacy-only store keeps the migrated token."""
        store.data_dir.mkdir(parents=True)
        store.legacy_path.write_text(json.dumps({"access_token": "old"}))

        assert store.update("github", {"access_token": "g"}) is True
        assert store.read() == {
            "claude": {"access_token": "old"},
            "github": {"access_token": "g"},
        }
        assert not store.legacy_path.exists()
        assert not store.lock_path.exists()

    def test_migration_when_lock_busy(self, store: CredentialStore) -> None:
        """Test that a blocked migration still returns the legacy data."""
        store.data_dir.mkdir(parents=True)
        store.legacy_path.write_text(json.dumps({"access_token": "old"}))
        write_lock(store, str(OTHER_PID))

        with patch("loopauth.oauth.store.is_process_alive", return_value=True):
            assert store.read() == {"claude": {"access_token": "old"}}

        assert store.legacy_path.exists()
        assert not store.path.exists()

    def test_legacy_file_names(self, store: CredentialStore) -> None:
        """Test the file layout inside the data directory."""
        assert store.path.name == STORE_FILE
        assert store.legacy_path.name == LEGACY_FILE
        assert store.lock_path.name == LOCK_FILE
        assert store.path.parent == store.legacy_path.parent == store.lock_path.parent


class TestLocking:
    """Tests for the advisory PID lock file."""

    def test_lock_released_after_write(self, store: CredentialStore) -> None:
        """Test that a successful write removes the lock."""
        store.update("a", 1)
        assert not store.lock_path.exists()

    def test_lock_holds_pid_while_writing(self, store: CredentialStore) -> None:
        """Test the lock file contents during a mutation."""
        with store._locked():
            assert store.lock_path.read_text() == str(store.pid)
        assert not store.lock_path.exists()

    def test_busy_lock_gives_up(self, tmp_path: Path, caplog) -> None:
        """Test that a live holder makes the update fail after every attempt."""
        store = CredentialStore(data_dir=tmp_path, lock_retry_attempts=5, lock_retry_delay=0.001)
        store.write_all({"a": 1})
        write_lock(store, str(OTHER_PID))

        with (
            patch("loopauth.oauth.store.is_process_alive", return_value=True) as mock_alive,
            caplog.at_level(logging.WARNING, logger="loopauth.oauth.store"),
        ):
            assert store.update("a", 2) is False

        assert mock_alive.call_count == 5
        mock_alive.assert_called_with(OTHER_PID)
        assert store.read() == {"a": 1}
        assert store.lock_path.read_text() == str(OTHER_PID)
        assert "gave up after 5 attempts" in caplog.text

    def test_lock_freed_during_retries(self, tmp_path: Path) -> None:
        """Test that the update succeeds once the holder releases the lock."""
        store = CredentialStore(data_dir=tmp_path, lock_retry_attempts=5, lock_retry_delay=0.001)
        write_lock(store, str(OTHER_PID))

        def holder_exits(pid: int) -> bool:
            store.lock_path.unlink()
            return True

        with patch("loopauth.oauth.store.is_process_alive", side_effect=holder_exits) as mock_alive:
            assert store.update("a", 1) is True

        assert mock_alive.call_count == 1
        assert store.read() == {"a": 1}

    def test_stale_lock_reclaimed(self, store: CredentialStore) -> None:
        """Test that a lock naming a dead process is reclaimed immediately."""
        write_lock(store, str(OTHER_PID))

        with patch("loopauth.oauth.store.is_process_alive", return_value=False) as mock_alive:
            assert store.update("a", 1) is True

        mock_alive.assert_called_once_with(OTHER_PID)
        assert store.read() == {"a": 1}
        assert not store.lock_path.exists()

    def test_stale_lock_from_exited_process(self, store: CredentialStore, dead_pid: int) -> None:
        """Test reclamation against a real process that has exited."""
        write_lock(store, str(dead_pid))

        assert store.update("a", 1) is True
        assert store.read() == {"a": 1}

    def test_unparseable_lock_reclaimed(self, store: CredentialStore) -> None:
        """Test that garbage in the lock file counts as stale."""
        write_lock(store, "not-a-pid")

        with patch("loopauth.oauth.store.is_process_alive") as mock_alive:
            assert store.update("a", 1) is True

        mock_alive.assert_not_called()
        assert store.read() == {"a": 1}

    def test_same_stale_lock_reclaimed_once(self, tmp_path: Path) -> None:
        """Test that only one of two writers reclaiming one stale lock gets it."""
        first = CredentialStore(data_dir=tmp_path, pid=1001)
        second = CredentialStore(data_dir=tmp_path, pid=1002)
        write_lock(first, str(OTHER_PID))
        checked: list[int] = []

        def second_reclaims_meanwhile(pid: int) -> bool:
            checked.append(pid)
            if len(checked) == 1:
                second._try_acquire_lock()
            return False

        with patch("loopauth.oauth.store.is_process_alive", side_effect=second_reclaims_meanwhile):
            with pytest.raises(LockBusyError) as exc_info:
                first._try_acquire_lock()

        assert checked == [OTHER_PID, OTHER_PID]
        assert exc_info.value.holder_pid == 1002
        assert first.lock_path.read_text() == "1002"
        assert not list(tmp_path.glob(f"{LOCK_FILE}.*"))

        second._release_lock()
        assert not first.lock_path.exists()

    def test_release_only_own_lock(self, store: CredentialStore) -> None:
        """Test that a lock taken over by another process is left in place."""
        with store._locked():
            store.lock_path.write_text(str(OTHER_PID))

        assert store.lock_path.read_text() == str(OTHER_PID)

    def test_reentrant_lock(self, store: CredentialStore) -> None:
        """Test that nested locking does not deadlock or release early."""
        with store._locked():
            with store._locked():
                assert store.lock_path.exists()
            assert store.lock_path.exists()
        assert not store.lock_path.exists()

    def test_concurrent_updates_both_land(self, tmp_path: Path) -> None:
        """Test that two writers with distinct PIDs serialize through the lock."""
        first = CredentialStore(data_dir=tmp_path, lock_retry_attempts=200, lock_retry_delay=0.005, pid=1001)
        second = CredentialStore(data_dir=tmp_path, lock_retry_attempts=200, lock_retry_delay=0.005, pid=1002)
        barrier = threading.Barrier(2)
        results: dict[str, list[bool]] = {"a": [], "b": []}

        def worker(store: CredentialStore, provider: str) -> None:
            barrier.wait()
            for i in range(10):
                results[provider].append(store.update(provider, {"n": i}))

        with patch("loopauth.oauth.store.is_process_alive", return_value=True):
            threads = [
                threading.Thread(target=worker, args=(first, "a")),
                threading.Thread(target=worker, args=(second, "b")),
            ]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join(timeout=30)

        assert all(results["a"]) and len(results["a"]) == 10
        assert all(results["b"]) and len(results["b"]) == 10
        assert first.read() == {"a": {"n": 9}, "b": {"n": 9}}
        assert not first.lock_path.exists()


class TestWatch:
    """Tests for change notification."""

    def test_watch_creates_empty_store(self, store: CredentialStore) -> None:
        """Test that watching a missing store creates it."""
        store.watch(lambda data: None)
        assert store.read() == {}

    def test_single_observer(self, store: CredentialStore) -> None:
        """Test that multiple subscribers share one observer."""
        store.watch(lambda data: None)
        observer = store._observer
        store.watch(lambda data: None)

        assert store._observer is observer
        assert len(store._subscribers) == 2

    def test_notifies_on_change(self, store: CredentialStore) -> None:
        """Test that an update from another instance is observed."""
        seen: list[dict] = []
        changed = threading.Event()

        def on_change(data):
            if data and "a" in data:
                seen.append(data)
                changed.set()

        store.watch(on_change)
        writer = CredentialStore(data_dir=store.data_dir, pid=store.pid + 1)
        writer.update("a", {"access_token": "x"})

        assert changed.wait(timeout=5)
        assert seen[-1] == {"a": {"access_token": "x"}}

    def test_ignores_other_files(self, store: CredentialStore) -> None:
        """Test that unrelated files in the directory do not notify."""
        changed = threading.Event()
        store.watch(lambda data: changed.set())

        (store.data_dir / "unrelated.txt").write_text("x")

        assert not changed.wait(timeout=0.5)

    @pytest.mark.asyncio
    async def test_delivers_on_event_loop(self, store: CredentialStore) -> None:
        """Test that a loop subscriber is called on the loop thread."""
        loop = asyncio.get_running_loop()
        received: asyncio.Future = loop.create_future()
        loop_thread = threading.get_ident()

        def on_change(data):
            if data and not received.done():
                received.set_result((threading.get_ident(), data))

        store.watch(on_change, loop=loop)
        await asyncio.to_thread(store.update, "a", 1)

        thread_id, data = await asyncio.wait_for(received, timeout=5)
        assert thread_id == loop_thread
        assert data == {"a": 1}

    def test_raising_subscriber_logged(self, store: CredentialStore, caplog) -> None:
        """Test that a failing subscriber does not stop the others."""
        called = threading.Event()

        def broken(data):
            raise RuntimeError("boom")

        store.watch(broken)
        store.watch(lambda data: called.set() if data else None)

        with caplog.at_level(logging.ERROR, logger="loopauth.oauth.store"):
            store.update("a", 1)
            assert called.wait(timeout=5)

        assert "watcher raised" in caplog.text

    def test_cleanup_stops_observer(self, store: CredentialStore) -> None:
        """Test that cleanup stops notifications and clears subscribers."""
        calls: list = []
        store.watch(calls.append)
        observer = store._observer

        store.cleanup()
        calls.clear()
        store.update("a", 1)

        assert store._observer is None
        assert store._subscribers == []
        assert not observer.is_alive()
        assert calls == []

    def test_cleanup_without_watch(self, store: CredentialStore) -> None:
        """Test that cleanup is safe when nothing is watched."""
        store.cleanup()
        store.cleanup()
