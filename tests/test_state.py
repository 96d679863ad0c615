"""Tests for PID markers and the last-backup record."""

from __future__ import annotations

import fcntl
import os
from pathlib import Path

import pytest

from rsync_backup import state as state_module
from rsync_backup.state import StateStore, pid_is_alive


@pytest.fixture
def store(tmp_path: Path) -> StateStore:
    return StateStore(tmp_path / "state", tmp_path / "state" / "Job.lastbackup")


class TestLocks:
    def test_acquire_records_pid(self, store: StateStore) -> None:
        assert store.acquire_lock("Job", 4242)
        assert store.pid_file("Job").read_text().strip() == "4242"
        assert store.lock_holder("Job") == 4242

    def test_live_lock_is_exclusive(self, store: StateStore) -> None:
        assert store.acquire_lock("Job", os.getpid())
        assert not store.acquire_lock("Job", os.getpid() + 1)
        assert store.lock_holder("Job") == os.getpid()

    def test_locks_are_independent(self, store: StateStore) -> None:
        assert store.acquire_lock("Job", os.getpid())
        assert store.acquire_lock("Job.rsync", os.getpid())

    def test_release_is_idempotent(self, store: StateStore) -> None:
        assert store.acquire_lock("Job", os.getpid())
        store.release_lock("Job")
        store.release_lock("Job")
        assert store.lock_holder("Job") is None
        assert store.acquire_lock("Job", os.getpid())

    def test_release_without_state_dir(self, tmp_path: Path) -> None:
        StateStore(tmp_path / "never-created").release_lock("Job")

    def test_stale_lock_reclaimed(self, store: StateStore, monkeypatch) -> None:
        assert store.acquire_lock("Job", 999_999)
        monkeypatch.setattr(state_module, "pid_is_alive", lambda pid: False)
        assert store.acquire_lock("Job", 1234)
        assert store.lock_holder("Job") == 1234

    def test_concurrent_takeover_keeps_first_winner(self, tmp_path: Path, monkeypatch) -> None:
        """A second store that saw the dead PID must not remove the lock the first one just took."""
        store_a = StateStore(tmp_path / "state")
        store_b = StateStore(tmp_path / "state")
        assert store_a.acquire_lock("Job", 999_999)
        results = {}

        def _pid_is_alive(pid: int) -> bool:
            if pid == 999_999 and "a" not in results:
                results["a"] = None
                # Store A takes the stale lock over while B is still deciding
                results["a"] = store_a.acquire_lock("Job", 1111)
            return pid != 999_999

        monkeypatch.setattr(state_module, "pid_is_alive", _pid_is_alive)

        assert not store_b.acquire_lock("Job", 2222)
        assert results["a"] is True
        assert store_a.lock_holder("Job") == 1111

    def test_takeover_in_progress_elsewhere(self, store: StateStore, monkeypatch) -> None:
        assert store.acquire_lock("Job", 999_999)
        monkeypatch.setattr(state_module, "pid_is_alive", lambda pid: False)

        with open(store.state_dir / ".Job.reclaim", "a") as guard:
            fcntl.flock(guard.fileno(), fcntl.LOCK_EX)
            try:
                assert not store.acquire_lock("Job", 1234)
            finally:
                fcntl.flock(guard.fileno(), fcntl.LOCK_UN)

        assert store.lock_holder("Job") == 999_999
        assert store.acquire_lock("Job", 1234)

    def test_garbage_lock_reclaimed(self, store: StateStore) -> None:
        store.state_dir.mkdir(parents=True)
        store.pid_file("Job").write_text("not a pid\n")
        assert store.acquire_lock("Job", os.getpid())
        assert store.lock_holder("Job") == os.getpid()

    def test_no_temporary_files_left(self, store: StateStore) -> None:
        assert store.acquire_lock("Job", os.getpid())
        assert not store.acquire_lock("Job", os.getpid())
        assert sorted(p.name for p in store.state_dir.iterdir()) == ["Job.pid"]


def test_pid_is_alive() -> None:
    assert pid_is_alive(os.getpid())
    assert not pid_is_alive(0)
    assert not pid_is_alive(-5)


class TestLastFingerprint:
    def test_absent(self, store: StateStore) -> None:
        assert store.read_last_fingerprint() is None

    def test_write_then_read(self, store: StateStore) -> None:
        fingerprint = bytes(range(64))
        store.write_last_fingerprint(fingerprint)
        assert store.read_last_fingerprint() == fingerprint
        assert store.last_backup_file.read_text() == fingerprint.hex() + "\n"

    def test_overwrite(self, store: StateStore) -> None:
        store.write_last_fingerprint(b"\x01" * 64)
        store.write_last_fingerprint(b"\x02" * 64)
        assert store.read_last_fingerprint() == b"\x02" * 64
        assert [p.name for p in store.state_dir.iterdir()] == ["Job.lastbackup"]

    @pytest.mark.parametrize("content", ["", "abc123\n", "zz" * 64, "ab" * 63])
    def test_malformed_record_ignored(self, store: StateStore, content: str) -> None:
        store.state_dir.mkdir(parents=True)
        store.last_backup_file.write_text(content)
        assert store.read_last_fingerprint() is None
