"""Persistent run state: PID markers and the last successful fingerprint."""

import fcntl
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

_FINGERPRINT_RE = re.compile(r"^[0-9a-f]{128}$")


def _parse_pid(content: str) -> Optional[int]:
    try:
        return int(content)
    except ValueError:
        return None


def pid_is_alive(pid: int) -> bool:
    """Check whether a process with this PID exists."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, but belongs to another user
        return True
    return True


class StateStore:
    """Stores PID markers and the last-backup record in one directory."""

    def __init__(self, state_dir: Path, last_backup_file: Optional[Path] = None):
        self.state_dir = Path(state_dir)
        self.last_backup_file = (
            Path(last_backup_file) if last_backup_file is not None
            else self.state_dir / "lastbackup"
        )

    def pid_file(self, name: str) -> Path:
        return self.state_dir / f"{name}.pid"

    def lock_holder(self, name: str) -> Optional[int]:
        """Return the PID recorded in a marker, or None if absent or unreadable."""
        try:
            content = self.pid_file(name).read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        return _parse_pid(content)

    def acquire_lock(self, name: str, pid: int) -> bool:
        """
        Create the named PID marker.

        Returns False when a live process already holds it. Markers left behind
        by dead processes, or holding anything but a PID, are reclaimed.
        """
        self.state_dir.mkdir(parents=True, exist_ok=True)
        path = self.pid_file(name)

        # The marker is written under a temporary name and hard-linked into
        # place, so it never exists without its PID.
        fd, tmp_name = tempfile.mkstemp(dir=self.state_dir, prefix=f".{name}.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(f"{pid}\n")

            for _ in range(2):
                try:
                    os.link(tmp_name, path)
                    return True
                except FileExistsError:
                    if not self._reclaim_if_stale(name):
                        return False
            return False
        finally:
            Path(tmp_name).unlink(missing_ok=True)

    def _reclaim_if_stale(self, name: str) -> bool:
        """
        Remove the marker if its holder is dead.

        Returns True when the caller may try to create the marker again. The
        marker is re-read and removed under an exclusive flock on a guard file,
        so two processes cannot both take over the same stale marker, and a
        marker installed by a competing takeover is never deleted.
        """
        holder = self.lock_holder(name)
        if holder is not None and pid_is_alive(holder):
            return False

        guard_path = self.state_dir / f".{name}.reclaim"
        with open(guard_path, "a") as guard:
            try:
                fcntl.flock(guard.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except OSError:
                # Another process is taking over this marker right now
                return False

            try:
                path = self.pid_file(name)
                try:
                    content = path.read_text(encoding="utf-8").strip()
                except FileNotFoundError:
                    return True

                holder = _parse_pid(content)
                if holder is not None and pid_is_alive(holder):
                    return False

                logger.warning(f"Removing stale lock {path} (recorded pid: {holder})")
                path.unlink(missing_ok=True)
                return True
            finally:
                fcntl.flock(guard.fileno(), fcntl.LOCK_UN)

    def release_lock(self, name: str) -> None:
        """Remove the named PID marker; a missing marker is not an error."""
        self.pid_file(name).unlink(missing_ok=True)

    def read_last_fingerprint(self) -> Optional[bytes]:
        """Return the last successfully recorded fingerprint, if any."""
        try:
            text = self.last_backup_file.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None

        if not _FINGERPRINT_RE.match(text):
            logger.warning(f"Ignoring malformed last-backup record in {self.last_backup_file}")
            return None
        return bytes.fromhex(text)

    def write_last_fingerprint(self, fingerprint: bytes) -> None:
        """Persist the fingerprint via write-to-temp-then-rename."""
        target = self.last_backup_file
        target.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(f"{fingerprint.hex()}\n")
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
