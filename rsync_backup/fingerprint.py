"""Change detection for the backup source tree.

The fingerprint is a SHA-512 digest over the path, modification time and size
of every file and directory under the source root, followed by the job
configuration. It only answers "did anything change since the last successful
backup?" and is not meant to resist deliberate collisions. Edits that keep
both size and mtime unchanged are not detected.
"""

import hashlib
import logging
import os
from pathlib import Path
from typing import Iterable, Optional

from pathspec import PathSpec

from .config import BackupConfig

logger = logging.getLogger(__name__)


class ExcludeMatcher:
    """Matches paths under the source root against rsync exclude patterns."""

    def __init__(self, root: Path, patterns: Iterable[str]):
        self.root = root
        self.spec = PathSpec.from_lines("gitwildmatch", list(patterns))

    def is_excluded(self, path: str, is_dir: bool) -> bool:
        rel_posix = Path(os.path.relpath(path, self.root)).as_posix()
        if rel_posix == ".":
            return False
        if is_dir:
            rel_posix += "/"
        return self.spec.match_file(rel_posix)


def _check_root(root: Path) -> None:
    if not root.exists():
        raise FileNotFoundError(f"Backup source does not exist: {root}")
    if not root.is_dir():
        raise NotADirectoryError(f"Backup source is not a directory: {root}")
    if not os.access(root, os.R_OK | os.X_OK):
        raise PermissionError(f"Backup source is not readable: {root}")


def _fold_entry(digest, path: str) -> bool:
    try:
        stat = os.stat(path)
    except OSError as e:
        # Files come and go during a live walk; skip the entry and carry on.
        logger.debug(f"Skipping unreadable entry {path}: {e}")
        return False
    digest.update(f"{path} - {stat.st_mtime_ns} - {stat.st_size}".encode("utf-8", "surrogateescape"))
    return True


def compute(source_path, config: BackupConfig) -> bytes:
    """
    Compute the fingerprint of a source tree and its configuration.

    Args:
        source_path: Root directory of the backup
        config: Active job configuration, folded in after the walk

    Returns:
        The raw SHA-512 digest

    Raises:
        OSError: If the root directory is missing or unreadable
    """
    root = Path(source_path)
    _check_root(root)

    matcher = ExcludeMatcher(root, config.excludes) if config.excludes else None
    digest = hashlib.sha512()
    entries = 0

    def _on_walk_error(error: OSError) -> None:
        logger.warning(f"Cannot read directory {error.filename}: {error.strerror}")

    root_str = str(root)
    if _fold_entry(digest, root_str):
        entries += 1

    for dirpath, dirnames, filenames in os.walk(root_str, onerror=_on_walk_error):
        dirnames.sort()
        filenames.sort()

        kept_dirs = []
        for name in dirnames:
            path = os.path.join(dirpath, name)
            if matcher and matcher.is_excluded(path, is_dir=True):
                continue
            kept_dirs.append(name)
            if _fold_entry(digest, path):
                entries += 1
        # Prune excluded directories from the walk
        dirnames[:] = kept_dirs

        for name in filenames:
            path = os.path.join(dirpath, name)
            if matcher and matcher.is_excluded(path, is_dir=False):
                continue
            if _fold_entry(digest, path):
                entries += 1

    digest.update(config.fingerprint_payload().encode("utf-8"))
    logger.debug(f"Fingerprinted {entries} entries under {root}")
    return digest.digest()


def changed(source_path, config: BackupConfig, last_fingerprint: Optional[bytes]) -> Optional[bytes]:
    """Return the new fingerprint if it differs from ``last_fingerprint``, else None."""
    fingerprint = compute(source_path, config)
    if last_fingerprint is not None and fingerprint == last_fingerprint:
        return None
    return fingerprint
