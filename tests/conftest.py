"""Shared test fixtures for rsync-backup."""

from __future__ import annotations

import os
import stat
from pathlib import Path
from typing import Callable, Sequence

import pytest

from rsync_backup.config import AppPaths, BackupConfig, save_config

T1 = 1_700_000_000


class StubRsync:
    """An executable shell script standing in for rsync.

    Every invocation appends its arguments to ``calls_file``. The exit code of
    the n-th call is ``exit_codes[n - 1]``, repeating the last one.
    """

    def __init__(self, path: Path, calls_file: Path):
        self.path = path
        self.calls_file = calls_file

    @property
    def calls(self) -> list[str]:
        if not self.calls_file.exists():
            return []
        return self.calls_file.read_text().splitlines()


def _write_script(path: Path, body: str) -> None:
    path.write_text("#!/bin/sh\n" + body)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)


@pytest.fixture
def app_paths(tmp_path: Path) -> AppPaths:
    """Provide an application directory inside the test's temp dir."""
    paths = AppPaths(tmp_path / "home")
    paths.ensure()
    return paths


@pytest.fixture
def source_tree(tmp_path: Path) -> Path:
    """A source directory holding a single 10-byte file with a fixed mtime."""
    source = tmp_path / "source"
    source.mkdir()
    a_file = source / "a.txt"
    a_file.write_bytes(b"0123456789")
    os.utime(a_file, (T1, T1))
    return source


@pytest.fixture
def make_stub_rsync(tmp_path: Path) -> Callable[..., StubRsync]:
    def _make(
        exit_codes: Sequence[int] = (0,),
        stdout_lines: Sequence[str] = ("sending incremental file list", "a.txt"),
        stderr_lines: Sequence[str] = (),
        extra: str = "",
        name: str = "rsync-stub",
    ) -> StubRsync:
        script = tmp_path / name
        calls_file = tmp_path / f"{name}.calls"
        cases = "".join(
            f"  {index}) exit {code} ;;\n" for index, code in enumerate(exit_codes, start=1)
        )
        body = (
            f'echo "$*" >> "{calls_file}"\n'
            f'n=$(wc -l < "{calls_file}" | tr -d " ")\n'
            + "".join(f"echo '{line}'\n" for line in stdout_lines)
            + "".join(f"echo '{line}' >&2\n" for line in stderr_lines)
            + extra
            + 'case "$n" in\n'
            + cases
            + f"  *) exit {exit_codes[-1]} ;;\n"
            + "esac\n"
        )
        _write_script(script, body)
        return StubRsync(script, calls_file)

    return _make


@pytest.fixture
def make_config(source_tree: Path) -> Callable[..., BackupConfig]:
    def _make(**overrides) -> BackupConfig:
        values = {
            "local_source_path": str(source_tree),
            "remote_destination_path": "/backups/laptop",
            "remote_user": "alice",
            "remote_host": "backup.example.com",
        }
        values.update(overrides)
        return BackupConfig(**values)

    return _make


@pytest.fixture
def write_config(app_paths: AppPaths, make_config) -> Callable[..., BackupConfig]:
    """Save a configuration into the application directory."""

    def _write(**overrides) -> BackupConfig:
        config = make_config(**overrides)
        save_config(config, app_paths.config_file)
        return config

    return _write
