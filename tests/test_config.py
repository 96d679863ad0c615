"""Tests for configuration loading and validation."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from rsync_backup.config import (
    AppPaths,
    BackupConfig,
    load_config,
    save_config,
    try_load_config,
)


class TestBackupConfig:
    """Tests for the BackupConfig model."""

    def test_defaults(self, make_config) -> None:
        config = make_config()
        assert config.keep_remote_files is False
        assert config.progressive_transfer is False
        assert config.excludes == ()
        assert config.rsync_binary == "rsync"
        assert config.log_level == "INFO"

    def test_source_and_destination_have_trailing_slash(self, make_config) -> None:
        config = make_config(local_source_path="/data/docs/", remote_destination_path="/backups/docs")
        assert config.source == "/data/docs/"
        assert config.destination == "alice@backup.example.com:/backups/docs/"

    def test_relative_source_rejected(self, make_config) -> None:
        with pytest.raises(ValidationError):
            make_config(local_source_path="docs")

    def test_blank_host_rejected(self, make_config) -> None:
        with pytest.raises(ValidationError):
            make_config(remote_host="  ")

    def test_invalid_schedule_rejected(self, make_config) -> None:
        with pytest.raises(ValidationError):
            make_config(schedule="every five minutes")

    def test_log_level_normalized(self, make_config) -> None:
        assert make_config(log_level="debug").log_level == "DEBUG"

    def test_config_is_immutable(self, make_config) -> None:
        config = make_config()
        with pytest.raises(ValidationError):
            config.keep_remote_files = True

    def test_legacy_strongspace_path_key(self) -> None:
        config = BackupConfig(
            local_source_path="/data",
            strongspace_path="/strongspace/alice/backup",
            remote_user="alice",
            remote_host="alice.example.com",
        )
        assert config.remote_destination_path == "/strongspace/alice/backup"

    def test_fingerprint_payload_is_stable_json(self, make_config) -> None:
        config = make_config(excludes=["*.tmp", ".cache"])
        payload = config.fingerprint_payload()
        assert payload == make_config(excludes=["*.tmp", ".cache"]).fingerprint_payload()
        assert json.loads(payload)["excludes"] == ["*.tmp", ".cache"]


class TestLoadConfig:
    """Tests for reading and writing the YAML config file."""

    def test_save_then_load(self, app_paths: AppPaths, make_config) -> None:
        config = make_config(excludes=["*.iso", "My Music/"], keep_remote_files=True)
        save_config(config, app_paths.config_file)
        assert load_config(app_paths.config_file) == config

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "missing.config")

    def test_empty_file(self, tmp_path: Path) -> None:
        path = tmp_path / "empty.config"
        path.write_text("")
        with pytest.raises(ValueError, match="empty"):
            load_config(path)

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "broken.config"
        path.write_text("local_source_path: [unclosed\n")
        with pytest.raises(ValueError):
            load_config(path)

    def test_validation_error_becomes_value_error(self, tmp_path: Path) -> None:
        path = tmp_path / "invalid.config"
        path.write_text(yaml.safe_dump({"local_source_path": "relative"}))
        with pytest.raises(ValueError):
            load_config(path)

    def test_null_excludes(self, tmp_path: Path) -> None:
        path = tmp_path / "nulls.config"
        path.write_text(
            yaml.safe_dump(
                {
                    "local_source_path": "/data",
                    "remote_destination_path": "/backup",
                    "remote_user": "alice",
                    "remote_host": "example.com",
                    "excludes": None,
                }
            )
        )
        assert load_config(path).excludes == ()

    def test_try_load_returns_none(self, tmp_path: Path) -> None:
        assert try_load_config(tmp_path / "missing.config") is None
        bad = tmp_path / "bad.config"
        bad.write_text("- just\n- a list\n")
        assert try_load_config(bad) is None


def test_app_paths_layout(tmp_path: Path) -> None:
    paths = AppPaths(tmp_path)
    assert paths.config_file == tmp_path / "RsyncBackup.config"
    assert paths.last_backup_file == tmp_path / "RsyncBackup.lastbackup"
    assert paths.log_file == tmp_path / "logs" / "RsyncBackup.log"
    assert paths.run_lock_name != paths.transfer_lock_name
