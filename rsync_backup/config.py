"""Configuration management for the rsync-backup system."""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Optional, Tuple

import yaml
from croniter import croniter
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
)

JOB_NAME = "RsyncBackup"
DEFAULT_APP_DIR = Path.home() / ".rsync-backup"
DEFAULT_SCHEDULE = "*/5 * * * *"


class BackupConfig(BaseModel):
    """A single backup job: what to copy, where to, and how."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    local_source_path: str = Field(description="Absolute path of the directory to back up")
    remote_destination_path: str = Field(
        validation_alias=AliasChoices("remote_destination_path", "strongspace_path"),
        description="Directory on the remote host that receives the copy",
    )
    remote_user: str = Field(description="SSH user on the remote host")
    remote_host: str = Field(description="Remote host name")
    keep_remote_files: bool = Field(
        default=False, description="Keep remote files that were deleted locally"
    )
    progressive_transfer: bool = Field(
        default=False, description="Keep partially transferred files and show progress"
    )
    excludes: Tuple[str, ...] = Field(
        default=(), description="rsync exclude patterns, passed in order"
    )
    rsync_binary: str = Field(default="rsync", description="rsync executable to run")
    schedule: str = Field(
        default=DEFAULT_SCHEDULE,
        description="Cron-like schedule: 'minute hour day-of-month month day-of-week'",
    )
    log_level: str = Field(
        default="INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )

    @field_validator("local_source_path")
    @classmethod
    def validate_source_path(cls, v: str) -> str:
        """Validate source directory path."""
        if not v.startswith("/"):
            raise ValueError("local_source_path must be an absolute path")
        return v

    @field_validator("remote_destination_path", "remote_user", "remote_host", "rsync_binary")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("value must not be blank")
        return v.strip()

    @field_validator("excludes", mode="before")
    @classmethod
    def validate_excludes(cls, v):
        """Accept a missing ``excludes`` key written as null in YAML."""
        if v is None:
            return ()
        return v

    @field_validator("schedule")
    @classmethod
    def validate_schedule(cls, v: str) -> str:
        """Validate the cron schedule format."""
        schedule_parts = v.strip().split()

        if len(schedule_parts) != 5:
            raise ValueError(
                "Schedule must have 5 fields: 'minute hour day-of-month month day-of-week'"
            )

        try:
            croniter(v)
            return " ".join(schedule_parts)
        except Exception as e:
            raise ValueError(f"Invalid cron schedule format: {e}")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"log_level must be one of: {', '.join(sorted(valid_levels))}")
        return v_upper

    @property
    def source(self) -> str:
        """Source argument for rsync; the trailing slash copies directory contents."""
        return self.local_source_path.rstrip("/") + "/"

    @property
    def destination(self) -> str:
        """Destination argument for rsync in ``user@host:path/`` form."""
        remote_path = self.remote_destination_path.rstrip("/")
        return f"{self.remote_user}@{self.remote_host}:{remote_path}/"

    def fingerprint_payload(self) -> str:
        """Stable serialization of every field, folded into the source fingerprint."""
        return json.dumps(self.model_dump(mode="json"), sort_keys=True)


class AppPaths:
    """Locations of every file the backup job persists."""

    def __init__(self, home: Optional[Path] = None, job_name: str = JOB_NAME):
        self.home = Path(home) if home is not None else DEFAULT_APP_DIR
        self.job_name = job_name

    @property
    def config_file(self) -> Path:
        return self.home / f"{self.job_name}.config"

    @property
    def last_backup_file(self) -> Path:
        return self.home / f"{self.job_name}.lastbackup"

    @property
    def logs_folder(self) -> Path:
        return self.home / "logs"

    @property
    def log_file(self) -> Path:
        return self.logs_folder / f"{self.job_name}.log"

    @property
    def run_lock_name(self) -> str:
        """PID marker name for a running backup."""
        return self.job_name

    @property
    def transfer_lock_name(self) -> str:
        """PID marker name for a running rsync subprocess."""
        return f"{self.job_name}.rsync"

    def ensure(self) -> None:
        self.home.mkdir(parents=True, exist_ok=True)


def load_config(config_path: Path) -> BackupConfig:
    """Load and validate configuration from YAML file."""
    config_file = Path(config_path)

    if not config_file.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    try:
        with open(config_file, "r", encoding="utf-8") as f:
            config_data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML format in config file: {e}")
    except OSError as e:
        raise ValueError(f"Could not read config file: {e}")

    if config_data is None:
        raise ValueError("Configuration file is empty")
    if not isinstance(config_data, dict):
        raise ValueError("Configuration file must contain a mapping")

    try:
        return BackupConfig(**config_data)
    except ValidationError as e:
        raise ValueError(f"Configuration validation error: {e}")


def try_load_config(config_path: Path) -> Optional[BackupConfig]:
    """Return the configuration, or None when it is missing or invalid."""
    try:
        return load_config(config_path)
    except (FileNotFoundError, ValueError):
        return None


def save_config(config: BackupConfig, config_path: Path) -> None:
    """Write configuration as YAML, replacing any previous file atomically."""
    config_file = Path(config_path)
    config_file.parent.mkdir(parents=True, exist_ok=True)

    data = config.model_dump(mode="json")
    fd, tmp_name = tempfile.mkstemp(dir=config_file.parent, prefix=f".{config_file.name}.")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
        os.replace(tmp_name, config_file)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
