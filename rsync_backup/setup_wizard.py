"""Interactive creation of the backup configuration."""

import logging
from pathlib import Path
from typing import Callable, Optional

from pydantic import ValidationError

from .config import AppPaths, BackupConfig, save_config, try_load_config

logger = logging.getLogger(__name__)


def _ask(input_func: Callable[[str], str], prompt: str, default: Optional[str]) -> str:
    label = f"{prompt} [{default}]: " if default else f"{prompt}: "
    answer = input_func(label).strip()
    return answer or (default or "")


def run_setup(paths: AppPaths, input_func: Callable[[str], str] = input) -> BackupConfig:
    """
    Ask for the source directory and destination, then save the configuration.

    Answers from an existing configuration are offered as defaults. Invalid
    answers are reported and the questions asked again.
    """
    existing = try_load_config(paths.config_file)
    defaults = {
        "local_source_path": str(Path.home() / "Documents"),
        "remote_user": None,
        "remote_host": None,
        "remote_destination_path": "/backup",
    }
    if existing is not None:
        defaults.update(
            {key: getattr(existing, key) for key in defaults}
        )

    print("Creating a new backup profile")

    while True:
        answers = {
            "local_source_path": _ask(input_func, "Location to backup", defaults["local_source_path"]),
            "remote_user": _ask(input_func, "Remote user", defaults["remote_user"]),
            "remote_host": _ask(input_func, "Remote host", defaults["remote_host"]),
            "remote_destination_path": _ask(
                input_func, "Remote destination path", defaults["remote_destination_path"]
            ),
        }
        answers["local_source_path"] = str(Path(answers["local_source_path"]).expanduser())

        extra = {}
        if existing is not None:
            extra = existing.model_dump(exclude=set(answers))

        try:
            config = BackupConfig(**extra, **answers)
        except ValidationError as e:
            for error in e.errors():
                field = ".".join(str(part) for part in error["loc"])
                print(f"Invalid {field}: {error['msg']}")
            defaults.update({key: value or None for key, value in answers.items()})
            continue

        if not Path(config.local_source_path).is_dir():
            print(f"{config.local_source_path} is not a directory")
            continue

        break

    print(f"Setting up backup from {config.local_source_path} -> {config.destination}")
    save_config(config, paths.config_file)
    logger.info(f"Configuration saved to {paths.config_file}")
    return config
