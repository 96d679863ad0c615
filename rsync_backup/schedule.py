"""Registering the backup with the operating system scheduler.

Linux and other Unix systems get a tagged line in the user's crontab. macOS
gets a launch agent that runs the backup every minute; the orchestrator skips
runs where nothing changed, so frequent runs are cheap.
"""

import logging
import plistlib
import shlex
import subprocess
import sys
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from croniter import croniter

from .config import AppPaths, BackupConfig

logger = logging.getLogger(__name__)

LAUNCHD_INTERVAL = 60


class ScheduleError(Exception):
    """Scheduling is unsupported or the scheduler rejected the change."""


def running_on_a_mac() -> bool:
    return sys.platform == "darwin"


def running_on_windows() -> bool:
    return sys.platform.startswith("win")


def cron_marker(paths: AppPaths) -> str:
    return f"# rsync-backup:{paths.job_name}"


def build_cron_entry(config: BackupConfig, command: List[str], paths: AppPaths) -> str:
    """Render the crontab line that runs ``command backup`` on the job's schedule."""
    shell_command = f"{shlex.join([*command, 'backup'])} >> {shlex.quote(str(paths.log_file))} 2>&1"
    # cron turns an unescaped % into a newline
    shell_command = shell_command.replace("%", "\\%")
    return f"{config.schedule} {shell_command} {cron_marker(paths)}"


def next_run_time(config: BackupConfig, current_time: Optional[datetime] = None) -> datetime:
    """
    Get the next time the backup is scheduled to run.

    Args:
        config: The backup configuration
        current_time: Current time (defaults to now)

    Returns:
        Next scheduled run time
    """
    if current_time is None:
        current_time = datetime.now()

    cron = croniter(config.schedule, current_time)
    return cron.get_next(datetime)


def _read_crontab() -> List[str]:
    try:
        result = subprocess.run(["crontab", "-l"], capture_output=True, text=True)
    except FileNotFoundError:
        raise ScheduleError("crontab is not installed")
    if result.returncode != 0:
        # "no crontab for user" is reported as a failure
        return []
    return result.stdout.splitlines()


def _write_crontab(lines: List[str]) -> None:
    content = "\n".join(lines) + "\n" if lines else ""
    try:
        result = subprocess.run(["crontab", "-"], input=content, capture_output=True, text=True)
    except FileNotFoundError:
        raise ScheduleError("crontab is not installed")
    if result.returncode != 0:
        raise ScheduleError(f"Error setting up schedule: {result.stderr.strip()}")


def install_cron_entry(config: BackupConfig, command: List[str], paths: AppPaths) -> str:
    marker = cron_marker(paths)
    lines = [line for line in _read_crontab() if not line.endswith(marker)]
    entry = build_cron_entry(config, command, paths)
    lines.append(entry)
    _write_crontab(lines)
    logger.info(f"Installed crontab entry: {entry}")
    return entry


def remove_cron_entry(paths: AppPaths) -> bool:
    marker = cron_marker(paths)
    lines = _read_crontab()
    kept = [line for line in lines if not line.endswith(marker)]
    if len(kept) == len(lines):
        return False
    _write_crontab(kept)
    logger.info("Removed crontab entry")
    return True


def launchd_label(paths: AppPaths) -> str:
    return f"com.rsync-backup.{paths.job_name}"


def launchd_plist_file(paths: AppPaths) -> Path:
    return Path.home() / "Library" / "LaunchAgents" / f"{launchd_label(paths)}.plist"


def build_launchd_plist(command: List[str], paths: AppPaths) -> bytes:
    return plistlib.dumps(
        {
            "Label": launchd_label(paths),
            "ProgramArguments": [*command, "backup"],
            "KeepAlive": False,
            "StartInterval": LAUNCHD_INTERVAL,
            "RunAtLoad": True,
            "StandardOutPath": str(paths.log_file),
            "StandardErrorPath": str(paths.log_file),
        }
    )


def schedule_backup(config: BackupConfig, command: List[str], paths: AppPaths) -> str:
    """Register the backup with the OS scheduler and describe what was done."""
    if running_on_windows():
        raise ScheduleError("Scheduling currently isn't supported on Windows")

    paths.logs_folder.mkdir(parents=True, exist_ok=True)

    if running_on_a_mac():
        plist_file = launchd_plist_file(paths)
        plist_file.parent.mkdir(parents=True, exist_ok=True)
        plist_file.write_bytes(build_launchd_plist(command, paths))
        result = subprocess.run(
            ["launchctl", "load", "-S", "Aqua", str(plist_file)], capture_output=True, text=True
        )
        output = (result.stdout + result.stderr).strip()
        if output.endswith("Already loaded"):
            raise ScheduleError("This task is already scheduled, unload before scheduling again")
        return f"Scheduled {paths.job_name} to be run continuously"

    install_cron_entry(config, command, paths)
    return f"Scheduled {paths.job_name} with cron schedule '{config.schedule}'"


def unschedule_backup(paths: AppPaths) -> str:
    if running_on_windows():
        raise ScheduleError("Scheduling currently isn't supported on Windows")

    if running_on_a_mac():
        plist_file = launchd_plist_file(paths)
        subprocess.run(["launchctl", "unload", str(plist_file)], capture_output=True, text=True)
        plist_file.unlink(missing_ok=True)
    else:
        remove_cron_entry(paths)

    return "Unscheduled continuous backup"


def is_scheduled(paths: AppPaths) -> bool:
    if running_on_windows():
        return False

    if running_on_a_mac():
        result = subprocess.run(
            ["launchctl", "list", launchd_label(paths)], capture_output=True, text=True
        )
        return result.returncode == 0

    marker = cron_marker(paths)
    try:
        return any(line.endswith(marker) for line in _read_crontab())
    except ScheduleError as e:
        logger.debug(f"Cannot read crontab: {e}")
        return False
