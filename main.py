#!/usr/bin/env python3
"""
rsync-backup: Change-driven rsync backup with cron or launchd scheduling.

Main entry point for the backup application.
"""

import argparse
import logging
import logging.handlers
import signal
import sys
from collections import deque
from pathlib import Path

from rsync_backup.backup_manager import BackupManager, EXIT_FAILURE, EXIT_OK
from rsync_backup.config import AppPaths, try_load_config
from rsync_backup.schedule import (
    ScheduleError,
    is_scheduled,
    next_run_time,
    schedule_backup,
    unschedule_backup,
)
from rsync_backup.setup_wizard import run_setup
from rsync_backup.state import StateStore

LOG_MAX_BYTES = 5 * 1024 * 1024
LOG_BACKUP_COUNT = 3
APP_LOGGER = "rsync_backup"


def setup_logging(paths: AppPaths, log_level: str = "INFO", cli_mode: bool = False) -> logging.Logger:
    """Set up logging configuration."""
    paths.logs_folder.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(APP_LOGGER)
    logger.setLevel(log_level)
    # Drop handlers from an earlier call in the same process
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter("%(asctime)s %(levelname)-8s %(message)s")

    file_handler = logging.handlers.RotatingFileHandler(
        paths.log_file, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUP_COUNT, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    if cli_mode:
        # In CLI mode, log to both console and file
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    return logger


def _raise_system_exit(signum, frame):
    raise SystemExit(128 + signum)


def program_command() -> list[str]:
    """Command line that re-runs this program, for scheduler entries."""
    return [sys.executable, str(Path(__file__).resolve())]


def parse_arguments(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Back up a directory with rsync whenever it changes",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py setup        # Create the backup configuration
  python main.py backup       # Back up now if the source changed
  python main.py schedule     # Run the backup from cron / launchd
  python main.py status       # Show schedule, locks and last backup
        """,
    )

    parser.add_argument(
        "--home",
        type=Path,
        default=None,
        help="Application directory holding config, state and logs (default: ~/.rsync-backup)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("setup", help="Create or update the backup configuration")
    subparsers.add_parser("backup", help="Run a backup if the source changed")
    subparsers.add_parser("schedule", help="Register the backup with the OS scheduler")
    subparsers.add_parser("unschedule", help="Remove the backup from the OS scheduler")
    subparsers.add_parser("status", help="Show schedule, lock holders and last backup")
    logs_parser = subparsers.add_parser("logs", help="Print the end of the log file")
    logs_parser.add_argument(
        "--lines", "-n", type=int, default=50, help="Number of lines to print (default: 50)"
    )

    return parser.parse_args(argv)


def run_backup_command(paths: AppPaths, logger: logging.Logger) -> int:
    manager = BackupManager(paths, setup_flow=run_setup)
    result = manager.run_backup()
    logger.debug(
        f"Backup finished in state {result.state.name} after {result.execution_time:.2f}s"
    )
    return result.exit_code


def run_status_command(paths: AppPaths) -> int:
    config = try_load_config(paths.config_file)
    if config is None:
        print("No backup configured yet, run 'setup' to get things going")
        return EXIT_OK

    state = StateStore(paths.home, paths.last_backup_file)
    print(f"Backup: {config.local_source_path} -> {config.destination}")

    scheduled = is_scheduled(paths)
    print(f"Scheduled: {'yes' if scheduled else 'no'}")
    if scheduled:
        print(f"Next run: {next_run_time(config):%Y-%m-%d %H:%M}")

    for label, name in (("Backup", paths.run_lock_name), ("rsync", paths.transfer_lock_name)):
        holder = state.lock_holder(name)
        if holder is not None:
            print(f"{label} running with pid {holder}")

    last = state.read_last_fingerprint()
    print(f"Last backup fingerprint: {last.hex()[:16] if last else 'none'}")
    return EXIT_OK


def run_logs_command(paths: AppPaths, lines: int) -> int:
    if not paths.log_file.exists():
        print("No log file has been created yet, run 'setup' to get things going")
        return EXIT_OK

    with open(paths.log_file, "r", encoding="utf-8", errors="replace") as f:
        for line in deque(f, maxlen=lines):
            print(line, end="")
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    """Main application entry point."""
    args = parse_arguments(argv)
    paths = AppPaths(args.home)
    paths.ensure()

    if args.command == "logs":
        return run_logs_command(paths, args.lines)

    config = try_load_config(paths.config_file)
    log_level = config.log_level if config else "INFO"
    logger = setup_logging(paths, log_level, cli_mode=sys.stdout.isatty())

    signal.signal(signal.SIGTERM, _raise_system_exit)

    try:
        if args.command == "setup":
            run_setup(paths)
            return EXIT_OK

        if args.command == "backup":
            return run_backup_command(paths, logger)

        if args.command == "status":
            return run_status_command(paths)

        if config is None:
            config = run_setup(paths)

        if args.command == "schedule":
            print(schedule_backup(config, program_command(), paths))
        elif args.command == "unschedule":
            print(unschedule_backup(paths))
        return EXIT_OK

    except ScheduleError as e:
        logger.error(str(e))
        return EXIT_FAILURE

    except (KeyboardInterrupt, EOFError):
        error_msg = "Interrupted by user"
        print(f"\nINTERRUPTED: {error_msg}", file=sys.stderr)
        logger.warning(error_msg)
        return EXIT_FAILURE

    except Exception as e:
        error_msg = f"Unexpected error: {e}"
        print(f"ERROR: {error_msg}", file=sys.stderr)
        logger.critical(error_msg, exc_info=True)
        return EXIT_FAILURE


if __name__ == "__main__":
    exit_code = main()
    sys.exit(exit_code)
