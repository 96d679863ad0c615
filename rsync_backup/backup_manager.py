"""Core backup orchestration: decide whether to run rsync, run it, record it."""

import logging
import os
import sys
import time
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from . import fingerprint
from .config import AppPaths, BackupConfig, try_load_config
from .retry import DEFAULT_MAX_ATTEMPTS, DEFAULT_RETRY_DELAY, run_with_retry
from .state import StateStore
from .transfer import BackupError, TransferOutcome, TransferSupervisor

EXIT_OK = 0
EXIT_FAILURE = 1


class RunState(Enum):
    IDLE = "idle"
    CONFIG_CHECK = "config_check"
    LOCKING = "locking"
    FINGERPRINT_CHECK = "fingerprint_check"
    TRANSFERRING = "transferring"
    FINALIZING = "finalizing"
    SKIPPED = "skipped"
    DONE = "done"


class BackupResult:
    """Result of a backup run."""

    def __init__(
        self,
        state: RunState,
        exit_code: int,
        fingerprint: Optional[bytes] = None,
        attempts: int = 0,
        outcome: Optional[TransferOutcome] = None,
        error_message: str = "",
        execution_time: float = 0.0,
    ):
        self.state = state
        self.exit_code = exit_code
        self.fingerprint = fingerprint
        self.attempts = attempts
        self.outcome = outcome
        self.error_message = error_message
        self.execution_time = execution_time

    @property
    def success(self) -> bool:
        return self.exit_code == EXIT_OK


class BackupManager:
    """Main backup management class."""

    def __init__(
        self,
        paths: AppPaths,
        setup_flow: Optional[Callable[[AppPaths], None]] = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        sleep: Callable[[float], None] = time.sleep,
        interactive: Optional[bool] = None,
    ):
        self.paths = paths
        self.setup_flow = setup_flow
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.sleep = sleep
        self.interactive = sys.stdout.isatty() if interactive is None else interactive
        self.state = StateStore(paths.home, paths.last_backup_file)
        self.run_state = RunState.IDLE
        self.logger = logging.getLogger(__name__)

    def load_configuration(self) -> BackupConfig:
        """Load the configuration, running the setup flow until one is valid."""
        self.run_state = RunState.CONFIG_CHECK
        config = try_load_config(self.paths.config_file)
        while config is None:
            if self.setup_flow is None:
                raise BackupError(
                    f"No valid configuration at {self.paths.config_file}; run setup first"
                )
            self.logger.info("No valid backup configuration found, starting setup")
            self.setup_flow(self.paths)
            config = try_load_config(self.paths.config_file)
        return config

    def run_backup(self) -> BackupResult:
        """Run one backup cycle and report how it ended."""
        start_time = datetime.now()
        result = self._run_backup()
        result.execution_time = (datetime.now() - start_time).total_seconds()
        return result

    def _run_backup(self) -> BackupResult:
        try:
            config = self.load_configuration()
        except BackupError as e:
            self.logger.error(str(e))
            return BackupResult(self.run_state, EXIT_FAILURE, error_message=str(e))

        self.run_state = RunState.LOCKING
        lock_name = self.paths.run_lock_name
        if not self.state.acquire_lock(lock_name, os.getpid()):
            holder = self.state.lock_holder(lock_name)
            message = "The backup process is already running"
            self.logger.info(f"{message} (pid {holder})")
            return BackupResult(self.run_state, EXIT_FAILURE, error_message=message)

        try:
            return self._run_locked(config)
        finally:
            self.state.release_lock(lock_name)

    def _run_locked(self, config: BackupConfig) -> BackupResult:
        self.run_state = RunState.FINGERPRINT_CHECK
        try:
            new_fingerprint = fingerprint.changed(
                config.local_source_path, config, self.state.read_last_fingerprint()
            )
        except OSError as e:
            error_message = f"Cannot read backup source: {e}"
            self.logger.error(error_message)
            return BackupResult(self.run_state, EXIT_FAILURE, error_message=error_message)

        if new_fingerprint is None:
            self.run_state = RunState.SKIPPED
            message = "backup target has not changed since last backup attempt."
            if self.interactive:
                self.logger.info(message)
            else:
                self.logger.debug(message)
            return BackupResult(self.run_state, EXIT_OK)

        self.run_state = RunState.TRANSFERRING
        self.logger.info(
            f"Starting backup: {config.local_source_path} -> {config.destination}"
        )
        supervisor = TransferSupervisor(config, self.state, self.paths)
        try:
            retry_result = run_with_retry(
                supervisor, self.max_attempts, self.retry_delay, self.sleep
            )
        except BackupError as e:
            self.logger.error(str(e))
            return BackupResult(
                self.run_state, EXIT_FAILURE, fingerprint=new_fingerprint, error_message=str(e)
            )

        self.run_state = RunState.FINALIZING
        if not retry_result.success:
            error_message = f"Backup failed after {retry_result.attempts} attempts"
            return BackupResult(
                RunState.DONE,
                EXIT_FAILURE,
                fingerprint=new_fingerprint,
                attempts=retry_result.attempts,
                outcome=retry_result.outcome,
                error_message=error_message,
            )

        self.state.write_last_fingerprint(new_fingerprint)
        self.logger.info(f"Successfully backed up at {datetime.now():%Y-%m-%d %H:%M:%S}")
        return BackupResult(
            RunState.DONE,
            EXIT_OK,
            fingerprint=new_fingerprint,
            attempts=retry_result.attempts,
            outcome=retry_result.outcome,
        )
