"""Running and supervising the rsync transfer subprocess."""

import logging
import subprocess
import threading
from enum import Enum
from typing import Callable, List, Optional, TextIO

from .config import AppPaths, BackupConfig
from .state import StateStore

logger = logging.getLogger(__name__)

# Dead connections are detected after one missed keep-alive, 3 seconds apart
SSH_COMMAND = "ssh -oServerAliveInterval=3 -oServerAliveCountMax=1"

# rsync exit codes: 23 partial transfer due to error, 24 source files vanished
PARTIAL_EXIT_CODES = frozenset({23, 24})

ADVISORY_PREFIXES = (
    "rsync: failed to set permissions on",
    "rsync error: some files could not be transferred (code 23)",
    "rsync error: some files/attrs were not transferred (see previous errors)",
)


class BackupError(Exception):
    """Base class for errors that abort a backup run."""


class TransferLaunchError(BackupError):
    """The rsync subprocess could not be started."""


class TransferLockError(BackupError):
    """Another rsync subprocess for this job is still running."""


class TransferClassification(Enum):
    SUCCESS = "success"
    PARTIAL_SUCCESS = "partial_success"
    FAILURE = "failure"


class TransferOutcome:
    """Exit status of one rsync run and how it was classified."""

    def __init__(self, exit_status: int, classification: TransferClassification):
        self.exit_status = exit_status
        self.classification = classification

    @property
    def succeeded(self) -> bool:
        """Partial transfers count as success for retry and recording purposes."""
        return self.classification is not TransferClassification.FAILURE

    def __repr__(self) -> str:
        return f"TransferOutcome(exit_status={self.exit_status}, classification={self.classification.name})"


def classify_exit_status(exit_status: int) -> TransferOutcome:
    if exit_status == 0:
        classification = TransferClassification.SUCCESS
    elif exit_status in PARTIAL_EXIT_CODES:
        classification = TransferClassification.PARTIAL_SUCCESS
    else:
        classification = TransferClassification.FAILURE
    return TransferOutcome(exit_status, classification)


def build_rsync_command(config: BackupConfig) -> List[str]:
    """Build the rsync argument list for a backup job."""
    cmd = [
        config.rsync_binary,
        "-e",
        SSH_COMMAND,
        "-avz",
    ]

    if not config.keep_remote_files:
        cmd.append("--delete")

    if config.progressive_transfer:
        cmd.extend(["--partial", "--progress"])

    for pattern in config.excludes:
        cmd.extend(["--exclude", pattern])

    cmd.extend([config.source, config.destination])
    return cmd


def is_advisory_line(line: str) -> bool:
    """Known-harmless rsync stderr messages that should not be reported as errors."""
    return line.startswith(ADVISORY_PREFIXES)


def drain_stdout(stream: TextIO, emit: Callable[[str], None]) -> None:
    """Forward every non-blank stdout line until end of stream."""
    for raw_line in stream:
        line = raw_line.strip()
        if line:
            emit(line)


def drain_stderr(stream: TextIO, emit: Callable[[str], None]) -> None:
    """Forward non-blank, non-advisory stderr lines as errors until end of stream."""
    for raw_line in stream:
        line = raw_line.strip()
        if line and not is_advisory_line(line):
            emit(f"error: {line}")


class TransferSupervisor:
    """Launches one rsync run, drains its output and classifies the result."""

    def __init__(
        self,
        config: BackupConfig,
        state: StateStore,
        paths: AppPaths,
        emit_output: Optional[Callable[[str], None]] = None,
        emit_error: Optional[Callable[[str], None]] = None,
    ):
        self.config = config
        self.state = state
        self.lock_name = paths.transfer_lock_name
        self.emit_output = emit_output or logger.info
        self.emit_error = emit_error or logger.error

    def run(self) -> TransferOutcome:
        """
        Run rsync to completion.

        Returns:
            The classified outcome of the run

        Raises:
            TransferLaunchError: If rsync could not be started
            TransferLockError: If another rsync for this job holds the lock
        """
        cmd = build_rsync_command(self.config)
        logger.debug(f"Running rsync command: {cmd}")

        try:
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
                bufsize=1,
            )
        except OSError as e:
            raise TransferLaunchError(f"Could not start {self.config.rsync_binary}: {e}") from e

        if not self.state.acquire_lock(self.lock_name, process.pid):
            holder = self.state.lock_holder(self.lock_name)
            self._stop(process)
            process.stdout.close()
            process.stderr.close()
            raise TransferLockError(f"Couldn't start backup sync, already running? (pid {holder})")

        try:
            exit_status = self._supervise(process)
        finally:
            self.state.release_lock(self.lock_name)

        outcome = classify_exit_status(exit_status)
        if outcome.classification is TransferClassification.PARTIAL_SUCCESS:
            logger.warning(f"rsync finished with partial transfer (exit status {exit_status})")
        return outcome

    def _supervise(self, process: subprocess.Popen) -> int:
        threads = [
            threading.Thread(
                target=drain_stderr, args=(process.stderr, self.emit_error),
                name="rsync-stderr", daemon=True,
            ),
            threading.Thread(
                target=drain_stdout, args=(process.stdout, self.emit_output),
                name="rsync-stdout", daemon=True,
            ),
        ]

        try:
            for thread in threads:
                thread.start()
            # Both streams must be fully drained before the exit status is read
            for thread in threads:
                thread.join()
            return process.wait()
        except BaseException:
            self._stop(process)
            raise
        finally:
            process.stdout.close()
            process.stderr.close()

    @staticmethod
    def _stop(process: subprocess.Popen) -> None:
        if process.poll() is not None:
            return
        process.terminate()
        try:
            process.wait(timeout=10)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()
