"""Bounded retry around the rsync transfer."""

import logging
import time
from typing import Callable, Optional

from .transfer import TransferOutcome, TransferSupervisor

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_DELAY = 1.0


class RetryResult:
    """Final result of a transfer after retries."""

    def __init__(self, success: bool, attempts: int, outcome: Optional[TransferOutcome]):
        self.success = success
        self.attempts = attempts
        self.outcome = outcome

    @property
    def exit_status(self) -> Optional[int]:
        return self.outcome.exit_status if self.outcome else None


def run_with_retry(
    supervisor: TransferSupervisor,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    retry_delay: float = DEFAULT_RETRY_DELAY,
    sleep: Callable[[float], None] = time.sleep,
) -> RetryResult:
    """
    Run the transfer until it succeeds or ``max_attempts`` runs have failed.

    Every attempt is a fresh rsync process; rsync's incremental transfer makes
    re-running after a failure safe. Launch and lock errors propagate without
    consuming an attempt.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    outcome = None
    for attempt in range(1, max_attempts + 1):
        logger.info(f"Starting backup transfer (attempt {attempt}/{max_attempts})")
        outcome = supervisor.run()

        if outcome.succeeded:
            return RetryResult(True, attempt, outcome)

        remaining = max_attempts - attempt
        if remaining:
            logger.warning(
                f"Error backing up (exit status {outcome.exit_status}) - "
                f"trying {remaining} more time{'s' if remaining > 1 else ''}"
            )
            sleep(retry_delay)

    logger.error(f"Failed out with status {outcome.exit_status}")
    return RetryResult(False, max_attempts, outcome)
