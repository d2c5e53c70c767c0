"""
Bounded retry for lock contention.

Every shell prompt spawns its own short-lived capture process, so two
processes writing the same store at the same instant is routine. SQLite
reports that as SQLITE_BUSY / SQLITE_LOCKED; run_with_retry() retries those
with exponential backoff and gives up with ContentionError once either the
attempt budget or the per-operation timeout is spent. Any other error is
re-raised immediately.
"""

import logging
import random
import sqlite3
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from histrack.errors import ContentionError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Primary result codes (extended codes carry these in the low byte)
SQLITE_BUSY = 5
SQLITE_LOCKED = 6


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry budget for one logical store operation.

    Attributes:
        max_attempts: Total tries including the first one
        base_delay: Sleep before the second attempt, in seconds
        max_delay: Upper bound for a single sleep, in seconds
        timeout: Upper bound for the whole operation, in seconds
    """

    max_attempts: int = 4
    base_delay: float = 0.05
    max_delay: float = 1.0
    timeout: float = 5.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            msg = "max_attempts must be at least 1"
            raise ValueError(msg)
        if self.timeout <= 0:
            msg = "timeout must be positive"
            raise ValueError(msg)
        if self.base_delay < 0 or self.max_delay < 0:
            msg = "delays cannot be negative"
            raise ValueError(msg)

    @property
    def attempt_timeout(self) -> float:
        """How long SQLite's own busy handler may wait within one attempt."""
        return self.timeout / self.max_attempts

    def delay_for(self, attempt: int) -> float:
        """
        Backoff before retrying after the given (1-based) failed attempt.

        Jittered to 50-100% of the nominal delay so that processes that
        collided once do not collide again in lockstep.
        """
        nominal = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        return nominal * random.uniform(0.5, 1.0)


def is_contention_error(exc: BaseException) -> bool:
    """Return True if the error means "store busy, try again"."""
    if not isinstance(exc, sqlite3.OperationalError):
        return False
    code = getattr(exc, "sqlite_errorcode", None)
    if code is not None:
        return (code & 0xFF) in (SQLITE_BUSY, SQLITE_LOCKED)
    message = str(exc).lower()
    return "database is locked" in message or "busy" in message


def run_with_retry(
    operation: str,
    func: Callable[[], T],
    policy: RetryPolicy,
    *,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> T:
    """
    Call func, retrying on lock contention within the policy's budget.

    Args:
        operation: Name used in logs and in the ContentionError
        func: Zero-argument callable performing one complete attempt
        policy: Attempt and time budget
        sleep: Sleep function (injectable for tests)
        clock: Monotonic clock (injectable for tests)

    Returns:
        Whatever func returns

    Raises:
        ContentionError: If every attempt hit a busy/locked store
        Exception: Any non-contention error raised by func, unchanged
    """
    started = clock()
    attempt = 0
    while True:
        attempt += 1
        try:
            return func()
        except sqlite3.Error as e:
            if not is_contention_error(e):
                raise
            waited = clock() - started
            delay = policy.delay_for(attempt)
            if attempt >= policy.max_attempts or waited + delay > policy.timeout:
                logger.warning(
                    "%s: store still busy after %d attempt(s) (%.2fs), giving up",
                    operation,
                    attempt,
                    waited,
                )
                raise ContentionError(
                    operation=operation,
                    attempts=attempt,
                    waited_seconds=round(waited, 3),
                ) from e
            logger.debug(
                "%s: store busy (attempt %d/%d), retrying in %.3fs",
                operation,
                attempt,
                policy.max_attempts,
                delay,
            )
            sleep(delay)
