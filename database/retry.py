import logging
import random
import sqlite3
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TRANSIENT_MESSAGES = ("database is locked", "database is busy", "disk i/o error")


class StoreUnavailable(Exception):
    """Raised when a transient store failure outlives the retry budget."""


def is_transient(error: BaseException) -> bool:
    if not isinstance(error, sqlite3.OperationalError):
        return False
    message = str(error).lower()
    return any(fragment in message for fragment in _TRANSIENT_MESSAGES)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_delay: float = 0.1
    max_delay: float = 2.0
    multiplier: float = 2.0
    jitter: bool = True

    def delay_for(self, attempt: int) -> float:
        # attempt is zero-based: the first retry waits initial_delay.
        delay = min(self.initial_delay * (self.multiplier ** attempt), self.max_delay)
        if self.jitter:
            delay += random.uniform(0, 0.25 * delay)
        return delay

    def run(
        self,
        operation: Callable[[], T],
        *,
        label: str = "store operation",
        sleep: Callable[[float], None] = time.sleep,
    ) -> T:
        attempts = max(1, self.max_attempts)
        for attempt in range(attempts):
            try:
                return operation()
            except sqlite3.OperationalError as exc:
                if not is_transient(exc):
                    raise
                if attempt + 1 >= attempts:
                    raise StoreUnavailable(f"{label} failed after {attempts} attempts: {exc}") from exc
                delay = self.delay_for(attempt)
                logger.warning(
                    "Transient failure in %s (attempt %d/%d), retrying in %.3fs: %s",
                    label,
                    attempt + 1,
                    attempts,
                    delay,
                    exc,
                )
                sleep(delay)
        raise StoreUnavailable(f"{label} failed")  # pragma: no cover
