import logging
import random
import time
from typing import Callable, Optional, TypeVar

from .errors import TransientStorageError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy:
    """
    Exponential backoff for busy/locked storage errors.

    Each wait is ``min(delay * 2 * jitter, max_delay)`` with jitter drawn
    uniformly from [0.85, 1.15]. Only TransientStorageError is retried;
    everything else propagates on the first attempt.
    """

    def __init__(self, max_retries: int = 5, initial_delay: float = 0.1, max_delay: float = 10.0,
                 jitter: float = 0.15, sleep: Callable[[float], None] = time.sleep,
                 logger: Optional[logging.Logger] = None):
        if max_retries < 0:
            raise ValueError("max_retries must be non-negative")
        self.max_retries = max_retries
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self.sleep = sleep
        self.logger = logger or logging.getLogger(__name__)

    def next_delay(self, delay: float) -> float:
        factor = random.uniform(1.0 - self.jitter, 1.0 + self.jitter)
        return min(delay * 2 * factor, self.max_delay)

    def run(self, operation: Callable[[], T], description: str = "operation") -> T:
        delay = self.initial_delay
        attempt = 0
        while True:
            try:
                return operation()
            except TransientStorageError as e:
                if attempt >= self.max_retries:
                    self.logger.error("%s failed after %d retries: %s", description, attempt, e)
                    raise
                attempt += 1
                self.logger.warning("%s hit a busy database (attempt %d/%d), retrying in %.3fs",
                                    description, attempt, self.max_retries, delay)
                self.sleep(delay)
                delay = self.next_delay(delay)


NO_RETRY = RetryPolicy(max_retries=0)
