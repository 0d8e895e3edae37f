"""
Throttling retry helper shared by every AWS call the enroller makes.
"""

import logging
import random
import time
from dataclasses import dataclass

from botocore.exceptions import ClientError

from .errors import ServiceApiThrottled, is_throttling

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with jitter for throttled AWS calls."""

    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 20.0
    jitter: float = 0.3

    def delay(self, attempt: int) -> float:
        """Seconds to wait after the given (1-based) failed attempt."""
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        return delay + delay * self.jitter * random.random()


DEFAULT_RETRY = RetryPolicy()


def call_with_backoff(fn, *args, retry: RetryPolicy = DEFAULT_RETRY, sleep=time.sleep, **kwargs):
    """Call fn, retrying throttling errors with exponential backoff.

    Non-throttling ClientErrors propagate immediately. After the last
    throttled attempt ServiceApiThrottled is raised.
    """
    operation = getattr(fn, "__name__", str(fn))
    for attempt in range(1, retry.max_attempts + 1):
        try:
            return fn(*args, **kwargs)
        except ClientError as e:
            if not is_throttling(e):
                raise
            if attempt == retry.max_attempts:
                break
            delay = retry.delay(attempt)
            logger.warning(
                "Throttled on %s (%d/%d); retrying in %.1fs",
                operation,
                attempt,
                retry.max_attempts,
                delay,
            )
            sleep(delay)
    raise ServiceApiThrottled(operation, retry.max_attempts)
