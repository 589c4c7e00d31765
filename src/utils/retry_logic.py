"""Retry logic utilities for per-item backfill work.

Uses exponential backoff with jitter to avoid hammering a struggling
upstream. Retries are local to one call and are never persisted.
"""

import logging
import random
import time
from typing import Any, Callable, Optional, Tuple, Type

logger = logging.getLogger(__name__)


# Default retry configuration
DEFAULT_MAX_RETRIES = 2
DEFAULT_BASE_DELAY = 1.0  # seconds
DEFAULT_MAX_DELAY = 30.0  # seconds
DEFAULT_BACKOFF_FACTOR = 2.0


class RetriesExhausted(Exception):
    """Raised when every attempt failed; wraps the last error."""

    def __init__(self, last_error: BaseException, attempts: int):
        self.last_error = last_error
        self.attempts = attempts
        super().__init__(f"failed after {attempts} attempts: {last_error}")


def exponential_backoff(
    attempt: int, base_delay: float, max_delay: float, backoff_factor: float
) -> float:
    """Calculate exponential backoff with jitter.

    Args:
        attempt: Current retry attempt (0-indexed)
        base_delay: Base delay in seconds
        max_delay: Maximum delay in seconds
        backoff_factor: Backoff multiplier

    Returns:
        Delay in seconds with jitter added
    """
    # Calculate exponential delay: base_delay * (backoff_factor ^ attempt)
    delay = min(base_delay * (backoff_factor**attempt), max_delay)

    # Add jitter (±25% of delay)
    jitter = delay * 0.25 * (2 * random.random() - 1)
    return max(0, delay + jitter)


def call_with_retries(
    func: Callable[[], Any],
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    backoff_factor: float = DEFAULT_BACKOFF_FACTOR,
    non_retriable: Tuple[Type[BaseException], ...] = (),
    sleep: Callable[[float], Any] = time.sleep,
    label: Optional[str] = None,
) -> Tuple[Any, int]:
    """Call ``func`` up to ``max_retries + 1`` times.

    Args:
        func: Zero-argument callable to attempt
        max_retries: Extra attempts after the first failure
        base_delay: Base delay in seconds
        max_delay: Maximum delay in seconds
        backoff_factor: Backoff multiplier
        non_retriable: Exception types re-raised immediately
        sleep: Waits between attempts; returning True aborts further retries
        label: Name used in log messages

    Returns:
        (result, attempts) of the first successful call

    Raises:
        RetriesExhausted: every attempt failed
    """
    name = label or getattr(func, "__name__", "call")
    last_error: Optional[BaseException] = None
    attempts = 0

    for attempt in range(max_retries + 1):
        attempts = attempt + 1
        try:
            return func(), attempts
        except non_retriable:
            raise
        except Exception as e:
            last_error = e

            if attempt >= max_retries:
                break

            delay = exponential_backoff(attempt, base_delay, max_delay, backoff_factor)
            logger.warning(
                f"{name} failed (attempt {attempts}/{max_retries + 1}): {e}. "
                f"Retrying in {delay:.2f}s..."
            )
            if sleep(delay) is True:
                # Interrupted (e.g. cancellation); stop retrying
                break

    raise RetriesExhausted(last_error, attempts)

