"""Pacing for backfill item processing."""

import logging
import time
from collections import deque
from typing import Any, Callable, Deque, Optional

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60.0


class ItemThrottle:
    """Space out item starts and cap how many start per rolling minute.

    Args:
        min_interval: Minimum seconds between the starts of two items
        max_per_minute: Cap on starts within any 60 second window (None: uncapped)
        clock: Monotonic time source
        wait: Sleeps for the given seconds; returning True aborts the wait
    """

    def __init__(
        self,
        min_interval: float = 0.0,
        max_per_minute: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
        wait: Callable[[float], Any] = time.sleep,
    ):
        self.min_interval = max(0.0, min_interval or 0.0)
        self.max_per_minute = max_per_minute
        self._clock = clock
        self._wait = wait
        self._starts: Deque[float] = deque()

    def delay_needed(self) -> float:
        """Seconds to wait before the next item may start."""
        now = self._clock()
        delay = 0.0

        if self._starts and self.min_interval > 0:
            delay = max(delay, self._starts[-1] + self.min_interval - now)

        if self.max_per_minute:
            while self._starts and now - self._starts[0] >= WINDOW_SECONDS:
                self._starts.popleft()
            if len(self._starts) >= self.max_per_minute:
                oldest = self._starts[-self.max_per_minute]
                delay = max(delay, oldest + WINDOW_SECONDS - now)

        return delay

    def acquire(self) -> bool:
        """Block until the next item may start, then record its start.

        Returns:
            True if the wait was interrupted (the start is not recorded)
        """
        delay = self.delay_needed()
        if delay > 0:
            logger.debug(f"Throttling next item for {delay:.2f}s")
            if self._wait(delay) is True:
                return True

        self._starts.append(self._clock())
        if self.max_per_minute:
            while len(self._starts) > self.max_per_minute:
                self._starts.popleft()
        elif len(self._starts) > 1:
            self._starts.popleft()
        return False
