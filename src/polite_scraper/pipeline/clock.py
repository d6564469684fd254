"""
Clock - Time source used for rate limiting, backoff and polling.

All pipeline components read time through a Clock so that delay and
backoff behaviour can be driven by a simulated clock in tests.
"""

import time
from threading import Event
from typing import Optional


class Clock:
    """Wall-clock time source."""

    def now(self) -> float:
        """Current POSIX timestamp in seconds."""
        return time.time()

    def sleep(self, seconds: float, interrupt: Optional[Event] = None) -> bool:
        """
        Sleep for up to `seconds`.

        Args:
            seconds: Time to sleep
            interrupt: Optional event that cuts the sleep short when set

        Returns:
            True if the sleep was interrupted
        """
        if seconds <= 0:
            return bool(interrupt and interrupt.is_set())
        if interrupt is not None:
            return interrupt.wait(seconds)
        time.sleep(seconds)
        return False
