"""
Time Source Module

All vault timestamps are integer Unix seconds. Zero is reserved to mean
"never" (e.g. an account that has not claimed yield).
"""

import time
import threading


class Clock:
    """Wall-clock time source"""

    def now(self) -> int:
        return int(time.time())


class ManualClock(Clock):
    """Deterministic clock for tests and simulations"""

    def __init__(self, start: int = 1_700_000_000):
        if start <= 0:
            raise ValueError("Clock must start after the epoch")
        self._now = start
        self._lock = threading.Lock()

    def now(self) -> int:
        with self._lock:
            return self._now

    def advance(self, seconds: int) -> int:
        """Move time forward and return the new timestamp"""
        if seconds < 0:
            raise ValueError("Time cannot move backwards")
        with self._lock:
            self._now += seconds
            return self._now

