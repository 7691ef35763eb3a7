"""
Time sources for the engine.

Every component reads time through an injected clock instead of calling
``time.time()`` directly, so tests can drive expiry, regen and decay.
"""

import threading
import time


class TimeSystem:
    """
    Wall-clock time source.

    Returns seconds since the epoch as a float.
    """

    def now(self) -> float:
        return time.time()

    def days_since(self, timestamp: float) -> float:
        """Whole and fractional days elapsed since ``timestamp``."""
        return (self.now() - timestamp) / 86400.0


class ManualTime(TimeSystem):
    """
    Manually advanced clock.

    Used by tests and simulations. Time only moves when ``add_time`` or
    ``set_time`` is called.
    """

    def __init__(self, start: float = 1_000_000.0) -> None:
        """
        Initialize the clock.

        Args:
            start: Starting timestamp in seconds
        """
        self._now = float(start)
        self._lock = threading.Lock()

    def now(self) -> float:
        return self._now

    def add_time(self, seconds: float = 0.0, minutes: float = 0.0, hours: float = 0.0, days: float = 0.0) -> float:
        """
        Advance the clock.

        Args:
            seconds: Seconds to add
            minutes: Minutes to add
            hours: Hours to add (can be fractional)
            days: Days to add

        Returns:
            The new current time
        """
        delta = seconds + minutes * 60 + hours * 3600 + days * 86400
        with self._lock:
            self._now += delta
            return self._now

    def set_time(self, timestamp: float) -> None:
        with self._lock:
            self._now = float(timestamp)
