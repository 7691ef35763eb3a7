"""
Time sources.

Injectable clocks used by every time-dependent engine component.
"""

from .time_system import ManualTime, TimeSystem

__all__ = [
    "ManualTime",
    "TimeSystem",
]
