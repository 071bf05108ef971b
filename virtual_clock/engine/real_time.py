"""
Real-time collaborators for the virtual clock.

Virtual time is always derived from the host's real clock. This module
holds the two seams through which the engine touches real time:

- a RealClock, which reads monotonic seconds and the wall clock
- a TimerBackend, which arms real-time callbacks

Both are swappable so the engine can be driven deterministically in
tests.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from datetime import datetime, tzinfo
from typing import Protocol


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class RealClock(Protocol):
    """Source of real (host) time."""

    def monotonic(self) -> float:
        """Return monotonic real time in seconds."""
        ...

    def now(self, tz: tzinfo | None = None) -> datetime:
        """Return the current wall-clock time, aware, in the host zone when ``tz`` is None."""
        ...


class TimerBackend(Protocol):
    """Arms callbacks after a real-time delay."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        ...


class SystemRealClock:
    """RealClock backed by the host clocks."""

    def monotonic(self) -> float:
        return time.monotonic()

    def now(self, tz: tzinfo | None = None) -> datetime:
        if tz is None:
            return datetime.now().astimezone()
        return datetime.now(tz)


class ThreadingTimerBackend:
    """
    TimerBackend that arms one daemon ``threading.Timer`` per callback.

    Callbacks run on the timer thread, never on the caller's thread.
    """

    def __init__(self, thread_name: str = "virtual-clock-timer") -> None:
        self.thread_name = thread_name

    def call_later(self, delay: float, callback: Callable[[], None]) -> threading.Timer:
        timer = threading.Timer(max(0.0, delay), callback)
        timer.daemon = True
        timer.name = self.thread_name
        timer.start()
        return timer
