"""Test configuration and fixtures."""

import heapq
import itertools
import sys
import time
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from virtual_clock.engine.clock import ClockState  # noqa: E402

# Monday
START = datetime(2024, 1, 1, 9, 0, tzinfo=UTC)


class ManualRealClock:
    """Real clock that only moves when told to."""

    def __init__(self, wall: datetime = START, monotonic: float = 1000.0) -> None:
        self._wall = wall
        self._start = monotonic
        self._monotonic = monotonic

    def monotonic(self) -> float:
        return self._monotonic

    def now(self, tz=None) -> datetime:
        wall = self._wall + timedelta(seconds=self._monotonic - self._start)
        return wall.astimezone(tz) if tz is not None else wall

    def set(self, monotonic: float) -> None:
        self._monotonic = monotonic


class ManualHandle:
    def __init__(self, due: float, callback) -> None:
        self.due = due
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualTimerBackend:
    """
    Timer backend driven by ``advance``.

    Due callbacks fire in order, with the real clock set to their due
    time, on the calling thread.
    """

    def __init__(self, real_clock: ManualRealClock) -> None:
        self.real_clock = real_clock
        self._queue: list[tuple[float, int, ManualHandle]] = []
        self._seq = itertools.count()

    def call_later(self, delay, callback) -> ManualHandle:
        handle = ManualHandle(self.real_clock.monotonic() + max(0.0, delay), callback)
        heapq.heappush(self._queue, (handle.due, next(self._seq), handle))
        return handle

    @property
    def pending(self) -> list[ManualHandle]:
        return [h for _, _, h in sorted(self._queue) if not h.cancelled]

    def advance(self, seconds: float) -> None:
        target = self.real_clock.monotonic() + seconds
        while self._queue and self._queue[0][0] <= target:
            due, _, handle = heapq.heappop(self._queue)
            if handle.cancelled:
                continue
            self.real_clock.set(max(due, self.real_clock.monotonic()))
            handle.callback()
        self.real_clock.set(target)


@pytest.fixture
def real_clock() -> ManualRealClock:
    return ManualRealClock()


@pytest.fixture
def backend(real_clock) -> ManualTimerBackend:
    return ManualTimerBackend(real_clock)


@pytest.fixture
def make_clock(real_clock, backend):
    """Factory for ClockState instances on the manual clocks."""

    def factory(rate: float = 1.0, start: datetime = START, **kwargs) -> ClockState:
        return ClockState(
            rate=rate,
            virtual_instant=start,
            tz=UTC,
            real_clock=real_clock,
            timer_backend=backend,
            **kwargs,
        )

    return factory


@pytest.fixture
def clock(make_clock) -> ClockState:
    return make_clock()


@pytest.fixture
def eastern_host_zone(monkeypatch):
    """Set the host zone to US Eastern, which observes daylight saving time."""
    if not hasattr(time, "tzset"):
        pytest.skip("time.tzset is not available on this platform")
    # POSIX rule string, so no zone database is needed.
    monkeypatch.setenv("TZ", "EST5EDT,M3.2.0,M11.1.0")
    time.tzset()
    yield
    monkeypatch.undo()
    time.tzset()
