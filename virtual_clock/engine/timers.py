"""
Timers measured in virtual time.

A VirtualTimer represents a virtual duration but has to be armed on the
real clock. The real delay is ``remaining / rate``. Whenever the clock
is mutated the timer is rescaled: the virtual time consumed since the
last recompute is subtracted from what remains, and the real delay is
re-armed at the new rate. A change of rate therefore behaves as if the
new rate had always applied to the unconsumed part of the duration.

While the effective rate is 0 (paused, or rate set to 0) no real delay
is armed; the timer is suspended until the next rescale.

Three kinds exist:

- ``delayed``: fire once
- ``periodic``: fire every duration, re-armed after each firing
- ``wait``: resolve a ``concurrent.futures.Future`` once
"""

from __future__ import annotations

import asyncio
import enum
import functools
import logging
from collections.abc import Callable
from concurrent.futures import Future
from dataclasses import dataclass
from datetime import datetime, timedelta

from virtual_clock.engine.clock import ClockState
from virtual_clock.engine.real_time import TimerBackend, TimerHandle

logger = logging.getLogger(__name__)

Duration = timedelta | float


class TimerKind(enum.Enum):
    ONE_SHOT = "one_shot"
    PERIODIC = "periodic"
    WAIT = "wait"


@dataclass
class TimerRecord:
    """Bookkeeping for one timer. Durations are virtual seconds."""

    duration: float
    remaining: float
    last_recompute_real_instant: float
    rate_at_recompute: float
    kind: TimerKind
    cancelled: bool = False


def _seconds(duration: Duration) -> float:
    if isinstance(duration, timedelta):
        return duration.total_seconds()
    return float(duration)


class VirtualTimer:
    """
    A callback scheduled after a virtual duration.

    Use the ``delayed``, ``periodic`` and ``wait`` constructors. All
    state changes happen under the clock lock; callbacks run outside it,
    on the timer backend's thread or on the thread that mutated the
    clock.
    """

    def __init__(
        self,
        clock: ClockState,
        duration: Duration,
        kind: TimerKind,
        callback: Callable[[], None] | None = None,
        *,
        backend: TimerBackend | None = None,
    ) -> None:
        seconds = _seconds(duration)
        if kind is TimerKind.PERIODIC and seconds <= 0:
            raise ValueError("Periodic timers need a positive duration")

        self.clock = clock
        self._callback = callback
        self._backend = backend or clock.timer_backend
        self._handle: TimerHandle | None = None
        self._generation = 0
        self.future: Future[datetime] | None = Future() if kind is TimerKind.WAIT else None

        with clock.lock:
            self.record = TimerRecord(
                duration=seconds,
                remaining=max(0.0, seconds),
                last_recompute_real_instant=clock.real_clock.monotonic(),
                rate_at_recompute=clock.effective_rate,
                kind=kind,
            )
            clock.add_rescale_listener(self)
            self._arm()

    @classmethod
    def delayed(
        cls,
        clock: ClockState,
        duration: Duration,
        callback: Callable[[], None],
        *,
        backend: TimerBackend | None = None,
    ) -> "VirtualTimer":
        return cls(clock, duration, TimerKind.ONE_SHOT, callback, backend=backend)

    @classmethod
    def periodic(
        cls,
        clock: ClockState,
        duration: Duration,
        callback: Callable[[], None],
        *,
        backend: TimerBackend | None = None,
    ) -> "VirtualTimer":
        return cls(clock, duration, TimerKind.PERIODIC, callback, backend=backend)

    @classmethod
    def wait(
        cls,
        clock: ClockState,
        duration: Duration,
        *,
        backend: TimerBackend | None = None,
    ) -> "VirtualTimer":
        """
        Create a timer whose ``future`` resolves with the virtual time
        at which it fired. Cancelling the timer cancels the future.
        """
        return cls(clock, duration, TimerKind.WAIT, backend=backend)

    # ------------------------------------------------------------------

    @property
    def kind(self) -> TimerKind:
        return self.record.kind

    @property
    def is_active(self) -> bool:
        with self.clock.lock:
            return not self.record.cancelled

    @property
    def is_suspended(self) -> bool:
        with self.clock.lock:
            return not self.record.cancelled and self._handle is None

    def remaining(self) -> timedelta:
        """Virtual time left before the next firing."""
        with self.clock.lock:
            record = self.record
            if record.cancelled:
                return timedelta(0)
            elapsed = (
                self.clock.real_clock.monotonic() - record.last_recompute_real_instant
            ) * record.rate_at_recompute
            return timedelta(seconds=max(0.0, record.remaining - elapsed))

    def result(self, timeout: float | None = None) -> datetime:
        """Block until a ``wait`` timer fires. Raises CancelledError if cancelled."""
        if self.future is None:
            raise TypeError("result() is only available on wait timers")
        return self.future.result(timeout)

    def cancel(self) -> None:
        """Stop the timer without invoking it. Idempotent."""
        with self.clock.lock:
            if self.record.cancelled:
                return
            self.record.cancelled = True
            self._disarm()
            self.clock.remove_rescale_listener(self)
            if self.future is not None:
                self.future.cancel()

    # ------------------------------------------------------------------
    # Rescaling
    # ------------------------------------------------------------------

    def rescale(self, real_now: float, effective_rate: float) -> Callable[[], None] | None:
        """Called by the clock, under its lock, on every mutation."""
        record = self.record
        if record.cancelled:
            return None

        consumed = (real_now - record.last_recompute_real_instant) * record.rate_at_recompute
        record.remaining -= min(max(0.0, consumed), record.remaining)
        self._disarm()

        if record.remaining <= 0:
            return self._complete(real_now, effective_rate)

        record.last_recompute_real_instant = real_now
        record.rate_at_recompute = effective_rate
        self._arm()
        logger.debug(
            "Rescaled %s timer: %.3fs virtual left at rate %g",
            record.kind.value,
            record.remaining,
            effective_rate,
        )
        return None

    def _arm(self) -> None:
        record = self.record
        self._generation += 1
        if record.remaining <= 0:
            delay = 0.0
        elif record.rate_at_recompute > 0:
            delay = record.remaining / record.rate_at_recompute
        else:
            self._handle = None
            return
        self._handle = self._backend.call_later(
            delay, functools.partial(self._on_due, self._generation)
        )

    def _disarm(self) -> None:
        self._generation += 1
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _on_due(self, generation: int) -> None:
        with self.clock.lock:
            if self.record.cancelled or generation != self._generation:
                return
            self._handle = None
            self.record.remaining = 0.0
            action = self._complete(
                self.clock.real_clock.monotonic(), self.clock.effective_rate
            )
        action()

    def _complete(self, real_now: float, effective_rate: float) -> Callable[[], None]:
        """
        Advance the timer past a firing. Runs under the clock lock and
        returns the callback invocation, to be run after the lock is
        released.
        """
        record = self.record
        if record.kind is TimerKind.PERIODIC:
            record.remaining = record.duration
            record.last_recompute_real_instant = real_now
            record.rate_at_recompute = effective_rate
            self._arm()
        else:
            record.cancelled = True
            self.clock.remove_rescale_listener(self)

        if self.future is not None:
            return functools.partial(
                _resolve, self.future, self.clock.current_virtual_time()
            )
        return self._invoke

    def _invoke(self) -> None:
        if self._callback is None:
            return
        try:
            self._callback()
        except Exception:
            logger.exception("Virtual timer callback failed")

    def __repr__(self) -> str:
        state = "cancelled" if self.record.cancelled else "active"
        return (
            f"VirtualTimer({self.record.kind.value}, "
            f"duration={self.record.duration:g}s, {state})"
        )


def _resolve(future: Future[datetime], value: datetime) -> None:
    if future.set_running_or_notify_cancel():
        future.set_result(value)


async def sleep(clock: ClockState, duration: Duration) -> datetime:
    """
    Asynchronously wait for a virtual duration.

    Returns the virtual time at which the wait completed. Cancelling the
    awaiting task cancels the underlying timer.
    """
    timer = VirtualTimer.wait(clock, duration)
    try:
        future = timer.future
        if future is None:
            raise RuntimeError("wait timer was created without a future")
        return await asyncio.wrap_future(future)
    finally:
        timer.cancel()
