"""
Virtual clock state.

This clock decouples what the application believes the time is from the
host's real clock. Virtual time can run faster, slower, be paused, or be
moved to another instant entirely.

The clock never sleeps and never polls. Virtual time is computed on
demand from an anchor: the real instant and virtual instant at which the
current running segment started, and the rate at which virtual time
advances relative to real time.

Every mutation swaps in a new immutable snapshot under a single lock, so
readers never see a half-updated anchor. Rescale listeners (live
timers) are notified inside the same critical section.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, tzinfo
from typing import TYPE_CHECKING, Protocol

from virtual_clock.engine.real_time import (
    RealClock,
    SystemRealClock,
    ThreadingTimerBackend,
    TimerBackend,
)
from virtual_clock.errors import ConfigurationError
from virtual_clock.storage.base import ClockRecord, ClockStore, load_record, save_record

if TYPE_CHECKING:
    from virtual_clock.config import ClockConfig

logger = logging.getLogger(__name__)

MIN_RATE = 0.0
MAX_RATE = 100_000.0


class RescaleListener(Protocol):
    """
    Receives every clock mutation.

    ``rescale`` runs while the clock lock is held. It may return a
    callable, which the clock invokes after releasing the lock and
    before the mutating call returns.
    """

    def rescale(self, real_now: float, effective_rate: float) -> Callable[[], None] | None:
        ...


@dataclass(frozen=True)
class Anchor:
    """
    Start of the current running segment.

    While running, virtual time is
    ``virtual_instant + (real_now - real_instant) * rate``.
    """

    real_instant: float
    virtual_instant: datetime
    rate: float

    def virtual_at(self, real_now: float) -> datetime:
        return self.virtual_instant + timedelta(seconds=(real_now - self.real_instant) * self.rate)


@dataclass(frozen=True)
class ClockSnapshot:
    anchor: Anchor
    is_paused: bool = False
    paused_virtual_instant: datetime | None = None

    def __post_init__(self) -> None:
        if self.is_paused and self.paused_virtual_instant is None:
            raise ValueError("A paused snapshot needs paused_virtual_instant")

    def virtual_at(self, real_now: float) -> datetime:
        """Virtual time at ``real_now``; the frozen instant while paused."""
        if self.is_paused and self.paused_virtual_instant is not None:
            return self.paused_virtual_instant
        return self.anchor.virtual_at(real_now)


def clamp_rate(rate: float) -> float:
    """
    Clamp a requested rate into [MIN_RATE, MAX_RATE].

    Out-of-range requests are not errors; they are clamped and logged.
    """
    rate = float(rate)
    if rate < MIN_RATE:
        logger.warning("Requested clock rate %s is negative; clamping to %s", rate, MIN_RATE)
        return MIN_RATE
    if rate > MAX_RATE:
        logger.warning("Requested clock rate %s exceeds %s; clamping", rate, MAX_RATE)
        return MAX_RATE
    return rate


class ClockState:
    """
    Single source of truth for virtual time.

    States are Running and Paused. ``pause`` and ``resume`` move between
    them; ``set_rate``, ``time_travel_to``, ``fast_forward`` and
    ``reset`` rewrite the anchor without changing state (``reset`` also
    un-pauses).
    """

    def __init__(
        self,
        rate: float = 1.0,
        virtual_instant: datetime | None = None,
        *,
        paused: bool = False,
        tz: tzinfo | None = None,
        real_clock: RealClock | None = None,
        timer_backend: TimerBackend | None = None,
        store: ClockStore | None = None,
        app_version: str = "0.0.0",
    ) -> None:
        self.real_clock: RealClock = real_clock or SystemRealClock()
        self.timer_backend: TimerBackend = timer_backend or ThreadingTimerBackend()
        # None means the host zone, resolved per instant.
        self.tz = tz
        self.store = store
        self.app_version = app_version
        self.lock = threading.RLock()
        self._save_lock = threading.Lock()
        self._listeners: list[RescaleListener] = []

        start = self._localize(virtual_instant) if virtual_instant else self.real_clock.now(self.tz)
        anchor = Anchor(self.real_clock.monotonic(), start, clamp_rate(rate))
        self._snapshot = ClockSnapshot(
            anchor=anchor,
            is_paused=paused,
            paused_virtual_instant=start if paused else None,
        )

    @classmethod
    def from_config(
        cls,
        config: "ClockConfig",
        *,
        store: ClockStore | None = None,
        real_clock: RealClock | None = None,
        timer_backend: TimerBackend | None = None,
    ) -> "ClockState":
        """
        Build the clock from configuration and any persisted state.

        Outside debug mode the clock runs at real speed (and ignores
        persisted state) unless ``force_enable`` is set.

        Raises:
            ConfigurationError: if acceleration is requested in
                production without ``force_enable``
        """
        enabled = config.debug or config.force_enable

        record = None
        if store is not None and enabled:
            record = load_record(store, config.app_version)

        rate = record.rate if record is not None else float(config.clock_rate)
        if not enabled:
            rate = 1.0

        if config.is_production and rate != 1 and not config.force_enable:
            raise ConfigurationError(
                f"Clock rate {rate:g} requested in production; set force_enable to allow it"
            )

        if record is not None:
            instant = (
                record.paused_virtual_instant
                if record.is_paused and record.paused_virtual_instant is not None
                else record.virtual_instant
            )
        else:
            instant = None

        clock = cls(
            rate=rate,
            virtual_instant=instant,
            paused=record.is_paused if record is not None else False,
            tz=config.tzinfo(),
            real_clock=real_clock,
            timer_backend=timer_backend,
            store=store,
            app_version=config.app_version,
        )
        clock._persist()
        return clock

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def snapshot(self) -> ClockSnapshot:
        with self.lock:
            return self._snapshot

    def current_virtual_time(self) -> datetime:
        """
        Return the current virtual time.

        While paused this is constant; otherwise it is derived from the
        anchor and the real clock.
        """
        with self.lock:
            return self._snapshot.virtual_at(self.real_clock.monotonic())

    now = current_virtual_time

    @property
    def rate(self) -> float:
        """Configured rate. Kept while paused, so resume restores it."""
        return self.snapshot.anchor.rate

    @property
    def effective_rate(self) -> float:
        """Rate at which virtual time is advancing right now (0 while paused)."""
        snapshot = self.snapshot
        return 0.0 if snapshot.is_paused else snapshot.anchor.rate

    @property
    def is_paused(self) -> bool:
        return self.snapshot.is_paused

    @property
    def is_accelerated(self) -> bool:
        return self.rate != 1

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def set_rate(self, rate: float) -> None:
        """
        Change the rate without moving virtual time.

        The rate is clamped to [0, 100000].
        """
        new_rate = clamp_rate(rate)

        def mutate(snapshot: ClockSnapshot, real_now: float) -> ClockSnapshot:
            return ClockSnapshot(
                anchor=Anchor(real_now, snapshot.virtual_at(real_now), new_rate),
                is_paused=snapshot.is_paused,
                paused_virtual_instant=snapshot.paused_virtual_instant,
            )

        self._mutate(mutate)
        logger.info("Clock rate set to %g", new_rate)

    def time_travel_to(self, target: datetime) -> None:
        """
        Jump virtual time to ``target``.

        This is the one deliberate discontinuity. Naive datetimes are
        taken to be in the clock's zone.
        """
        target = self._localize(target)

        def mutate(snapshot: ClockSnapshot, real_now: float) -> ClockSnapshot:
            return ClockSnapshot(
                anchor=Anchor(real_now, target, snapshot.anchor.rate),
                is_paused=snapshot.is_paused,
                paused_virtual_instant=target if snapshot.is_paused else None,
            )

        self._mutate(mutate)
        logger.info("Clock travelled to %s", target.isoformat())

    def fast_forward(self, duration: timedelta | float) -> None:
        """Advance virtual time by ``duration`` (a timedelta or seconds)."""
        if not isinstance(duration, timedelta):
            duration = timedelta(seconds=duration)

        def mutate(snapshot: ClockSnapshot, real_now: float) -> ClockSnapshot:
            target = snapshot.virtual_at(real_now) + duration
            return ClockSnapshot(
                anchor=Anchor(real_now, target, snapshot.anchor.rate),
                is_paused=snapshot.is_paused,
                paused_virtual_instant=target if snapshot.is_paused else None,
            )

        self._mutate(mutate)
        logger.info("Clock fast-forwarded by %s", duration)

    def pause(self) -> None:
        """Freeze virtual time. No-op when already paused."""

        def mutate(snapshot: ClockSnapshot, real_now: float) -> ClockSnapshot | None:
            if snapshot.is_paused:
                return None
            return ClockSnapshot(
                anchor=snapshot.anchor,
                is_paused=True,
                paused_virtual_instant=snapshot.anchor.virtual_at(real_now),
            )

        if self._mutate(mutate):
            logger.info("Clock paused")

    def resume(self) -> None:
        """Continue from the paused instant at the pre-pause rate. No-op when running."""

        def mutate(snapshot: ClockSnapshot, real_now: float) -> ClockSnapshot | None:
            if not snapshot.is_paused:
                return None
            return ClockSnapshot(
                anchor=Anchor(real_now, snapshot.virtual_at(real_now), snapshot.anchor.rate)
            )

        if self._mutate(mutate):
            logger.info("Clock resumed at rate %g", self.rate)

    def reset(self) -> None:
        """Return virtual time to real time. Rate is kept; pause is cleared."""

        def mutate(snapshot: ClockSnapshot, real_now: float) -> ClockSnapshot:
            return ClockSnapshot(
                anchor=Anchor(real_now, self.real_clock.now(self.tz), snapshot.anchor.rate)
            )

        self._mutate(mutate)
        logger.info("Clock reset to real time")

    # ------------------------------------------------------------------
    # Rescale listeners
    # ------------------------------------------------------------------

    def add_rescale_listener(self, listener: RescaleListener) -> None:
        with self.lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def remove_rescale_listener(self, listener: RescaleListener) -> None:
        with self.lock:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

    @property
    def listeners(self) -> list[RescaleListener]:
        with self.lock:
            return list(self._listeners)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _mutate(
        self, mutate: Callable[[ClockSnapshot, float], ClockSnapshot | None]
    ) -> bool:
        due: list[Callable[[], None]] = []
        with self.lock:
            real_now = self.real_clock.monotonic()
            new_snapshot = mutate(self._snapshot, real_now)
            if new_snapshot is None:
                return False
            self._snapshot = new_snapshot
            effective = 0.0 if new_snapshot.is_paused else new_snapshot.anchor.rate
            for listener in list(self._listeners):
                action = listener.rescale(real_now, effective)
                if action is not None:
                    due.append(action)

        for action in due:
            action()
        self._persist()
        return True

    def _persist(self) -> None:
        """
        Save the live snapshot.

        Saves are serialised and each one reads the snapshot current at
        the time it runs, so the last save to finish holds the latest
        state.
        """
        if self.store is None:
            return
        with self._save_lock:
            snapshot = self._snapshot
            record = ClockRecord(
                rate=snapshot.anchor.rate,
                virtual_instant=snapshot.virtual_at(self.real_clock.monotonic()),
                is_paused=snapshot.is_paused,
                paused_virtual_instant=snapshot.paused_virtual_instant,
                app_version=self.app_version,
            )
            save_record(self.store, record)

    def _localize(self, instant: datetime) -> datetime:
        if instant.tzinfo is not None:
            return instant
        if self.tz is None:
            return instant.astimezone()
        return instant.replace(tzinfo=self.tz)
