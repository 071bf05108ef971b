"""
Engine handle for the virtual clock.

The engine wires the components together once and hands them out
explicitly. There is no global clock: create a ClockEngine, pass it (or
its parts) to whoever needs time, and shut it down when done.

    with ClockEngine(ClockConfig(clock_rate=60)) as engine:
        engine.scheduler.on_new_hour.subscribe(print)
        engine.delayed(timedelta(minutes=5), refresh)
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from virtual_clock.config import ClockConfig
from virtual_clock.engine.clock import ClockState
from virtual_clock.engine.event_scheduler import EventScheduler
from virtual_clock.engine.real_time import RealClock, TimerBackend
from virtual_clock.engine.request_guard import RequestGuard
from virtual_clock.engine.timers import Duration, VirtualTimer
from virtual_clock.logging_bridge import (
    CallbackHandler,
    install_log_callback,
    remove_log_callback,
)
from virtual_clock.storage.base import ClockStore

logger = logging.getLogger(__name__)


class ClockEngine:
    """
    Owns a ClockState and the components that read it.

    Attributes:
        clock: the ClockState
        scheduler: EventScheduler with the five boundary events
        guard: RequestGuard built from the http_* settings
    """

    def __init__(
        self,
        config: ClockConfig | None = None,
        *,
        store: ClockStore | None = None,
        real_clock: RealClock | None = None,
        timer_backend: TimerBackend | None = None,
    ) -> None:
        self.config = config or ClockConfig()
        self._log_handler: CallbackHandler | None = None
        if self.config.log_callback is not None:
            self._log_handler = install_log_callback(self.config.log_callback)

        try:
            self.clock = ClockState.from_config(
                self.config,
                store=store,
                real_clock=real_clock,
                timer_backend=timer_backend,
            )
            self.scheduler = EventScheduler(
                self.clock, check_interval=self.config.event_check_interval
            )
            self.guard = RequestGuard(self.clock, self.config.guard_policy())
        except Exception:
            self._detach_log_handler()
            raise

        self._closed = False
        logger.info(
            "Clock engine ready (rate %g, %s)",
            self.clock.rate,
            "paused" if self.clock.is_paused else "running",
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> "ClockEngine":
        if self._closed:
            raise RuntimeError("Cannot start a shut down clock engine")
        self.scheduler.start()
        return self

    def shutdown(self) -> None:
        """
        Stop the scheduler, cancel live timers and drop subscribers.

        Calling shutdown more than once is harmless.
        """
        if self._closed:
            return
        self._closed = True
        self.scheduler.stop()
        for listener in self.clock.listeners:
            if isinstance(listener, VirtualTimer):
                listener.cancel()
        self.scheduler.clear_all_subscribers()
        logger.info("Clock engine shut down")
        self._detach_log_handler()

    @property
    def closed(self) -> bool:
        return self._closed

    def __enter__(self) -> "ClockEngine":
        return self.start()

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def delayed(self, duration: Duration, callback: Callable[[], None]) -> VirtualTimer:
        self._ensure_open()
        return VirtualTimer.delayed(self.clock, duration, callback)

    def periodic(self, duration: Duration, callback: Callable[[], None]) -> VirtualTimer:
        self._ensure_open()
        return VirtualTimer.periodic(self.clock, duration, callback)

    def wait(self, duration: Duration) -> VirtualTimer:
        self._ensure_open()
        return VirtualTimer.wait(self.clock, duration)

    def _ensure_open(self) -> None:
        if self._closed:
            raise RuntimeError("Clock engine has been shut down")

    def _detach_log_handler(self) -> None:
        if self._log_handler is not None:
            remove_log_callback(self._log_handler)
            self._log_handler = None
