"""
Boundary events for the virtual clock.

The scheduler watches virtual time and announces when it crosses a
named boundary: a new hour, noon, a new day, the start of a week or the
end of one. Each boundary kind is its own ClockEvent with an ordered
list of subscriptions.

The scheduler does not interpret the events. It checks the interval
between the previous check and now, and delivers the current virtual
instant to the subscribers of every event whose boundary lies in it.
"""

from __future__ import annotations

import itertools
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, time, timedelta, tzinfo

from virtual_clock.engine.clock import ClockState

logger = logging.getLogger(__name__)

BoundaryCallback = Callable[[datetime], None]

MONDAY = 0


@dataclass(frozen=True)
class EventSubscription:
    id: int
    callback: BoundaryCallback


class ClockEvent:
    """
    One boundary kind and its subscribers.

    Subscribers are called synchronously, in the order they subscribed.
    A subscriber that raises is logged and skipped; the remaining
    subscribers still run.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._subscriptions: list[EventSubscription] = []
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def subscribe(self, callback: BoundaryCallback) -> EventSubscription:
        """
        Register a callback. Returns the subscription, which can be
        passed back to ``unsubscribe``.
        """
        with self._lock:
            subscription = EventSubscription(next(self._ids), callback)
            self._subscriptions.append(subscription)
            return subscription

    def unsubscribe(self, subscription: EventSubscription | BoundaryCallback) -> bool:
        """
        Remove a subscription, or every subscription of a callback.

        Returns True if anything was removed.
        """
        with self._lock:
            before = len(self._subscriptions)
            if isinstance(subscription, EventSubscription):
                self._subscriptions = [
                    s for s in self._subscriptions if s.id != subscription.id
                ]
            else:
                self._subscriptions = [
                    s for s in self._subscriptions if s.callback != subscription
                ]
            return len(self._subscriptions) != before

    def clear_subscribers(self) -> None:
        with self._lock:
            self._subscriptions = []

    @property
    def has_subscribers(self) -> bool:
        return self.subscriber_count > 0

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def fire(self, instant: datetime) -> int:
        """
        Deliver ``instant`` to every subscriber.

        Iterates over a copy of the subscription list, so subscribers may
        unsubscribe themselves (or others) while being called.

        Returns the number of subscribers that raised.
        """
        with self._lock:
            subscriptions = list(self._subscriptions)

        failures = 0
        for subscription in subscriptions:
            try:
                subscription.callback(instant)
            except Exception:
                failures += 1
                logger.exception(
                    "Subscriber %d of %s failed", subscription.id, self.name
                )
        return failures

    def __repr__(self) -> str:
        return f"ClockEvent({self.name!r}, subscribers={self.subscriber_count})"


# ----------------------------------------------------------------------
# Boundary predicates over the half-open interval (previous, current]
#
# ``tz`` None means the host zone. Each instant is converted on its own,
# so the offset in force at that instant is used.
# ----------------------------------------------------------------------


def _at_wall(wall: datetime, tz: tzinfo | None) -> datetime:
    """Attach a zone to a naive local wall time."""
    if tz is None:
        return wall.astimezone()
    return wall.replace(tzinfo=tz)


def floor_to_hour(instant: datetime, tz: tzinfo | None) -> datetime:
    return instant.astimezone(tz).replace(minute=0, second=0, microsecond=0)


def next_noon_after(instant: datetime, tz: tzinfo | None) -> datetime:
    day = instant.astimezone(tz).date()
    noon = _at_wall(datetime.combine(day, time(12)), tz)
    if noon <= instant:
        noon = _at_wall(datetime.combine(day + timedelta(days=1), time(12)), tz)
    return noon


def next_monday_midnight_after(instant: datetime, tz: tzinfo | None) -> datetime:
    day = instant.astimezone(tz).date()
    monday = day + timedelta(days=(MONDAY - day.weekday()) % 7)
    candidate = _at_wall(datetime.combine(monday, time()), tz)
    if candidate <= instant:
        candidate = _at_wall(datetime.combine(monday + timedelta(days=7), time()), tz)
    return candidate


def crossed_hour(previous: datetime, current: datetime, tz: tzinfo | None) -> bool:
    return floor_to_hour(previous, tz) != floor_to_hour(current, tz)


def crossed_noon(previous: datetime, current: datetime, tz: tzinfo | None) -> bool:
    return next_noon_after(previous, tz) <= current


def crossed_day(previous: datetime, current: datetime, tz: tzinfo | None) -> bool:
    return previous.astimezone(tz).date() != current.astimezone(tz).date()


def crossed_week_start(previous: datetime, current: datetime, tz: tzinfo | None) -> bool:
    return next_monday_midnight_after(previous, tz) <= current


def crossed_week_end(previous: datetime, current: datetime, tz: tzinfo | None) -> bool:
    # The week ends at the Sunday -> Monday midnight.
    return next_monday_midnight_after(previous, tz) <= current


class EventScheduler:
    """
    Polls the clock and fires boundary events.

    Each check looks at the interval since the previous check. An event
    fires at most once per check, however many of its boundaries were
    skipped: a seven day ``fast_forward`` followed by one check fires
    ``on_new_day`` once.

    Checks run on a background thread every ``check_interval`` real
    seconds once ``start`` is called, and can be triggered by hand with
    ``trigger_event_check``.
    """

    def __init__(self, clock: ClockState, check_interval: float = 1.0) -> None:
        if check_interval <= 0:
            raise ValueError("check_interval must be positive")
        self.clock = clock
        self.check_interval = check_interval

        self.on_new_hour = ClockEvent("on_new_hour")
        self.at_noon = ClockEvent("at_noon")
        self.on_new_day = ClockEvent("on_new_day")
        self.on_week_start = ClockEvent("on_week_start")
        self.on_week_end = ClockEvent("on_week_end")

        self._predicates: list[
            tuple[ClockEvent, Callable[[datetime, datetime, tzinfo | None], bool]]
        ] = [
            (self.on_new_hour, crossed_hour),
            (self.at_noon, crossed_noon),
            (self.on_new_day, crossed_day),
            (self.on_week_start, crossed_week_start),
            (self.on_week_end, crossed_week_end),
        ]

        self.last_checked_virtual_instant = clock.current_virtual_time()
        self._check_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def events(self) -> dict[str, ClockEvent]:
        return {event.name: event for event, _ in self._predicates}

    def trigger_event_check(self) -> list[str]:
        """
        Check for boundary crossings since the previous check.

        Returns the names of the events that fired.
        """
        with self._check_lock:
            previous = self.last_checked_virtual_instant
            current = self.clock.current_virtual_time()
            tz = self.clock.tz

            due = [
                event
                for event, crossed in self._predicates
                if crossed(previous, current, tz)
            ]
            self.last_checked_virtual_instant = current

        for event in due:
            logger.debug("Firing %s at %s", event.name, current.isoformat())
            event.fire(current)
        return [event.name for event in due]

    def clear_all_subscribers(self) -> None:
        for event, _ in self._predicates:
            event.clear_subscribers()

    # ------------------------------------------------------------------
    # Background cadence
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start periodic checks. No-op when already running."""
        if self.is_running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name="virtual-clock-events", daemon=True
        )
        self._thread.start()
        logger.info("Event scheduler started (every %gs)", self.check_interval)

    def stop(self, timeout: float | None = None) -> None:
        """Stop periodic checks and wait for the thread to exit."""
        thread = self._thread
        if thread is None:
            return
        self._stop.set()
        if thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None
        logger.info("Event scheduler stopped")

    def _run(self) -> None:
        while not self._stop.wait(self.check_interval):
            try:
                self.trigger_event_check()
            except Exception:
                logger.exception("Boundary event check failed")
