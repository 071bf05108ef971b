"""
Unit tests for virtual_clock/engine/clock.py
"""

import threading
import time
from datetime import UTC, datetime, timedelta
from unittest.mock import Mock

import pytest

from virtual_clock.config import ClockConfig
from virtual_clock.engine.clock import (
    MAX_RATE,
    Anchor,
    ClockSnapshot,
    ClockState,
    clamp_rate,
)
from virtual_clock.errors import ConfigurationError
from virtual_clock.storage.base import STATE_KEY, ClockRecord, decode_record, encode_record
from virtual_clock.storage.memory_store import MemoryStore

START = datetime(2024, 1, 1, 9, 0, tzinfo=UTC)


class GatedStore(MemoryStore):
    """MemoryStore whose next save blocks until released."""

    def __init__(self):
        super().__init__()
        self.hold_next = False
        self.entered = threading.Event()
        self.release = threading.Event()

    def save(self, key, data):
        if self.hold_next:
            self.hold_next = False
            self.entered.set()
            self.release.wait(5)
        return super().save(key, data)


class TestAnchor:
    """Test suite for the Anchor value."""

    def test_virtual_at_scales_elapsed_real_time(self):
        """Test that virtual time advances by elapsed real time times rate."""
        anchor = Anchor(real_instant=10.0, virtual_instant=START, rate=60.0)
        assert anchor.virtual_at(12.0) == START + timedelta(minutes=2)

    def test_virtual_at_frozen_with_zero_rate(self):
        """Test that a zero rate keeps virtual time constant."""
        anchor = Anchor(real_instant=10.0, virtual_instant=START, rate=0.0)
        assert anchor.virtual_at(500.0) == START

    def test_anchor_is_immutable(self):
        """Test that anchors cannot be modified in place."""
        anchor = Anchor(real_instant=0.0, virtual_instant=START, rate=1.0)
        with pytest.raises(AttributeError):
            anchor.rate = 2.0


class TestClockSnapshot:
    def test_paused_snapshot_needs_instant(self):
        anchor = Anchor(real_instant=0.0, virtual_instant=START, rate=1.0)
        with pytest.raises(ValueError):
            ClockSnapshot(anchor=anchor, is_paused=True)

    def test_virtual_at_is_frozen_while_paused(self):
        anchor = Anchor(real_instant=0.0, virtual_instant=START, rate=60.0)
        paused_at = START + timedelta(hours=1)
        snapshot = ClockSnapshot(anchor=anchor, is_paused=True, paused_virtual_instant=paused_at)
        assert snapshot.virtual_at(9999.0) == paused_at
        assert ClockSnapshot(anchor=anchor).virtual_at(1.0) == START + timedelta(minutes=1)


class TestClampRate:
    @pytest.mark.parametrize(
        "requested, expected",
        [(-5, 0.0), (0, 0.0), (1, 1.0), (2.5, 2.5), (100_000, MAX_RATE), (1e9, MAX_RATE)],
    )
    def test_clamp(self, requested, expected):
        assert clamp_rate(requested) == expected

    def test_negative_rate_logs_warning(self, caplog):
        """Test that clamping a negative rate emits a warning."""
        with caplog.at_level("WARNING", logger="virtual_clock"):
            clamp_rate(-1)
        assert "negative" in caplog.text


class TestClockState:
    """Test suite for ClockState reads and mutations."""

    def test_initialization(self, clock):
        """Test that the clock starts at the requested instant, running."""
        assert clock.current_virtual_time() == START
        assert clock.rate == 1.0
        assert clock.is_paused is False

    def test_defaults_to_real_wall_time(self, real_clock, backend):
        """Test that without a start instant the clock starts at real time."""
        clock = ClockState(tz=UTC, real_clock=real_clock, timer_backend=backend)
        assert clock.current_virtual_time() == real_clock.now(UTC)

    def test_time_advances_with_rate(self, make_clock, real_clock):
        """Test that virtual time runs at rate times real time."""
        clock = make_clock(rate=100)
        real_clock.set(real_clock.monotonic() + 36)
        assert clock.current_virtual_time() == START + timedelta(hours=1)

    def test_now_is_alias(self, clock):
        assert clock.now() == clock.current_virtual_time()

    @pytest.mark.parametrize("requested", [-10, 0, 0.5, 1, 60, 99_999, 100_000, 250_000])
    def test_set_rate_stores_clamped_rate(self, clock, requested):
        """Test that set_rate stores clamp(r, 0, 100000)."""
        clock.set_rate(requested)
        assert clock.rate == min(max(requested, 0), 100_000)

    def test_set_rate_preserves_continuity(self, make_clock, real_clock):
        """Test that changing rate does not move virtual time."""
        clock = make_clock(rate=7)
        real_clock.set(real_clock.monotonic() + 13.25)
        before = clock.current_virtual_time()
        clock.set_rate(5000)
        after = clock.current_virtual_time()
        assert abs((after - before).total_seconds()) < 0.001

    def test_set_rate_then_elapsed_uses_new_rate(self, clock, real_clock):
        """Test that time after a rate change advances at the new rate."""
        real_clock.set(real_clock.monotonic() + 10)
        clock.set_rate(60)
        real_clock.set(real_clock.monotonic() + 10)
        assert clock.current_virtual_time() == START + timedelta(seconds=10 + 600)

    def test_time_travel_to_is_exact(self, make_clock):
        """Test that time_travel_to lands exactly on the target."""
        clock = make_clock(rate=1000)
        target = datetime(2030, 6, 15, 18, 30, tzinfo=UTC)
        clock.time_travel_to(target)
        assert clock.current_virtual_time() == target
        assert clock.rate == 1000

    def test_time_travel_localizes_naive_datetimes(self, clock):
        """Test that naive targets are taken to be in the clock zone."""
        clock.time_travel_to(datetime(2025, 3, 1, 8, 0))
        assert clock.current_virtual_time() == datetime(2025, 3, 1, 8, 0, tzinfo=UTC)

    @pytest.mark.usefixtures("eastern_host_zone")
    def test_unset_zone_follows_host_daylight_saving(self, real_clock, backend):
        """Test that naive instants take the host offset in force on their date."""
        clock = ClockState(
            virtual_instant=datetime(2024, 1, 10, 12, 0),
            real_clock=real_clock,
            timer_backend=backend,
        )
        assert clock.tz is None
        assert clock.current_virtual_time().utcoffset() == timedelta(hours=-5)

        clock.time_travel_to(datetime(2024, 7, 10, 12, 0))
        assert clock.current_virtual_time() == datetime(2024, 7, 10, 16, 0, tzinfo=UTC)

    def test_fast_forward(self, make_clock, real_clock):
        """Test that fast_forward adds the duration to current virtual time."""
        clock = make_clock(rate=3)
        real_clock.set(real_clock.monotonic() + 2)
        previous = clock.current_virtual_time()
        clock.fast_forward(timedelta(days=1))
        assert clock.current_virtual_time() == previous + timedelta(days=1)

    def test_fast_forward_accepts_seconds(self, clock):
        clock.fast_forward(90)
        assert clock.current_virtual_time() == START + timedelta(seconds=90)

    def test_pause_freezes_time(self, make_clock, real_clock):
        """Test that virtual time is constant while paused."""
        clock = make_clock(rate=50)
        real_clock.set(real_clock.monotonic() + 1)
        clock.pause()
        frozen = clock.current_virtual_time()

        real_clock.set(real_clock.monotonic() + 3600)
        assert clock.current_virtual_time() == frozen
        assert clock.is_paused is True
        assert clock.effective_rate == 0.0
        assert clock.rate == 50

    def test_pause_resume_keeps_virtual_time(self, make_clock, real_clock):
        """Test that resume continues from the paused instant at the old rate."""
        clock = make_clock(rate=10)
        clock.pause()
        paused_at = clock.current_virtual_time()
        real_clock.set(real_clock.monotonic() + 500)
        clock.resume()

        assert clock.current_virtual_time() == paused_at
        real_clock.set(real_clock.monotonic() + 1)
        assert clock.current_virtual_time() == paused_at + timedelta(seconds=10)

    def test_pause_is_idempotent(self, clock, real_clock):
        """Test that pausing twice keeps the first paused instant."""
        clock.pause()
        first = clock.current_virtual_time()
        real_clock.set(real_clock.monotonic() + 10)
        clock.pause()
        assert clock.current_virtual_time() == first

    def test_resume_when_running_is_noop(self, clock):
        snapshot = clock.snapshot
        clock.resume()
        assert clock.snapshot is snapshot

    def test_set_rate_while_paused_stays_paused(self, clock, real_clock):
        """Test that a rate change while paused applies on resume."""
        clock.pause()
        clock.set_rate(120)
        real_clock.set(real_clock.monotonic() + 5)
        assert clock.is_paused
        assert clock.current_virtual_time() == START

        clock.resume()
        real_clock.set(real_clock.monotonic() + 1)
        assert clock.current_virtual_time() == START + timedelta(minutes=2)

    def test_time_travel_while_paused(self, clock):
        """Test that travelling while paused moves the frozen instant."""
        clock.pause()
        target = START + timedelta(days=3)
        clock.time_travel_to(target)
        assert clock.is_paused
        assert clock.current_virtual_time() == target

    def test_reset_returns_to_real_time(self, make_clock, real_clock):
        """Test that reset sets virtual time to real time, keeping the rate."""
        clock = make_clock(rate=25, start=datetime(1999, 12, 31, tzinfo=UTC))
        clock.pause()
        real_clock.set(real_clock.monotonic() + 7)
        clock.reset()

        assert clock.is_paused is False
        assert clock.rate == 25
        assert clock.current_virtual_time() == real_clock.now(UTC)

    def test_is_accelerated(self, clock):
        assert clock.is_accelerated is False
        clock.set_rate(2)
        assert clock.is_accelerated is True

    def test_snapshot_is_swapped_not_mutated(self, clock):
        """Test that mutations install a new snapshot object."""
        before = clock.snapshot
        clock.set_rate(4)
        after = clock.snapshot
        assert before is not after
        assert isinstance(after, ClockSnapshot)
        assert before.anchor.rate == 1.0


class TestRescaleNotification:
    """Tests for listener delivery on mutation."""

    def test_listeners_receive_every_mutation(self, clock):
        listener = Mock()
        listener.rescale.return_value = None
        clock.add_rescale_listener(listener)

        clock.set_rate(10)
        clock.time_travel_to(START + timedelta(hours=1))
        clock.fast_forward(60)
        clock.pause()
        clock.resume()
        clock.reset()

        rates = [c.args[1] for c in listener.rescale.call_args_list]
        assert rates == [10.0, 10.0, 10.0, 0.0, 10.0, 10.0]

    def test_noop_mutations_do_not_notify(self, clock):
        listener = Mock()
        listener.rescale.return_value = None
        clock.add_rescale_listener(listener)

        clock.resume()
        listener.rescale.assert_not_called()

    def test_due_actions_run_before_mutation_returns(self, clock):
        """Test that actions returned by listeners run inside the call."""
        calls = []
        listener = Mock()
        listener.rescale.return_value = lambda: calls.append("fired")
        clock.add_rescale_listener(listener)

        clock.set_rate(3)
        assert calls == ["fired"]

    def test_remove_listener(self, clock):
        listener = Mock()
        listener.rescale.return_value = None
        clock.add_rescale_listener(listener)
        clock.remove_rescale_listener(listener)
        clock.remove_rescale_listener(listener)  # Should not raise

        clock.set_rate(2)
        listener.rescale.assert_not_called()
        assert clock.listeners == []


class TestFromConfig:
    """Tests for initialisation from configuration and persisted state."""

    def build(self, real_clock, backend, store=None, **overrides):
        config = ClockConfig(timezone="UTC", **overrides)
        return ClockState.from_config(
            config, store=store, real_clock=real_clock, timer_backend=backend
        )

    def test_production_acceleration_is_rejected(self, real_clock, backend):
        with pytest.raises(ConfigurationError) as exc_info:
            self.build(real_clock, backend, is_production=True, clock_rate=100)
        assert "production" in str(exc_info.value)

    def test_production_acceleration_with_force_enable(self, real_clock, backend):
        clock = self.build(
            real_clock, backend, is_production=True, clock_rate=100, force_enable=True
        )
        assert clock.rate == 100

    def test_production_at_real_speed_is_fine(self, real_clock, backend):
        clock = self.build(real_clock, backend, is_production=True, clock_rate=1)
        assert clock.rate == 1

    def test_non_debug_forces_real_speed(self, real_clock, backend):
        """Test that outside debug mode the configured rate is ignored."""
        clock = self.build(real_clock, backend, debug=False, clock_rate=100)
        assert clock.rate == 1

    def test_non_debug_with_force_enable_keeps_rate(self, real_clock, backend):
        clock = self.build(real_clock, backend, debug=False, force_enable=True, clock_rate=100)
        assert clock.rate == 100

    def test_non_debug_production_does_not_raise(self, real_clock, backend):
        clock = self.build(
            real_clock, backend, debug=False, is_production=True, clock_rate=100
        )
        assert clock.rate == 1

    def test_restores_persisted_state(self, real_clock, backend):
        """Test that a record of the same version is restored."""
        saved_at = datetime(2031, 1, 1, 12, 0, tzinfo=UTC)
        store = MemoryStore()
        store.save(
            STATE_KEY,
            encode_record(
                ClockRecord(
                    rate=30.0,
                    virtual_instant=saved_at,
                    is_paused=True,
                    paused_virtual_instant=saved_at,
                    app_version="1.2.3",
                )
            ),
        )

        clock = self.build(real_clock, backend, store=store, app_version="1.2.3")

        assert clock.rate == 30.0
        assert clock.is_paused is True
        assert clock.current_virtual_time() == saved_at

    def test_discards_state_from_other_version(self, real_clock, backend, caplog):
        """Test that a version change auto-resets to real time."""
        store = MemoryStore()
        store.save(
            STATE_KEY,
            encode_record(
                ClockRecord(
                    rate=30.0,
                    virtual_instant=datetime(2031, 1, 1, tzinfo=UTC),
                    is_paused=False,
                    app_version="1.0.0",
                )
            ),
        )

        with caplog.at_level("INFO", logger="virtual_clock"):
            clock = self.build(
                real_clock, backend, store=store, app_version="2.0.0", clock_rate=5
            )

        assert clock.rate == 5
        assert clock.current_virtual_time() == real_clock.now(UTC)
        assert "Discarding persisted clock state" in caplog.text
        assert decode_record(store.load(STATE_KEY)).app_version == "2.0.0"

    def test_restored_acceleration_still_checked_in_production(self, real_clock, backend):
        store = MemoryStore()
        store.save(
            STATE_KEY,
            encode_record(
                ClockRecord(
                    rate=30.0,
                    virtual_instant=START,
                    is_paused=False,
                    app_version="0.0.0",
                )
            ),
        )
        with pytest.raises(ConfigurationError):
            self.build(real_clock, backend, store=store, is_production=True)

    def test_state_saved_after_each_mutation(self, real_clock, backend):
        store = MemoryStore()
        clock = self.build(real_clock, backend, store=store)

        clock.set_rate(12)
        assert decode_record(store.load(STATE_KEY)).rate == 12

        clock.pause()
        record = decode_record(store.load(STATE_KEY))
        assert record.is_paused is True
        assert record.paused_virtual_instant == clock.current_virtual_time()

    def test_racing_saves_keep_latest_state(self, real_clock, backend):
        """Test that a slow save cannot overwrite a newer mutation."""
        store = GatedStore()
        clock = self.build(real_clock, backend, store=store)

        store.hold_next = True
        slow = threading.Thread(target=clock.set_rate, args=(5,))
        slow.start()
        assert store.entered.wait(5)

        fast = threading.Thread(target=clock.set_rate, args=(10,))
        fast.start()
        deadline = time.monotonic() + 5
        while clock.rate != 10 and time.monotonic() < deadline:
            time.sleep(0.001)

        store.release.set()
        slow.join(5)
        fast.join(5)

        assert clock.rate == 10
        assert decode_record(store.load(STATE_KEY)).rate == 10

    def test_save_failure_is_not_fatal(self, real_clock, backend, caplog):
        """Test that a failing store only produces a warning."""
        store = Mock()
        store.load.return_value = None
        store.save.side_effect = OSError("disk full")

        with caplog.at_level("WARNING", logger="virtual_clock"):
            clock = self.build(real_clock, backend, store=store)
            clock.set_rate(3)

        assert clock.rate == 3
        assert "Could not save clock state" in caplog.text

    def test_load_failure_treated_as_absent(self, real_clock, backend):
        store = Mock()
        store.load.side_effect = RuntimeError("backend down")
        store.save.return_value = True

        clock = self.build(real_clock, backend, store=store, clock_rate=4)
        assert clock.rate == 4


def test_clock_interface_stability(real_clock):
    """Test that the public interface matches expectations."""
    clock = ClockState(real_clock=real_clock, timer_backend=Mock())

    for name in (
        "current_virtual_time",
        "set_rate",
        "time_travel_to",
        "fast_forward",
        "pause",
        "resume",
        "reset",
    ):
        assert callable(getattr(clock, name))

    assert isinstance(clock.rate, float)
    assert isinstance(clock.is_paused, bool)
