"""
Virtual clock engine.

Lets an application run on a clock that can be sped up, slowed down,
paused or moved in time, while timers, boundary events and outbound
request policy stay consistent with it.

The package provides:
- ClockState: the anchor-based virtual time source
- EventScheduler / ClockEvent: hour, noon, day and week boundary events
- VirtualTimer: timers that rescale live when the rate changes
- RequestGuard: gates outbound calls while time is accelerated
- ClockEngine: the handle that wires them together
"""

from virtual_clock.config import ClockConfig, load_config
from virtual_clock.engine.clock import Anchor, ClockSnapshot, ClockState
from virtual_clock.engine.clock_engine import ClockEngine
from virtual_clock.engine.event_scheduler import ClockEvent, EventScheduler, EventSubscription
from virtual_clock.engine.request_guard import (
    GuardDecision,
    GuardMode,
    GuardPolicy,
    RequestGuard,
    glob_match,
)
from virtual_clock.engine.timers import TimerKind, VirtualTimer, sleep
from virtual_clock.errors import ConfigurationError

__version__ = "0.1.0"
