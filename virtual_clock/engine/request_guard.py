"""
Outbound request guard.

When virtual time runs faster than real time, code that polls remote
services on a virtual schedule can end up hammering them. The guard
decides, per request path, whether a call may go out.

Precedence, first match wins:

1. a blocked pattern matches -> denied
2. an allowed pattern matches -> allowed
3. the policy mode decides: ``allow`` always allows, ``block`` allows
   only while the clock is not accelerated, ``throttle`` allows up to
   ``throttle_limit`` calls per 60 real seconds

Denial is an ordinary answer, not an error: ``evaluate`` always returns
a GuardDecision.
"""

from __future__ import annotations

import enum
import functools
import logging
import re
import threading
from dataclasses import dataclass

from virtual_clock.engine.clock import ClockState

logger = logging.getLogger(__name__)

THROTTLE_WINDOW_SECONDS = 60.0

REASON_BLOCKED_PATTERN = "blocked pattern"
REASON_ALLOWED_PATTERN = "allowed pattern"
REASON_POLICY_ALLOW = "policy allow"
REASON_NOT_ACCELERATED = "not accelerated"
REASON_ACCELERATION_ACTIVE = "acceleration active"
REASON_WITHIN_THROTTLE = "within throttle limit"
REASON_THROTTLE_EXCEEDED = "throttle limit exceeded"


class GuardMode(str, enum.Enum):
    ALLOW = "allow"
    BLOCK = "block"
    THROTTLE = "throttle"


@dataclass(frozen=True)
class GuardPolicy:
    mode: GuardMode = GuardMode.BLOCK
    allowed_patterns: tuple[str, ...] = ()
    blocked_patterns: tuple[str, ...] = ()
    throttle_limit: int = 60


@dataclass
class ThrottleWindow:
    window_start_real_instant: float
    count: int = 0


@dataclass(frozen=True)
class GuardDecision:
    allowed: bool
    reason: str

    def __bool__(self) -> bool:
        return self.allowed


@functools.lru_cache(maxsize=256)
def _compile_glob(pattern: str) -> re.Pattern[str] | None:
    parts = []
    for char in pattern:
        if char == "*":
            parts.append(".*")
        elif char == "?":
            parts.append(".")
        else:
            parts.append(re.escape(char))
    try:
        return re.compile("".join(parts), re.DOTALL)
    except re.error:
        return None


def glob_match(pattern: str, path: str) -> bool:
    """
    Match ``path`` against ``pattern`` in full.

    ``*`` matches any run of characters (including none), ``?`` exactly
    one character; everything else is literal. Never raises; a pattern
    that cannot be used does not match.
    """
    if not isinstance(pattern, str) or not isinstance(path, str):
        return False
    compiled = _compile_glob(pattern)
    return compiled is not None and compiled.fullmatch(path) is not None


class RequestGuard:
    """Decides whether outbound requests may proceed."""

    def __init__(self, clock: ClockState, policy: GuardPolicy | None = None) -> None:
        self.clock = clock
        self._policy = policy or GuardPolicy()
        self._lock = threading.Lock()
        self.window = ThrottleWindow(clock.real_clock.monotonic())

    @property
    def policy(self) -> GuardPolicy:
        return self._policy

    @policy.setter
    def policy(self, policy: GuardPolicy) -> None:
        with self._lock:
            self._policy = policy
            self.window = ThrottleWindow(self.clock.real_clock.monotonic())

    def evaluate(self, path: str) -> GuardDecision:
        policy = self._policy

        if any(glob_match(p, path) for p in policy.blocked_patterns):
            return self._deny(path, REASON_BLOCKED_PATTERN)

        if any(glob_match(p, path) for p in policy.allowed_patterns):
            return GuardDecision(True, REASON_ALLOWED_PATTERN)

        mode = GuardMode(policy.mode)
        if mode is GuardMode.ALLOW:
            return GuardDecision(True, REASON_POLICY_ALLOW)

        if mode is GuardMode.BLOCK:
            if self.clock.rate == 1:
                return GuardDecision(True, REASON_NOT_ACCELERATED)
            return self._deny(path, REASON_ACCELERATION_ACTIVE)

        return self._throttle(path, policy.throttle_limit)

    def _throttle(self, path: str, limit: int) -> GuardDecision:
        with self._lock:
            now = self.clock.real_clock.monotonic()
            if now - self.window.window_start_real_instant >= THROTTLE_WINDOW_SECONDS:
                self.window = ThrottleWindow(now)

            if self.window.count < limit:
                self.window.count += 1
                return GuardDecision(True, REASON_WITHIN_THROTTLE)

        return self._deny(path, REASON_THROTTLE_EXCEEDED)

    def _deny(self, path: str, reason: str) -> GuardDecision:
        logger.debug("Request to %s denied: %s", path, reason)
        return GuardDecision(False, reason)
