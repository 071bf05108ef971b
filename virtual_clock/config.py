"""
Configuration for the virtual clock engine.

Configuration is a plain dataclass. It can be built in code or loaded
from a YAML mapping:

    clock_rate: 60
    app_version: "2.4.0"
    http_policy: throttle
    http_throttle_limit: 30
    http_blocked_patterns:
      - "/payments/*"

The loader validates structure and types up front; anything it does not
understand is a ConfigurationError rather than a silent default.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, fields
from datetime import tzinfo
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from virtual_clock.engine.request_guard import GuardMode, GuardPolicy
from virtual_clock.errors import ConfigurationError

LogCallback = Callable[[str, str], None]


@dataclass
class ClockConfig:
    """
    Settings consumed when the engine is initialised.

    ``debug`` is the build mode: outside debug mode the clock always runs
    at real speed unless ``force_enable`` is set.
    """

    clock_rate: int = 1
    is_production: bool = False
    force_enable: bool = False
    app_version: str = "0.0.0"
    http_policy: GuardMode = GuardMode.BLOCK
    http_allowed_patterns: tuple[str, ...] = ()
    http_blocked_patterns: tuple[str, ...] = ()
    http_throttle_limit: int = 60
    log_callback: LogCallback | None = None
    debug: bool = __debug__
    event_check_interval: float = 1.0
    timezone: str | None = None

    def guard_policy(self) -> GuardPolicy:
        return GuardPolicy(
            mode=GuardMode(self.http_policy),
            allowed_patterns=tuple(self.http_allowed_patterns),
            blocked_patterns=tuple(self.http_blocked_patterns),
            throttle_limit=self.http_throttle_limit,
        )

    def tzinfo(self) -> tzinfo | None:
        """
        Zone used for boundary detection.

        None when unset: the clock then follows the host zone, including
        its daylight saving changes.
        """
        if self.timezone is None:
            return None
        try:
            return ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ConfigurationError(f"Unknown timezone: {self.timezone!r}") from exc

    @classmethod
    def from_mapping(cls, data: Any) -> "ClockConfig":
        """
        Build a config from a parsed YAML/JSON mapping.

        Raises:
            ConfigurationError: if the mapping does not validate
        """
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigurationError("Clock configuration must be a mapping (dict)")

        known = {f.name for f in fields(cls)} - {"log_callback"}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(f"Unknown configuration keys: {', '.join(unknown)}")

        values: dict[str, Any] = {}

        if "clock_rate" in data:
            rate = data["clock_rate"]
            if isinstance(rate, bool) or not isinstance(rate, int) or rate < 0:
                raise ConfigurationError(
                    f"'clock_rate' must be a non-negative integer, got {rate!r}"
                )
            values["clock_rate"] = rate

        for flag in ("is_production", "force_enable", "debug"):
            if flag in data:
                if not isinstance(data[flag], bool):
                    raise ConfigurationError(f"'{flag}' must be a boolean")
                values[flag] = data[flag]

        if "app_version" in data:
            values["app_version"] = str(data["app_version"])

        if "http_policy" in data:
            try:
                values["http_policy"] = GuardMode(data["http_policy"])
            except ValueError:
                choices = ", ".join(m.value for m in GuardMode)
                raise ConfigurationError(
                    f"'http_policy' must be one of {choices}, got {data['http_policy']!r}"
                ) from None

        for key in ("http_allowed_patterns", "http_blocked_patterns"):
            if key in data:
                patterns = data[key] or []
                if not isinstance(patterns, list) or not all(
                    isinstance(p, str) for p in patterns
                ):
                    raise ConfigurationError(f"'{key}' must be a list of strings")
                values[key] = tuple(patterns)

        if "http_throttle_limit" in data:
            limit = data["http_throttle_limit"]
            if isinstance(limit, bool) or not isinstance(limit, int) or limit < 0:
                raise ConfigurationError(
                    f"'http_throttle_limit' must be a non-negative integer, got {limit!r}"
                )
            values["http_throttle_limit"] = limit

        if "event_check_interval" in data:
            interval = data["event_check_interval"]
            if (
                isinstance(interval, bool)
                or not isinstance(interval, (int, float))
                or interval <= 0
            ):
                raise ConfigurationError("'event_check_interval' must be a positive number")
            values["event_check_interval"] = float(interval)

        if "timezone" in data and data["timezone"] is not None:
            values["timezone"] = str(data["timezone"])

        config = cls(**values)
        # Resolves the zone; raises on unknown names.
        config.tzinfo()
        return config


def load_config(path: str | Path) -> ClockConfig:
    """
    Load a ClockConfig from a YAML file.

    Raises:
        FileNotFoundError: if the file does not exist
        ConfigurationError: if the YAML is malformed or does not validate
    """
    config_path = Path(path)
    with config_path.open("r", encoding="utf-8") as fh:
        try:
            data = yaml.safe_load(fh)
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Invalid YAML in {config_path}: {exc}") from exc

    return ClockConfig.from_mapping(data)
