"""
Persistence boundary for the clock state.

The engine does not own storage. It talks to a ClockStore, a small
key/bytes interface, and keeps one record under STATE_KEY describing the
clock (rate, virtual instant, pause state and the application version
that wrote it).

Storage is best-effort: load and save failures are logged and never stop
the clock.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

logger = logging.getLogger(__name__)

STATE_KEY = "virtual_clock.state"


class ClockStore(Protocol):
    """Key/value persistence collaborator."""

    def load(self, key: str) -> bytes | None:
        """Return the stored bytes for ``key``, or None when absent."""
        ...

    def save(self, key: str, data: bytes) -> bool:
        """Store ``data`` under ``key``. Return False on failure."""
        ...


@dataclass(frozen=True)
class ClockRecord:
    """Persisted shape of the clock state."""

    rate: float
    virtual_instant: datetime
    is_paused: bool
    app_version: str
    paused_virtual_instant: datetime | None = None


def encode_record(record: ClockRecord) -> bytes:
    payload: dict[str, Any] = {
        "rate": record.rate,
        "virtual_instant": record.virtual_instant.isoformat(),
        "is_paused": record.is_paused,
        "paused_virtual_instant": (
            record.paused_virtual_instant.isoformat()
            if record.paused_virtual_instant is not None
            else None
        ),
        "app_version": record.app_version,
    }
    return json.dumps(payload, sort_keys=True).encode("utf-8")


def decode_record(data: bytes) -> ClockRecord:
    """
    Decode a stored record.

    Raises:
        ValueError: if the bytes are not a well-formed record
    """
    try:
        payload = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValueError(f"Clock record is not valid JSON: {exc}") from exc

    if not isinstance(payload, dict):
        raise ValueError("Clock record must be a JSON object")

    missing = {"rate", "virtual_instant", "is_paused", "app_version"} - payload.keys()
    if missing:
        raise ValueError(f"Clock record is missing fields: {sorted(missing)}")

    rate = payload["rate"]
    if isinstance(rate, bool) or not isinstance(rate, (int, float)):
        raise ValueError(f"Clock record has a non-numeric rate: {rate!r}")

    paused_raw = payload.get("paused_virtual_instant")
    try:
        return ClockRecord(
            rate=float(rate),
            virtual_instant=datetime.fromisoformat(payload["virtual_instant"]),
            is_paused=bool(payload["is_paused"]),
            app_version=str(payload["app_version"]),
            paused_virtual_instant=(
                datetime.fromisoformat(paused_raw) if paused_raw is not None else None
            ),
        )
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Clock record has an invalid instant: {exc}") from exc


def load_record(store: ClockStore, app_version: str, key: str = STATE_KEY) -> ClockRecord | None:
    """
    Load the persisted record, or None.

    A record written by another application version is discarded so the
    clock starts fresh.
    """
    try:
        data = store.load(key)
    except Exception:
        logger.warning("Could not load persisted clock state", exc_info=True)
        return None

    if data is None:
        return None

    try:
        record = decode_record(data)
    except ValueError as exc:
        logger.warning("Ignoring unreadable persisted clock state: %s", exc)
        return None

    if record.app_version != app_version:
        logger.info(
            "Discarding persisted clock state from version %s (running %s)",
            record.app_version,
            app_version,
        )
        return None

    return record


def save_record(store: ClockStore, record: ClockRecord, key: str = STATE_KEY) -> bool:
    try:
        saved = store.save(key, encode_record(record))
    except Exception:
        logger.warning("Could not save clock state", exc_info=True)
        return False

    if not saved:
        logger.warning("Clock store refused to save state under %r", key)
    return bool(saved)
