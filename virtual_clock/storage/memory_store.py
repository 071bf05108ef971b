"""In-process ClockStore."""

from __future__ import annotations


class MemoryStore:
    """
    Dict-backed store.

    Useful for tests and for embedding the engine where nothing has to
    survive a restart.
    """

    def __init__(self, initial: dict[str, bytes] | None = None) -> None:
        self.data: dict[str, bytes] = dict(initial or {})

    def load(self, key: str) -> bytes | None:
        return self.data.get(key)

    def save(self, key: str, data: bytes) -> bool:
        self.data[key] = bytes(data)
        return True
