"""
Persistence collaborators for the clock state.

- ClockStore: the key/bytes protocol the engine consumes
- MemoryStore / FileStore: ready-made implementations
"""

from virtual_clock.storage.base import (
    STATE_KEY,
    ClockRecord,
    ClockStore,
    decode_record,
    encode_record,
    load_record,
    save_record,
)
from virtual_clock.storage.file_store import FileStore
from virtual_clock.storage.memory_store import MemoryStore
