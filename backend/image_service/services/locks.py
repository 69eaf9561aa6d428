"""Per-artifact mutual exclusion.

process, delete and the sweeper take the lock for an artifact id before
touching its files or record, so an id that has been deleted can never be
written back by a process call that was already in flight.
"""
import asyncio
from contextlib import asynccontextmanager


class _Entry:
    __slots__ = ("lock", "holders")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.holders = 0


class KeyedLocks:
    """asyncio.Lock per key, kept only while someone holds or waits on it."""

    def __init__(self):
        self._entries: dict[str, _Entry] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = _Entry()
        entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.holders -= 1
            if entry.holders == 0:
                del self._entries[key]

    def __len__(self) -> int:
        return len(self._entries)
