import asyncio
from contextlib import asynccontextmanager


class KeyedLock(object):
    """One ``asyncio.Lock`` per key, kept only while some task holds or awaits it."""

    def __init__(self):
        self._entries = {}

    def __len__(self):
        return len(self._entries)

    def __contains__(self, key):
        return key in self._entries

    @asynccontextmanager
    async def hold(self, key):
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if not entry[1]:
                del self._entries[key]
