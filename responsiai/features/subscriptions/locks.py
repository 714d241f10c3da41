"""In-process keyed mutex for serializing work on one subscription."""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional


class _Entry:
    __slots__ = ("lock", "waiters")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.waiters = 0


class KeyedLock:
    """
    asyncio locks keyed by string.

    Entries are created on demand and dropped once nobody holds or waits on
    them. Multiple keys are acquired in sorted order so two callers that
    need overlapping keys cannot deadlock.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, _Entry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    async def _acquire(self, key: str) -> None:
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = _Entry()
        entry.waiters += 1
        try:
            await entry.lock.acquire()
        except BaseException:
            self._drop(key, entry)
            raise

    def _release(self, key: str) -> None:
        entry = self._entries[key]
        entry.lock.release()
        self._drop(key, entry)

    def _drop(self, key: str, entry: _Entry) -> None:
        entry.waiters -= 1
        if entry.waiters == 0:
            del self._entries[key]

    @asynccontextmanager
    async def hold(self, *keys: Optional[str]) -> AsyncIterator[None]:
        ordered = sorted({k for k in keys if k})
        acquired = []
        try:
            for key in ordered:
                await self._acquire(key)
                acquired.append(key)
            yield
        finally:
            for key in reversed(acquired):
                self._release(key)
