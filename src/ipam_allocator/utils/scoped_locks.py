"""Per-scope asyncio locks for serializing allocations within one process."""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List


def country_scope(country: str) -> str:
    return f"country:{country}"


def region_scope(region_id: str) -> str:
    return f"region:{region_id}"


class _Entry:
    __slots__ = ("lock", "refs")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.refs = 0


class ScopedLockRegistry:
    """
    Registry of named locks created on demand and dropped once nobody holds or waits on them.

    Callers acquiring several scopes must pass them coarse to fine (country before region);
    ``hold`` acquires in the given order and releases in reverse.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, _Entry] = {}

    @asynccontextmanager
    async def hold(self, *scopes: str) -> AsyncIterator[None]:
        acquired: List[str] = []
        try:
            for scope in scopes:
                entry = self._entries.setdefault(scope, _Entry())
                entry.refs += 1
                try:
                    await entry.lock.acquire()
                except BaseException:
                    self._drop_ref(scope)
                    raise
                acquired.append(scope)
            yield
        finally:
            for scope in reversed(acquired):
                self._entries[scope].lock.release()
                self._drop_ref(scope)

    def _drop_ref(self, scope: str) -> None:
        entry = self._entries[scope]
        entry.refs -= 1
        if entry.refs == 0:
            del self._entries[scope]

    def is_locked(self, scope: str) -> bool:
        entry = self._entries.get(scope)
        return bool(entry and entry.lock.locked())

    def __len__(self) -> int:
        return len(self._entries)
